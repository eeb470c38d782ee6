import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from types import SimpleNamespace
from unittest import TestCase
from unittest.mock import patch

import httpx
import openai

from station_ai.backend.adapters.account_adapter import EsiAccountData, StaticSessionProvider
from station_ai.backend.adapters.docs_adapter import HttpDocsSource, HttpSemanticIndex
from station_ai.backend.adapters.provider_adapter import ProviderClient
from station_ai.backend.adapters.search_adapter import DuckDuckGoSearch
from station_ai.backend.errors import (
	AccountDataError,
	ChatServiceError,
	DocsSourceError,
	SessionUnavailableError,
	WebSearchError,
)


class _FakeCompletions:
	def __init__(self, *, response=None, error: Exception | None = None, lines=()):
		self._response = response
		self._error = error
		self._lines = list(lines)
		self.kwargs = []
		self.with_streaming_response = SimpleNamespace(create=self._stream)

	def create(self, **kwargs):
		self.kwargs.append(kwargs)
		if self._error is not None:
			raise self._error
		return self._response

	@contextmanager
	def _stream(self, **kwargs):
		self.kwargs.append(kwargs)
		if self._error is not None:
			raise self._error
		yield SimpleNamespace(iter_lines=lambda: iter(self._lines))


class _FakeClientFactory:
	def __init__(self, completions: _FakeCompletions):
		self.completions = completions
		self.options = []

	def __call__(self, **options):
		self.options.append(options)
		return SimpleNamespace(chat=SimpleNamespace(completions=self.completions))


def _completion(content, *, model="vendor/model", message_id="gen-1", usage=None):
	message = SimpleNamespace(content=content)
	return SimpleNamespace(choices=[SimpleNamespace(message=message)], model=model, id=message_id, usage=usage)


_MESSAGES = [{"role": "user", "content": "hi"}]
_CALL = {"model": "main-model", "temperature": 0.2, "max_tokens": 100, "timeout": 5.0}


class ProviderClientTests(TestCase):
	def test_complete_maps_response_and_client_options(self) -> None:
		completions = _FakeCompletions(response=_completion([{"type": "text", "text": " Hello "}], usage={"total_tokens": 7}))
		factory = _FakeClientFactory(completions)
		with patch.dict(os.environ, {"STATION_AI_PROVIDER_BASE_URL": ""}, clear=False):
			client = ProviderClient(provider="openai", api_key="sk-test", client_factory=factory)
			reply = client.complete(_MESSAGES, **_CALL)

		self.assertEqual(reply.answer, "Hello")
		self.assertEqual(reply.model, "vendor/model")
		self.assertEqual(reply.provider_message_id, "gen-1")
		self.assertEqual(reply.usage, {"total_tokens": 7})
		options = factory.options[0]
		self.assertEqual(options["base_url"], "https://api.openai.com/v1")
		self.assertEqual(options["max_retries"], 0)
		self.assertEqual(options["timeout"], 5.0)
		self.assertEqual(completions.kwargs[0]["max_tokens"], 100)

	def test_base_url_override_applies(self) -> None:
		factory = _FakeClientFactory(_FakeCompletions(response=_completion("ok")))
		with patch.dict(os.environ, {"STATION_AI_PROVIDER_BASE_URL": "http://localhost:8080/v1/"}, clear=False):
			ProviderClient(provider="local", api_key="k", client_factory=factory).complete(_MESSAGES, **_CALL)
		self.assertEqual(factory.options[0]["base_url"], "http://localhost:8080/v1")

	def test_timeout_maps_to_504(self) -> None:
		error = openai.APITimeoutError(request=httpx.Request("POST", "https://example.com/chat"))
		client = ProviderClient(provider="openrouter", api_key="k", client_factory=_FakeClientFactory(_FakeCompletions(error=error)))
		with self.assertRaises(ChatServiceError) as ctx:
			client.complete(_MESSAGES, **_CALL)
		self.assertEqual(ctx.exception.status_code, 504)
		self.assertEqual(ctx.exception.code, "station_ai_provider_timeout")

	def test_status_error_maps_to_502(self) -> None:
		request = httpx.Request("POST", "https://example.com/chat")
		error = openai.APIStatusError("rate limited", response=httpx.Response(429, request=request), body=None)
		client = ProviderClient(provider="openrouter", api_key="k", client_factory=_FakeClientFactory(_FakeCompletions(error=error)))
		with self.assertRaises(ChatServiceError) as ctx:
			client.complete(_MESSAGES, **_CALL)
		self.assertEqual(ctx.exception.status_code, 502)
		self.assertIn("429", ctx.exception.message)

	def test_empty_choices_is_provider_error(self) -> None:
		response = SimpleNamespace(choices=[], model="m", id="x", usage=None)
		client = ProviderClient(provider="openrouter", api_key="k", client_factory=_FakeClientFactory(_FakeCompletions(response=response)))
		with self.assertRaises(ChatServiceError) as ctx:
			client.complete(_MESSAGES, **_CALL)
		self.assertEqual(ctx.exception.code, "station_ai_provider_error")

	def test_stream_lines_requests_usage_and_yields_raw_lines(self) -> None:
		completions = _FakeCompletions(lines=["data: {}", "", "data: [DONE]"])
		client = ProviderClient(provider="openrouter", api_key="k", client_factory=_FakeClientFactory(completions))
		with client.stream_lines(_MESSAGES, **_CALL) as lines:
			self.assertEqual(list(lines), ["data: {}", "", "data: [DONE]"])
		self.assertTrue(completions.kwargs[0]["stream"])
		self.assertEqual(completions.kwargs[0]["stream_options"], {"include_usage": True})

	def test_stream_open_failure_maps_to_provider_error(self) -> None:
		error = openai.APIConnectionError(request=httpx.Request("POST", "https://example.com/chat"))
		client = ProviderClient(provider="openrouter", api_key="k", client_factory=_FakeClientFactory(_FakeCompletions(error=error)))
		with self.assertRaises(ChatServiceError) as ctx:
			with client.stream_lines(_MESSAGES, **_CALL):
				pass
		self.assertEqual(ctx.exception.status_code, 502)


class DocsAdapterTests(TestCase):
	def test_fetch_page_reads_raw_markdown(self) -> None:
		seen = []

		def handler(request: httpx.Request) -> httpx.Response:
			seen.append(str(request.url))
			if request.url.path.endswith("/Home.md"):
				return httpx.Response(200, text="# Home")
			return httpx.Response(404, text="not found")

		docs = HttpDocsSource(raw_base_url="https://raw.example.com/wiki", timeout_s=1.0, transport=httpx.MockTransport(handler))
		self.assertEqual(docs.fetch_page("acme/flipper", "Home"), "# Home")
		self.assertEqual(seen, ["https://raw.example.com/wiki/acme/flipper/Home.md"])
		with self.assertRaises(DocsSourceError):
			docs.fetch_page("acme/flipper", "Missing")

	def test_read_overview_from_disk(self) -> None:
		with tempfile.TemporaryDirectory() as tmp:
			path = Path(tmp) / "README.md"
			path.write_text("# Overview\nhello", encoding="utf-8")
			self.assertEqual(HttpDocsSource(overview_path=str(path)).read_overview(), "# Overview\nhello")
			with self.assertRaises(DocsSourceError):
				HttpDocsSource(overview_path=str(Path(tmp) / "missing.md")).read_overview()

	def test_semantic_index_round_trip(self) -> None:
		bodies = []

		def handler(request: httpx.Request) -> httpx.Response:
			bodies.append(request.read())
			return httpx.Response(
				200,
				json={
					"snippets": [
						{"title": "Execution Plan", "content": "Walks the book.", "page": "Execution-Plan", "score": "0.8"},
						{"title": "Empty", "content": "  "},
					],
					"warnings": ["low retrieval confidence", ""],
				},
			)

		index = HttpSemanticIndex(index_url="https://index.example.com/", timeout_s=1.0, transport=httpx.MockTransport(handler))
		snippets, warnings = index.retrieve("acme/flipper", "en", "execution plan", "product_help", 6)
		self.assertEqual(len(snippets), 1)
		self.assertEqual(snippets[0].source_label, "WIKI")
		self.assertEqual(snippets[0].score, 0.8)
		self.assertEqual(snippets[0].locale, "en")
		self.assertEqual(warnings, ["low retrieval confidence"])
		self.assertIn(b'"k":6', bodies[0].replace(b" ", b""))

	def test_semantic_index_errors(self) -> None:
		with self.assertRaises(DocsSourceError):
			HttpSemanticIndex(index_url="").retrieve("a/b", "en", "q", "general", 6)
		failing = HttpSemanticIndex(
			index_url="https://index.example.com",
			timeout_s=1.0,
			transport=httpx.MockTransport(lambda request: httpx.Response(500)),
		)
		with self.assertRaises(DocsSourceError):
			failing.retrieve("a/b", "en", "q", "general", 6)


class SearchAdapterTests(TestCase):
	def test_parses_abstract_and_nested_topics(self) -> None:
		params = []

		def handler(request: httpx.Request) -> httpx.Response:
			params.append(dict(request.url.params))
			return httpx.Response(
				200,
				json={
					"Heading": "EVE Online",
					"AbstractText": "EVE Online is a space MMO.",
					"AbstractURL": "https://en.wikipedia.org/wiki/EVE_Online",
					"Results": [],
					"RelatedTopics": [
						{"Text": "Jita - main trade hub", "FirstURL": "https://example.com/jita"},
						{"Name": "Markets", "Topics": [{"Text": "Amarr - second hub", "FirstURL": "https://example.com/amarr"}]},
						{"Text": ""},
					],
				},
			)

		search = DuckDuckGoSearch(search_url="https://search.example.com/", timeout_s=1.0, transport=httpx.MockTransport(handler))
		results = search.search("eve trade hubs", "ru", 4)
		self.assertEqual([item["title"] for item in results], ["EVE Online", "Jita", "Amarr"])
		self.assertEqual(results[1]["url"], "https://example.com/jita")
		self.assertEqual(params[0]["kl"], "ru-ru")
		self.assertEqual(params[0]["format"], "json")

	def test_respects_limit(self) -> None:
		topics = [{"Text": f"Topic {index}", "FirstURL": f"https://example.com/{index}"} for index in range(10)]
		transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"RelatedTopics": topics}))
		results = DuckDuckGoSearch(search_url="https://search.example.com/", timeout_s=1.0, transport=transport).search("q", "en", 4)
		self.assertEqual(len(results), 4)

	def test_http_failure_raises(self) -> None:
		transport = httpx.MockTransport(lambda request: httpx.Response(503))
		with self.assertRaises(WebSearchError):
			DuckDuckGoSearch(search_url="https://search.example.com/", timeout_s=1.0, transport=transport).search("q", "en", 4)


class AccountAdapterTests(TestCase):
	def test_esi_requests_carry_bearer_token(self) -> None:
		seen = []

		def handler(request: httpx.Request) -> httpx.Response:
			seen.append((request.url.path, request.headers["Authorization"], request.url.params["datasource"]))
			if request.url.path.endswith("/wallet/"):
				return httpx.Response(200, json=123456.78)
			if request.url.path.endswith("/orders/"):
				return httpx.Response(200, json=[{"order_id": 1, "is_buy_order": True}, "junk"])
			return httpx.Response(200, json=[{"transaction_id": 5}])

		account = EsiAccountData(base_url="https://esi.example.com/latest", transport=httpx.MockTransport(handler))
		self.assertEqual(account.wallet_balance(42, "tok"), 123456.78)
		self.assertEqual(account.orders(42, "tok"), [{"order_id": 1, "is_buy_order": True}])
		self.assertEqual(account.transactions(42, "tok"), [{"transaction_id": 5}])
		self.assertEqual(seen[0], ("/latest/characters/42/wallet/", "Bearer tok", "tranquility"))
		self.assertEqual(seen[2][0], "/latest/characters/42/wallet/transactions/")

	def test_esi_failures_raise_account_error(self) -> None:
		account = EsiAccountData(
			base_url="https://esi.example.com/latest",
			transport=httpx.MockTransport(lambda request: httpx.Response(403, json={"error": "forbidden"})),
		)
		with self.assertRaises(AccountDataError) as ctx:
			account.orders(42, "tok")
		self.assertIn("HTTP 403", str(ctx.exception))

	def test_unexpected_wallet_payload_raises(self) -> None:
		account = EsiAccountData(
			base_url="https://esi.example.com/latest",
			transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"balance": 1})),
		)
		with self.assertRaises(AccountDataError):
			account.wallet_balance(42, "tok")

	def test_static_session_reads_environment(self) -> None:
		with patch.dict(os.environ, {"STATION_AI_CHARACTER_ID": "90000001", "STATION_AI_ACCESS_TOKEN": "tok"}, clear=False):
			provider = StaticSessionProvider()
			session = provider.resolve()
			self.assertEqual(session.character_id, 90000001)
			self.assertEqual(provider.refresh(session).access_token, "tok")
		with patch.dict(os.environ, {"STATION_AI_CHARACTER_ID": "", "STATION_AI_ACCESS_TOKEN": ""}, clear=False):
			with self.assertRaises(SessionUnavailableError):
				StaticSessionProvider().resolve()
