from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List

import httpx
import openai
from openai import OpenAI

from station_ai.backend import config, constants
from station_ai.backend.errors import ChatServiceError
from station_ai.backend.pipeline.streaming import decode_text_content
from station_ai.backend.pipeline.types import ProviderReply


logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]


def _provider_error(exc: Exception) -> ChatServiceError:
	if isinstance(exc, (openai.APITimeoutError, httpx.TimeoutException)):
		return ChatServiceError(
			status_code=504,
			code="station_ai_provider_timeout",
			message="Language model provider timed out.",
		)
	if isinstance(exc, openai.APIStatusError):
		return ChatServiceError(
			status_code=502,
			code="station_ai_provider_error",
			message=f"Language model provider returned HTTP {exc.status_code}.",
		)
	return ChatServiceError(
		status_code=502,
		code="station_ai_provider_error",
		message="Language model provider request failed.",
	)


def _usage_dict(usage: Any) -> Dict[str, Any]:
	if usage is None:
		return {}
	if isinstance(usage, dict):
		return dict(usage)
	dump = getattr(usage, "model_dump", None)
	if callable(dump):
		value = dump(exclude_none=True)
		if isinstance(value, dict):
			return value
	return {}


class ProviderClient:
	"""OpenAI-compatible chat completions for one provider and API key."""

	def __init__(self, *, provider: str, api_key: str, client_factory: ClientFactory = OpenAI):
		self.provider = provider
		self._api_key = api_key
		self._base_url = config.provider_base_url(provider)
		self._client_factory = client_factory

	def _client(self, timeout: float):
		return self._client_factory(
			api_key=self._api_key,
			base_url=self._base_url,
			timeout=timeout,
			max_retries=0,
			default_headers={"X-Title": constants.APP_NAME},
		)

	def complete(
		self,
		messages: List[Dict[str, str]],
		*,
		model: str,
		temperature: float,
		max_tokens: int,
		timeout: float,
	) -> ProviderReply:
		client = self._client(timeout)
		try:
			response = client.chat.completions.create(
				model=model,
				messages=messages,
				temperature=temperature,
				max_tokens=max_tokens,
			)
		except openai.APIError as exc:
			logger.warning("provider %s call failed: %s", self.provider, exc.__class__.__name__)
			raise _provider_error(exc) from exc

		choices = getattr(response, "choices", None) or []
		if not choices:
			raise ChatServiceError(
				status_code=502,
				code="station_ai_provider_error",
				message="Language model provider returned no choices.",
			)
		message = getattr(choices[0], "message", None)
		content = getattr(message, "content", None) if message is not None else None
		return ProviderReply(
			answer=decode_text_content(content).strip(),
			model=getattr(response, "model", None) or model,
			provider_message_id=getattr(response, "id", None) or "",
			usage=_usage_dict(getattr(response, "usage", None)),
		)

	@contextmanager
	def stream_lines(
		self,
		messages: List[Dict[str, str]],
		*,
		model: str,
		temperature: float,
		max_tokens: int,
		timeout: float,
	) -> Iterator[Iterator[str]]:
		"""Open a streaming completion and yield its raw SSE lines."""
		client = self._client(timeout)
		try:
			with client.chat.completions.with_streaming_response.create(
				model=model,
				messages=messages,
				temperature=temperature,
				max_tokens=max_tokens,
				stream=True,
				stream_options={"include_usage": True},
			) as response:
				yield response.iter_lines()
		except (openai.APIError, httpx.HTTPError) as exc:
			logger.warning("provider %s stream failed: %s", self.provider, exc.__class__.__name__)
			raise _provider_error(exc) from exc
