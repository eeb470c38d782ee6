from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

import httpx

from station_ai.backend import config
from station_ai.backend.errors import DocsSourceError
from station_ai.backend.pipeline.types import Intent, KnowledgeSnippet


logger = logging.getLogger(__name__)


class HttpDocsSource:
	"""Raw wiki pages over HTTP plus the local overview document."""

	def __init__(
		self,
		*,
		raw_base_url: str | None = None,
		overview_path: str | None = None,
		timeout_s: float | None = None,
		transport: httpx.BaseTransport | None = None,
	):
		self._raw_base_url = (raw_base_url or config.wiki_raw_base_url()).rstrip("/")
		self._overview_path = Path(overview_path or config.overview_path())
		self._timeout_s = timeout_s or config.wiki_timeout()
		self._transport = transport

	def page_url(self, repo: str, slug: str) -> str:
		return f"{self._raw_base_url}/{repo}/{slug}.md"

	def fetch_page(self, repo: str, slug: str) -> str:
		url = self.page_url(repo, slug)
		try:
			with httpx.Client(timeout=self._timeout_s, transport=self._transport, follow_redirects=True) as client:
				response = client.get(url)
		except httpx.HTTPError as exc:
			raise DocsSourceError(f"{slug}: {exc.__class__.__name__}") from exc
		if response.status_code != 200:
			raise DocsSourceError(f"{slug}: HTTP {response.status_code}")
		return response.text

	def read_overview(self) -> str:
		try:
			return self._overview_path.read_text(encoding="utf-8")
		except OSError as exc:
			raise DocsSourceError(f"overview {self._overview_path}: {exc.strerror or exc}") from exc


def _snippet_from_payload(item: Dict[str, Any], locale: str) -> KnowledgeSnippet | None:
	content = str(item.get("content") or "").strip()
	if not content:
		return None
	try:
		score = float(item.get("score") or 0.0)
	except (TypeError, ValueError):
		score = 0.0
	return KnowledgeSnippet(
		source_label="WIKI",
		title=str(item.get("title") or item.get("page") or "").strip(),
		content=content,
		page=str(item.get("page") or "").strip(),
		section=str(item.get("section") or "").strip(),
		locale=str(item.get("locale") or locale).strip(),
		url=str(item.get("url") or "").strip(),
		score=score,
	)


class HttpSemanticIndex:
	"""Client for an external semantic documentation index.

	The service ranks chunks itself; this client only forwards the query and
	maps `{"snippets": [...], "warnings": [...]}` back into snippets.
	"""

	def __init__(
		self,
		*,
		index_url: str | None = None,
		timeout_s: float | None = None,
		transport: httpx.BaseTransport | None = None,
	):
		self._index_url = (config.wiki_index_url() if index_url is None else index_url).rstrip("/")
		self._timeout_s = timeout_s or config.wiki_timeout()
		self._transport = transport

	def retrieve(self, repo: str, locale: str, query: str, intent: Intent, k: int) -> Tuple[List[KnowledgeSnippet], List[str]]:
		if not self._index_url:
			raise DocsSourceError("semantic index not configured")
		body = {"repo": repo, "locale": locale, "query": query, "intent": intent, "k": k}
		try:
			with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
				response = client.post(f"{self._index_url}/retrieve", json=body)
		except httpx.HTTPError as exc:
			raise DocsSourceError(f"semantic index request failed: {exc.__class__.__name__}") from exc
		if response.status_code != 200:
			raise DocsSourceError(f"semantic index returned HTTP {response.status_code}")
		try:
			payload = response.json()
		except ValueError as exc:
			raise DocsSourceError("semantic index returned invalid JSON") from exc
		if not isinstance(payload, dict):
			raise DocsSourceError("semantic index returned an unexpected payload shape")

		snippets: List[KnowledgeSnippet] = []
		for item in payload.get("snippets") or []:
			if isinstance(item, dict):
				snippet = _snippet_from_payload(item, locale)
				if snippet is not None:
					snippets.append(snippet)
		warnings = [str(item) for item in payload.get("warnings") or [] if str(item).strip()]
		return snippets[:k], warnings
