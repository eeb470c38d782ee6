from __future__ import annotations

from typing import Any, Dict, List

import httpx

from station_ai.backend import config
from station_ai.backend.errors import WebSearchError


_LOCALE_REGIONS = {"en": "us-en", "ru": "ru-ru"}


def _title_from_text(text: str) -> str:
	head = text.split(" - ", 1)[0].strip()
	return head[:120]


def _flatten_topics(topics: List[Any]) -> List[Dict[str, Any]]:
	flat: List[Dict[str, Any]] = []
	for topic in topics:
		if not isinstance(topic, dict):
			continue
		nested = topic.get("Topics")
		if isinstance(nested, list):
			flat.extend(_flatten_topics(nested))
			continue
		flat.append(topic)
	return flat


class DuckDuckGoSearch:
	"""Web search through the DuckDuckGo instant-answer JSON API."""

	def __init__(
		self,
		*,
		search_url: str | None = None,
		timeout_s: float | None = None,
		transport: httpx.BaseTransport | None = None,
	):
		self._search_url = search_url or config.web_search_url()
		self._timeout_s = timeout_s or config.web_timeout()
		self._transport = transport

	def search(self, query: str, locale: str, limit: int) -> List[Dict[str, Any]]:
		params = {
			"q": query,
			"format": "json",
			"no_html": "1",
			"no_redirect": "1",
			"skip_disambig": "1",
			"kl": _LOCALE_REGIONS.get(locale, "wt-wt"),
		}
		try:
			with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
				response = client.get(self._search_url, params=params)
		except httpx.HTTPError as exc:
			raise WebSearchError(f"search request failed: {exc.__class__.__name__}") from exc
		if response.status_code != 200:
			raise WebSearchError(f"search returned HTTP {response.status_code}")
		try:
			payload = response.json()
		except ValueError as exc:
			raise WebSearchError("search returned invalid JSON") from exc
		if not isinstance(payload, dict):
			raise WebSearchError("search returned an unexpected payload shape")

		results: List[Dict[str, Any]] = []
		abstract = str(payload.get("AbstractText") or "").strip()
		if abstract:
			results.append(
				{
					"title": str(payload.get("Heading") or "").strip() or _title_from_text(abstract),
					"url": str(payload.get("AbstractURL") or "").strip(),
					"content": abstract,
				}
			)
		for topic in _flatten_topics(payload.get("Results") or []) + _flatten_topics(payload.get("RelatedTopics") or []):
			text = str(topic.get("Text") or "").strip()
			if not text:
				continue
			results.append(
				{
					"title": _title_from_text(text),
					"url": str(topic.get("FirstURL") or "").strip(),
					"content": text,
				}
			)
			if len(results) >= limit:
				break
		return results[:limit]
