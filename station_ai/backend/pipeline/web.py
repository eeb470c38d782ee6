from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Protocol, Tuple

from station_ai.backend import constants
from station_ai.backend.errors import WebSearchError
from station_ai.backend.pipeline.keywords import extract_keywords, normalize_text
from station_ai.backend.pipeline.policies import trim_runes
from station_ai.backend.pipeline.types import Intent, KnowledgeSnippet


logger = logging.getLogger(__name__)

WEB_SNIPPET_RUNES = 600
_MAX_QUERY_RUNES = 300
_VARIANT_KEYWORDS = 8
_REPHRASE_KEYWORDS = 4
_DEDUPE_PREFIX_RUNES = 80

_REPHRASINGS: Dict[str, Dict[str, str]] = {
	"en": {
		"trading_analysis": "EVE Online station trading market {topic}",
		"web_research": "EVE Online latest news {topic}",
		"product_help": "EVE Online {topic} guide",
		"debug_support": "EVE Online {topic} issue",
		"general": "EVE Online {topic}",
	},
	"ru": {
		"trading_analysis": "EVE Online торговля на станции рынок {topic}",
		"web_research": "EVE Online новости {topic}",
		"product_help": "EVE Online {topic} гайд",
		"debug_support": "EVE Online {topic} проблема",
		"general": "EVE Online {topic}",
	},
}


class WebSearch(Protocol):
	def search(self, query: str, locale: str, limit: int) -> List[Dict[str, Any]]:
		...


def web_query_variants(locale: str, message: str, intent: Intent) -> List[str]:
	"""Up to three distinct search queries: raw message, keywords + domain hint, rephrasing."""
	raw = trim_runes(" ".join((message or "").split()), _MAX_QUERY_RUNES)
	keywords = extract_keywords(message)
	candidates = [raw]
	if keywords:
		keyword_query = " ".join(keywords[:_VARIANT_KEYWORDS])
		if constants.WEB_DOMAIN_HINT.lower() not in keyword_query:
			keyword_query = f"{keyword_query} {constants.WEB_DOMAIN_HINT}"
		candidates.append(keyword_query)
	templates = _REPHRASINGS.get(locale, _REPHRASINGS["en"])
	template = templates.get(intent, templates["general"])
	topic = " ".join(keyword for keyword in keywords[:_REPHRASE_KEYWORDS] if keyword not in ("eve", "online"))
	candidates.append(" ".join(template.format(topic=topic or raw).split()))

	variants: List[str] = []
	seen = set()
	for candidate in candidates:
		key = normalize_text(candidate)
		if not key or key in seen:
			continue
		seen.add(key)
		variants.append(candidate.strip())
		if len(variants) >= constants.WEB_MAX_QUERIES:
			break
	return variants


def _dedupe_key(item: Dict[str, Any]) -> str:
	url = str(item.get("url") or "").strip().lower().rstrip("/")
	if url:
		return url
	title = normalize_text(str(item.get("title") or ""))
	content = normalize_text(str(item.get("content") or ""))[:_DEDUPE_PREFIX_RUNES]
	return f"{title}|{content}"


class WebRetriever:
	def __init__(self, *, search: WebSearch):
		self._search = search

	def _run_query(self, query: str, locale: str, cancel_check: Callable[[], None] | None) -> List[Dict[str, Any]]:
		if cancel_check is not None:
			cancel_check()
		return self._search.search(query, locale, constants.WEB_MAX_SNIPPETS)

	def retrieve(
		self,
		*,
		locale: str,
		message: str,
		intent: Intent,
		cancel_check: Callable[[], None] | None = None,
	) -> Tuple[List[KnowledgeSnippet], List[str]]:
		queries = web_query_variants(locale, message, intent)
		if not queries:
			return [], ["web search returned no data"]

		results: List[List[Dict[str, Any]] | None] = []
		with ThreadPoolExecutor(max_workers=len(queries), thread_name_prefix="station-ai-web") as pool:
			futures = [pool.submit(self._run_query, query, locale, cancel_check) for query in queries]
			for query, future in zip(queries, futures):
				try:
					results.append(future.result())
				except WebSearchError as exc:
					logger.warning("web query %r failed: %s", query, exc)
					results.append(None)

		failed = sum(1 for items in results if items is None)
		if failed == len(queries):
			return [], ["web search unavailable"]

		ranked: List[Tuple[int, int, Dict[str, Any]]] = []
		for query_index, items in enumerate(results):
			for rank, item in enumerate(items or []):
				if isinstance(item, dict):
					ranked.append((query_index, rank, item))
		ranked.sort(key=lambda entry: (entry[0], entry[1]))

		snippets: List[KnowledgeSnippet] = []
		seen = set()
		for _, rank, item in ranked:
			content = " ".join(str(item.get("content") or "").split())
			title = " ".join(str(item.get("title") or "").split())
			if not content and not title:
				continue
			key = _dedupe_key(item)
			if key in seen:
				continue
			seen.add(key)
			snippets.append(
				KnowledgeSnippet(
					source_label="WEB",
					title=title or trim_runes(content, 80),
					content=trim_runes(content or title, WEB_SNIPPET_RUNES),
					locale=locale,
					url=str(item.get("url") or ""),
					score=round(1.0 / (rank + 1), 3),
				)
			)
			if len(snippets) >= constants.WEB_MAX_SNIPPETS:
				break

		warnings: List[str] = []
		if failed:
			warnings.append(f"web search partial: {failed} of {len(queries)} queries failed")
		elif not snippets:
			warnings.append("web search returned no data")
		return snippets, warnings
