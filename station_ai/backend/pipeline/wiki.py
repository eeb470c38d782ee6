from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, List, Protocol, Sequence, Tuple

from station_ai.backend import config, constants
from station_ai.backend.errors import DocsSourceError
from station_ai.backend.pipeline.keywords import extract_keywords
from station_ai.backend.pipeline.policies import trim_runes
from station_ai.backend.pipeline.types import Intent, KnowledgeSnippet
from station_ai.backend.services.cache_service import TTLCache


logger = logging.getLogger(__name__)

SEMANTIC_SNIPPET_RUNES = 760
PAGE_SNIPPET_RUNES = 1200
OVERVIEW_PAGE = "README"
_OVERVIEW_CACHE_KEY = "__local__|README"
_EXCERPT_LEAD_RUNES = 200
_MAX_PAGE_WORKERS = 6

_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_GITHUB_URL_PATTERN = re.compile(r"^(?:https?://)?(?:www\.)?github\.com/([^/\s]+)/([^/\s#?]+)", re.IGNORECASE)


class SemanticIndex(Protocol):
	def retrieve(self, repo: str, locale: str, query: str, intent: Intent, k: int) -> Tuple[List[KnowledgeSnippet], List[str]]:
		...


class DocsSource(Protocol):
	def fetch_page(self, repo: str, slug: str) -> str:
		...

	def read_overview(self) -> str:
		...


@dataclass(frozen=True)
class _PageError:
	message: str


def sanitize_wiki_repo(raw: str) -> str:
	"""Accept `owner/repo` or a GitHub (wiki) URL; anything else maps to the default repo."""
	candidate = (raw or "").strip()
	if not candidate:
		return config.default_wiki_repo()
	match = _GITHUB_URL_PATTERN.match(candidate)
	if match:
		owner, name = match.group(1), match.group(2)
		if name.endswith(".wiki"):
			name = name[: -len(".wiki")]
		elif name.endswith(".git"):
			name = name[: -len(".git")]
		candidate = f"{owner}/{name}"
	candidate = candidate.strip("/")
	if not _REPO_PATTERN.match(candidate) or ".." in candidate:
		return config.default_wiki_repo()
	return candidate


def wiki_page_url(repo: str, slug: str) -> str:
	return f"https://github.com/{repo}/wiki/{slug}"


def _score(content: str, keywords: Sequence[str]) -> int:
	lowered = content.lower()
	return sum(1 for keyword in keywords if keyword in lowered)


def _excerpt(content: str, keywords: Sequence[str], limit: int) -> str:
	text = content.strip()
	if len(text) <= limit:
		return text
	lowered = text.lower()
	hits = [lowered.find(keyword) for keyword in keywords]
	hits = [index for index in hits if index >= 0]
	start = 0
	if hits:
		start = max(min(hits) - _EXCERPT_LEAD_RUNES, 0)
		line_start = text.rfind("\n", 0, start)
		start = line_start + 1 if line_start >= 0 else start
	return trim_runes(text[start:], limit)


def _page_title(slug: str, content: str) -> str:
	for line in content.splitlines():
		stripped = line.strip()
		if stripped.startswith("#"):
			title = stripped.lstrip("#").strip()
			if title:
				return title
	return slug.replace("-", " ")


class WikiRetriever:
	"""Documentation snippets: semantic index first, known wiki pages as fallback."""

	def __init__(
		self,
		*,
		docs: DocsSource,
		page_cache: TTLCache,
		semantic_index: SemanticIndex | None = None,
		page_slugs: Sequence[str] = constants.WIKI_PAGE_SLUGS,
	):
		self._docs = docs
		self._page_cache = page_cache
		self._semantic_index = semantic_index
		self._page_slugs = tuple(page_slugs)

	def retrieve(
		self,
		*,
		repo: str,
		locale: str,
		query: str,
		intent: Intent,
		cancel_check: Callable[[], None] | None = None,
	) -> Tuple[List[KnowledgeSnippet], List[str]]:
		if self._semantic_index is not None:
			if cancel_check is not None:
				cancel_check()
			try:
				snippets, warnings = self._semantic_index.retrieve(repo, locale, query, intent, constants.WIKI_TOP_K)
			except DocsSourceError as exc:
				logger.info("semantic wiki index unavailable, using page fallback: %s", exc)
			else:
				if snippets:
					bounded = [
						replace(item, source_label="WIKI", content=trim_runes(item.content.strip(), SEMANTIC_SNIPPET_RUNES))
						for item in snippets[: constants.WIKI_TOP_K]
					]
					return bounded, list(warnings)
				logger.info("semantic wiki index returned no snippets, using page fallback")
		return self._fallback(repo=repo, locale=locale, query=query, cancel_check=cancel_check)

	def _cached_page(self, repo: str, slug: str, cancel_check: Callable[[], None] | None) -> str | None:
		key = f"{repo}|{slug}"
		cached = self._page_cache.get(key)
		if isinstance(cached, _PageError):
			return None
		if isinstance(cached, str):
			return cached
		if cancel_check is not None:
			cancel_check()
		try:
			content = self._docs.fetch_page(repo, slug)
		except DocsSourceError as exc:
			logger.warning("wiki page %s unavailable: %s", key, exc)
			self._page_cache.set(key, _PageError(str(exc)), constants.WIKI_ERROR_TTL_S)
			return None
		self._page_cache.set(key, content, constants.WIKI_PAGE_TTL_S)
		return content

	def _cached_overview(self) -> str | None:
		cached = self._page_cache.get(_OVERVIEW_CACHE_KEY)
		if isinstance(cached, _PageError):
			return None
		if isinstance(cached, str):
			return cached
		try:
			content = self._docs.read_overview()
		except DocsSourceError as exc:
			logger.warning("overview document unavailable: %s", exc)
			self._page_cache.set(_OVERVIEW_CACHE_KEY, _PageError(str(exc)), constants.WIKI_ERROR_TTL_S)
			return None
		self._page_cache.set(_OVERVIEW_CACHE_KEY, content, constants.WIKI_PAGE_TTL_S)
		return content

	def _fallback(
		self,
		*,
		repo: str,
		locale: str,
		query: str,
		cancel_check: Callable[[], None] | None,
	) -> Tuple[List[KnowledgeSnippet], List[str]]:
		workers = max(min(len(self._page_slugs), _MAX_PAGE_WORKERS), 1)
		with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="station-ai-wiki") as pool:
			futures = [pool.submit(self._cached_page, repo, slug, cancel_check) for slug in self._page_slugs]
			contents = [future.result() for future in futures]

		pages: List[Tuple[str, str, str, str]] = []
		for slug, content in zip(self._page_slugs, contents):
			if content and content.strip():
				pages.append(("WIKI", slug, content, wiki_page_url(repo, slug)))
		overview = self._cached_overview()
		if overview and overview.strip():
			pages.append(("README", OVERVIEW_PAGE, overview, ""))
		if not pages:
			return [], ["wiki context unavailable"]

		keywords = extract_keywords(query)
		scored = [(_score(content, keywords), index) for index, (_, _, content, _) in enumerate(pages)]
		ranked = [item for item in sorted(scored, key=lambda item: (-item[0], item[1])) if item[0] > 0]
		if ranked:
			chosen = ranked[: constants.WIKI_FALLBACK_PAGES]
		else:
			chosen = [(0, index) for index in range(min(len(pages), constants.WIKI_FALLBACK_PAGES))]

		snippets: List[KnowledgeSnippet] = []
		for score, index in chosen:
			label, page, content, url = pages[index]
			snippets.append(
				KnowledgeSnippet(
					source_label=label,  # type: ignore[arg-type]
					title=_page_title(page, content),
					content=_excerpt(content, keywords, PAGE_SNIPPET_RUNES),
					page=page,
					locale=locale,
					url=url,
					score=float(score),
				)
			)
		return snippets, []
