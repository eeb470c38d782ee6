from __future__ import annotations

import os

from station_ai.backend import constants


_DEFAULT_PLANNER_TIMEOUT_S = 35.0
_DEFAULT_TIMEOUT_S = 90.0
_DEFAULT_STREAM_TIMEOUT_S = 12 * 60.0
_DEFAULT_WIKI_TIMEOUT_S = 12.0
_DEFAULT_WEB_TIMEOUT_S = 10.0
_DEFAULT_WIKI_RAW_BASE_URL = "https://raw.githubusercontent.com/wiki"
_DEFAULT_WEB_SEARCH_URL = "https://api.duckduckgo.com/"
_DEFAULT_ESI_BASE_URL = "https://esi.evetech.net/latest"
_DEFAULT_OVERVIEW_PATH = "README.md"


def _str_env(name: str, default: str = "") -> str:
	return os.getenv(name, "").strip() or default


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
	raw = os.getenv(name, "").strip()
	if not raw:
		return default
	try:
		value = float(raw)
	except ValueError:
		return default
	return value if value > minimum else default


def planner_timeout() -> float:
	return _float_env("STATION_AI_PLANNER_TIMEOUT_S", _DEFAULT_PLANNER_TIMEOUT_S)


def provider_timeout() -> float:
	return _float_env("STATION_AI_TIMEOUT_S", _DEFAULT_TIMEOUT_S)


def stream_timeout() -> float:
	return _float_env("STATION_AI_STREAM_TIMEOUT_S", _DEFAULT_STREAM_TIMEOUT_S)


def wiki_timeout() -> float:
	return _float_env("STATION_AI_WIKI_TIMEOUT_S", _DEFAULT_WIKI_TIMEOUT_S)


def web_timeout() -> float:
	return _float_env("STATION_AI_WEB_TIMEOUT_S", _DEFAULT_WEB_TIMEOUT_S)


def provider_base_url_override() -> str:
	return _str_env("STATION_AI_PROVIDER_BASE_URL").rstrip("/")


def provider_base_url(provider: str) -> str:
	override = provider_base_url_override()
	if override:
		return override
	key = (provider or "").strip().lower()
	return constants.PROVIDER_BASE_URLS.get(key, constants.PROVIDER_BASE_URLS[constants.DEFAULT_PROVIDER])


def default_wiki_repo() -> str:
	return _str_env("STATION_AI_DEFAULT_WIKI_REPO", constants.DEFAULT_WIKI_REPO)


def wiki_index_url() -> str:
	return _str_env("STATION_AI_WIKI_INDEX_URL").rstrip("/")


def wiki_raw_base_url() -> str:
	return _str_env("STATION_AI_WIKI_RAW_BASE_URL", _DEFAULT_WIKI_RAW_BASE_URL).rstrip("/")


def overview_path() -> str:
	return _str_env("STATION_AI_OVERVIEW_PATH", _DEFAULT_OVERVIEW_PATH)


def web_search_url() -> str:
	return _str_env("STATION_AI_WEB_SEARCH_URL", _DEFAULT_WEB_SEARCH_URL)


def esi_base_url() -> str:
	return _str_env("STATION_AI_ESI_BASE_URL", _DEFAULT_ESI_BASE_URL).rstrip("/")


def character_id() -> int | None:
	raw = _str_env("STATION_AI_CHARACTER_ID")
	if not raw:
		return None
	try:
		value = int(raw)
	except ValueError:
		return None
	return value if value > 0 else None


def access_token() -> str:
	return _str_env("STATION_AI_ACCESS_TOKEN")


def log_level() -> str:
	return _str_env("STATION_AI_LOG_LEVEL", "INFO").upper()
