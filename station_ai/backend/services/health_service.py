from __future__ import annotations

from typing import Dict

from station_ai.backend import config, constants
from station_ai.backend.services import chat_service


def get_summary() -> Dict[str, object]:
	providers = {name: config.provider_base_url(name) for name in constants.PROVIDER_BASE_URLS}
	return {
		"service": {"name": constants.APP_NAME, "version": constants.APP_VERSION},
		"providers": {
			"default": constants.DEFAULT_PROVIDER,
			"base_urls": providers,
			"base_url_override": bool(config.provider_base_url_override()),
		},
		"timeouts_s": {
			"planner": config.planner_timeout(),
			"generation": config.provider_timeout(),
			"stream": config.stream_timeout(),
			"wiki_page": config.wiki_timeout(),
			"web_query": config.web_timeout(),
		},
		"knowledge": {
			"default_wiki_repo": config.default_wiki_repo(),
			"semantic_index_configured": bool(config.wiki_index_url()),
			"web_search_url": config.web_search_url(),
		},
		"account": {"session_configured": config.character_id() is not None and bool(config.access_token())},
		"caches": {
			"wiki_pages": chat_service.page_cache().size(),
			"account_transactions": chat_service.transactions_cache().size(),
		},
	}
