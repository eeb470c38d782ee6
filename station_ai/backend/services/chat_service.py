from __future__ import annotations

import logging
import math
import threading
from typing import Any, Dict, Iterator

from station_ai.backend import config, constants
from station_ai.backend.adapters.account_adapter import EsiAccountData, StaticSessionProvider
from station_ai.backend.adapters.docs_adapter import HttpDocsSource, HttpSemanticIndex
from station_ai.backend.adapters.provider_adapter import ProviderClient
from station_ai.backend.adapters.search_adapter import DuckDuckGoSearch
from station_ai.backend.errors import ChatServiceError, RequestCanceledError
from station_ai.backend.pipeline import PipelineDependencies, PipelineOrchestrator, pipeline_metadata
from station_ai.backend.pipeline.intent import normalize_history
from station_ai.backend.pipeline.runtime import RuntimeContextBuilder
from station_ai.backend.pipeline.streaming import RESULT_PCT, StreamDeliveryController, estimate_tokens
from station_ai.backend.pipeline.types import PipelineRequest, PipelineState
from station_ai.backend.pipeline.web import WebRetriever
from station_ai.backend.pipeline.wiki import WikiRetriever, sanitize_wiki_repo
from station_ai.backend.schemas import ChatRequest
from station_ai.backend.services.cache_service import TTLCache


__all__ = [
	"ChatServiceError",
	"build_dependencies",
	"normalize_chat_request",
	"respond",
	"stream_respond",
]

logger = logging.getLogger(__name__)

_WIKI_PAGE_CACHE = TTLCache(name="wiki_pages", default_ttl_s=constants.WIKI_PAGE_TTL_S)
_TRANSACTIONS_CACHE = TTLCache(name="account_transactions", default_ttl_s=constants.TRANSACTIONS_TTL_S)

CLIENT_CLOSED_REQUEST = 499

_GENERATING_PCT = 45.0
_VALIDATING_PCT = 92.0


def page_cache() -> TTLCache:
	return _WIKI_PAGE_CACHE


def transactions_cache() -> TTLCache:
	return _TRANSACTIONS_CACHE


def _bad_request(message: str) -> ChatServiceError:
	return ChatServiceError(status_code=400, code="station_ai_bad_request", message=message)


def _normalize_locale(raw: str) -> str:
	candidate = (raw or "").strip().lower()[:2]
	return candidate if candidate in constants.SUPPORTED_LOCALES else "en"


def _normalize_temperature(raw: float | None) -> float:
	if raw is None:
		return constants.DEFAULT_TEMPERATURE
	if not math.isfinite(raw):
		raise _bad_request("temperature must be a finite number.")
	return min(max(raw, 0.0), 2.0)


def _normalize_max_tokens(raw: int | None) -> int:
	if raw is None or raw <= 0:
		return constants.DEFAULT_MAX_TOKENS
	return min(raw, constants.MAX_TOKENS_LIMIT)


def normalize_chat_request(payload: ChatRequest, cancel_event: threading.Event | None = None) -> PipelineRequest:
	provider = payload.provider.strip().lower() or constants.DEFAULT_PROVIDER
	if provider not in constants.PROVIDER_BASE_URLS and not config.provider_base_url_override():
		raise _bad_request(f"Unsupported provider '{provider}'.")
	if not payload.api_key.strip():
		raise _bad_request("api_key is required.")
	model = payload.model.strip()
	if not model:
		raise _bad_request("model is required.")
	user_message = payload.user_message.strip()
	if not user_message:
		raise _bad_request("user_message is required.")

	context = payload.context.model_copy(
		update={"rows": list(payload.context.rows[: constants.MAX_CONTEXT_ROWS]), "runtime": None}
	)
	return PipelineRequest(
		provider=provider,
		api_key=payload.api_key.strip(),
		model=model,
		planner_model=payload.planner_model.strip() or model,
		temperature=_normalize_temperature(payload.temperature),
		max_tokens=_normalize_max_tokens(payload.max_tokens),
		assistant_name=payload.assistant_name.strip() or constants.DEFAULT_ASSISTANT_NAME,
		locale=_normalize_locale(payload.locale),
		user_message=user_message,
		enable_wiki=payload.enable_wiki,
		enable_web=payload.enable_web,
		enable_planner=payload.enable_planner,
		wiki_repo=sanitize_wiki_repo(payload.wiki_repo),
		history=normalize_history(payload.history),
		context=context,
		cancel_event=cancel_event or threading.Event(),
	)


def _semantic_index() -> HttpSemanticIndex | None:
	if not config.wiki_index_url():
		return None
	return HttpSemanticIndex()


def build_dependencies(request: PipelineRequest) -> PipelineDependencies:
	return PipelineDependencies(
		provider=ProviderClient(provider=request.provider, api_key=request.api_key),
		runtime_builder=RuntimeContextBuilder(
			sessions=StaticSessionProvider(),
			account=EsiAccountData(),
			transactions_cache=_TRANSACTIONS_CACHE,
		),
		wiki=WikiRetriever(docs=HttpDocsSource(), page_cache=_WIKI_PAGE_CACHE, semantic_index=_semantic_index()),
		web=WebRetriever(search=DuckDuckGoSearch()),
	)


def _result_payload(state: PipelineState) -> Dict[str, Any]:
	request = state.request
	reply = state.reply
	return {
		"answer": state.answer,
		"provider": request.provider,
		"model": (reply.model if reply is not None else "") or request.model,
		"assistant": request.assistant_name,
		"intent": state.intent,
		"pipeline": pipeline_metadata(state),
		"warnings": list(state.warnings),
		"provider_id": reply.provider_message_id if reply is not None else "",
		"provider_usage": dict(reply.usage) if reply is not None else {},
	}


def respond(payload: ChatRequest, cancel_event: threading.Event | None = None) -> Dict[str, Any]:
	request = normalize_chat_request(payload, cancel_event)
	orchestrator = PipelineOrchestrator(build_dependencies(request))
	try:
		state = orchestrator.run(request)
	except RequestCanceledError as exc:
		logger.info("station ai request canceled before an answer was produced")
		raise ChatServiceError(
			status_code=CLIENT_CLOSED_REQUEST,
			code="station_ai_request_canceled",
			message="Request canceled by the client.",
		) from exc
	return _result_payload(state)


def _prompt_tokens_est(state: PipelineState) -> int:
	return estimate_tokens("".join(message["content"] for message in state.messages))


def _progress_event(message: str, pct: float, prompt_tokens: int = 0, completion_tokens: int = 0) -> Dict[str, Any]:
	return {
		"type": "progress",
		"message": message,
		"progress_pct": pct,
		"prompt_tokens_est": prompt_tokens,
		"completion_tokens_est": completion_tokens,
		"total_tokens_est": prompt_tokens + completion_tokens,
	}


def stream_respond(request: PipelineRequest) -> Iterator[Dict[str, Any]]:
	"""Yield NDJSON-ready events for one already-normalized request.

	Closing the generator (client went away) sets the request's cancel event
	and closes the provider stream.
	"""
	orchestrator = PipelineOrchestrator(build_dependencies(request))
	provider = orchestrator.provider
	state = PipelineState(request=request)
	progress = 0.0
	try:
		for message, pct in orchestrator.stages(state):
			progress = pct
			yield _progress_event(message, pct)

		if state.short_circuit_answer is not None:
			orchestrator.finish_short_circuit(state)
			yield {**_result_payload(state), "type": "result", "usage": {}, "progress_pct": RESULT_PCT, "progress_text": "Done"}
			return

		prompt_tokens = _prompt_tokens_est(state)
		progress = _GENERATING_PCT
		yield _progress_event("Generating answer", progress, prompt_tokens)

		controller = StreamDeliveryController(model=request.model, max_tokens=request.max_tokens)
		with provider.stream_lines(
			state.messages,
			model=request.model,
			temperature=request.temperature,
			max_tokens=request.max_tokens,
			timeout=config.stream_timeout(),
		) as lines:
			for line in lines:
				request.raise_if_canceled()
				for event in controller.feed(line):
					progress = max(progress, float(event["progress_pct"]))
					yield event
				if controller.done:
					break
		for event in controller.close():
			yield event

		progress = max(progress, _VALIDATING_PCT)
		yield _progress_event("Validating answer", progress, prompt_tokens, controller.completion_tokens_est)
		orchestrator.settle(state, controller.reply())

		result = _result_payload(state)
		usage = dict(controller.usage) or {
			"prompt_tokens": prompt_tokens,
			"completion_tokens": estimate_tokens(state.answer),
			"total_tokens": prompt_tokens + estimate_tokens(state.answer),
			"estimated": True,
		}
		logger.info(
			"station ai stream finished intent=%s deltas=%d attempts=%d",
			state.intent,
			controller.delta_count,
			state.attempts,
		)
		yield {**result, "type": "result", "usage": usage, "progress_pct": RESULT_PCT, "progress_text": "Done"}
	except ChatServiceError as exc:
		logger.warning("station ai stream failed: %s (%s)", exc.code, exc.message)
		yield {"type": "error", "code": exc.code, "message": exc.message, "progress_pct": progress}
	except RequestCanceledError:
		logger.info("station ai stream canceled")
	finally:
		request.cancel_event.set()
