from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple

from station_ai.backend import config
from station_ai.backend.pipeline import prompts
from station_ai.backend.pipeline.intent import detect_intent
from station_ai.backend.pipeline.planner import default_plan, run_planner
from station_ai.backend.pipeline.policies import AnswerGate
from station_ai.backend.pipeline.runtime import RuntimeContextBuilder, needs_runtime_context
from station_ai.backend.pipeline.scope import preflight, preflight_refusal, scope_context
from station_ai.backend.pipeline.trace import record, serialize_trace
from station_ai.backend.pipeline.types import (
	ChatCompletionClient,
	PipelineRequest,
	PipelineState,
	ProviderReply,
	RuntimeContext,
)
from station_ai.backend.pipeline.web import WebRetriever
from station_ai.backend.pipeline.wiki import WikiRetriever


logger = logging.getLogger(__name__)

StageProgress = Tuple[str, float]

_RUNTIME_NOT_CONFIGURED = {
	"en": "account data source is not configured",
	"ru": "источник данных аккаунта не настроен",
}


@dataclass
class PipelineDependencies:
	provider: ChatCompletionClient
	runtime_builder: RuntimeContextBuilder | None = None
	wiki: WikiRetriever | None = None
	web: WebRetriever | None = None


def run_intent_stage(state: PipelineState) -> None:
	request = state.request
	state.heuristic_intent = detect_intent(request.user_message, request.history)
	record(state, stage="intent", status="pass", detail=f"heuristic intent {state.heuristic_intent}")


def run_planner_stage(state: PipelineState, provider: ChatCompletionClient) -> None:
	request = state.request
	if not request.enable_planner:
		state.plan = default_plan(state.heuristic_intent)
		record(state, stage="planner", status="skipped", detail="planner disabled; default plan")
		return
	plan, warnings = run_planner(provider, request, state.heuristic_intent, request.history)
	state.plan = plan
	for warning in warnings:
		state.warn(warning)
	if warnings:
		record(state, stage="planner", status="fallback", detail="; ".join(warnings))
	else:
		record(state, stage="planner", status="pass", detail=f"intent {plan.intent}, level {plan.context_level}")
	if plan.wants_clarification:
		state.short_circuit_answer = plan.clarification
		record(state, stage="planner", status="blocked", detail="clarification requested")


def run_scope_stage(state: PipelineState) -> None:
	request = state.request
	plan = state.plan or default_plan(state.heuristic_intent)
	state.scoped_context = scope_context(request.context, state.intent, plan)
	status = "pass" if len(state.scoped_context.rows) == len(request.context.rows) else "adjusted"
	record(
		state,
		stage="context_scope",
		status=status,
		detail=f"rows {len(request.context.rows)} -> {len(state.scoped_context.rows)}",
	)


def run_runtime_stage(state: PipelineState, builder: RuntimeContextBuilder | None) -> None:
	request = state.request
	state.runtime_requested = needs_runtime_context(state.intent, request.user_message)
	if not state.runtime_requested:
		record(state, stage="runtime_context", status="skipped", detail="not requested")
		return
	if builder is None:
		note = _RUNTIME_NOT_CONFIGURED.get(request.locale, _RUNTIME_NOT_CONFIGURED["en"])
		state.runtime = RuntimeContext(notes=[note])
	else:
		rows = state.scoped_context.rows if state.scoped_context is not None else request.context.rows
		state.runtime = builder.build(locale=request.locale, rows=rows, cancel_check=request.raise_if_canceled)
	for note in state.runtime.notes:
		state.warn(f"runtime: {note}")
	record(
		state,
		stage="runtime_context",
		status="pass" if state.runtime.available else "fallback",
		detail="available" if state.runtime.available else "unavailable",
	)


def run_preflight_stage(state: PipelineState) -> None:
	request = state.request
	plan = state.plan or default_plan(state.heuristic_intent)
	runtime_available = state.runtime is not None and state.runtime.available
	result = preflight(request.locale, plan, state.scoped_context, state.runtime_requested, runtime_available)
	state.preflight = result
	if result.status == "fail":
		state.short_circuit_answer = preflight_refusal(request.locale, result.missing)
		record(state, stage="preflight", status="blocked", detail="missing " + ", ".join(result.missing))
		logger.info("preflight blocked generation: missing=%s", result.missing)
		return
	record(
		state,
		stage="preflight",
		status="pass" if result.status == "pass" else "adjusted",
		detail=result.status,
	)


def run_retrieval_stage(state: PipelineState, wiki: WikiRetriever | None, web: WebRetriever | None) -> None:
	request = state.request
	plan = state.plan or default_plan(state.heuristic_intent)
	if state.intent == "smalltalk":
		record(state, stage="retrieval", status="skipped", detail="smalltalk")
		return

	if plan.need_wiki and request.enable_wiki and wiki is not None:
		snippets, warnings = wiki.retrieve(
			repo=request.wiki_repo,
			locale=request.locale,
			query=request.user_message,
			intent=state.intent,
			cancel_check=request.raise_if_canceled,
		)
		state.wiki_snippets = snippets
		for warning in warnings:
			state.warn(warning)
		record(state, stage="wiki_retrieval", status="pass" if snippets else "fallback", detail=f"{len(snippets)} snippets")
	else:
		record(state, stage="wiki_retrieval", status="skipped", detail="not requested")

	if plan.need_web and request.enable_web and web is not None:
		snippets, warnings = web.retrieve(
			locale=request.locale,
			message=request.user_message,
			intent=state.intent,
			cancel_check=request.raise_if_canceled,
		)
		state.web_snippets = snippets
		for warning in warnings:
			state.warn(warning)
		record(state, stage="web_retrieval", status="pass" if snippets else "fallback", detail=f"{len(snippets)} snippets")
	else:
		record(state, stage="web_retrieval", status="skipped", detail="not requested")


def run_prompt_stage(state: PipelineState) -> None:
	request = state.request
	plan = state.plan or default_plan(state.heuristic_intent)
	context = state.scoped_context if state.scoped_context is not None else request.context
	runtime = state.runtime if state.runtime_requested else None
	notes = prompts.agent_notes(
		plan,
		context,
		wiki_snippets=state.wiki_snippets,
		web_snippets=state.web_snippets,
		runtime=runtime,
		runtime_requested=state.runtime_requested,
	)
	state.system_prompt = prompts.system_prompt(request.locale, request.assistant_name, plan)
	state.user_prompt = prompts.user_prompt(
		request.locale,
		request.user_message,
		prompts.serialize_context(context, runtime),
		plan,
		caveats=state.preflight.caveats if state.preflight is not None else (),
		notes=notes,
		wiki_snippets=state.wiki_snippets,
		web_snippets=state.web_snippets,
	)
	state.messages = prompts.build_messages(state.system_prompt, request.history, state.user_prompt)
	record(state, stage="prompt", status="pass", detail=f"{len(state.messages)} messages")


class PipelineOrchestrator:
	"""Runs the advisory stages in their fixed order for one request."""

	def __init__(self, dependencies: PipelineDependencies):
		self._deps = dependencies

	@property
	def provider(self) -> ChatCompletionClient:
		return self._deps.provider

	def stages(self, state: PipelineState) -> Iterator[StageProgress]:
		"""Run every stage up to prompt assembly, yielding (label, progress) after each.

		Stops early once a stage produced a final answer (clarification or
		preflight refusal); no provider call happens after that point.
		"""
		request = state.request
		request.raise_if_canceled()
		run_intent_stage(state)
		yield "Classifying request", 5.0

		run_planner_stage(state, self._deps.provider)
		yield "Planning answer", 15.0
		if state.short_circuit_answer is not None:
			return

		request.raise_if_canceled()
		run_scope_stage(state)
		yield "Scoping scan context", 22.0

		run_runtime_stage(state, self._deps.runtime_builder)
		if state.runtime_requested:
			yield "Loading account data", 30.0

		run_preflight_stage(state)
		yield "Checking context", 35.0
		if state.short_circuit_answer is not None:
			return

		request.raise_if_canceled()
		run_retrieval_stage(state, self._deps.wiki, self._deps.web)
		yield "Retrieving knowledge", 40.0

		run_prompt_stage(state)
		yield "Preparing prompt", 44.0

	def prepare(self, state: PipelineState) -> None:
		for _ in self.stages(state):
			pass

	def generate(self, state: PipelineState, messages: List[Dict[str, str]]) -> ProviderReply:
		request = state.request
		request.raise_if_canceled()
		return self._deps.provider.complete(
			messages,
			model=request.model,
			temperature=request.temperature,
			max_tokens=request.max_tokens,
			timeout=config.provider_timeout(),
		)

	def settle(self, state: PipelineState, reply: ProviderReply) -> None:
		"""Validate the reply, issuing at most one corrective retry."""
		gate = AnswerGate(
			locale=state.request.locale,
			intent=state.intent,
			messages=state.messages,
			regenerate=lambda messages: self.generate(state, messages),
		)
		outcome = gate.settle(reply)
		state.reply = outcome.reply
		state.answer = outcome.reply.answer
		state.attempts = outcome.attempts
		for warning in outcome.warnings:
			state.warn(warning)
		if outcome.attempts == 1:
			record(state, stage="answer_validation", status="pass", detail="accepted")
		elif outcome.reply is reply:
			record(state, stage="answer_validation", status="fallback", detail="retry did not help; original kept")
		else:
			record(state, stage="answer_validation", status="adjusted", detail="corrective retry accepted")

	def finish_short_circuit(self, state: PipelineState) -> None:
		state.answer = state.short_circuit_answer or ""
		state.reply = ProviderReply(answer=state.answer, model=state.request.model)
		state.attempts = 0

	def run(self, request: PipelineRequest) -> PipelineState:
		state = PipelineState(request=request)
		self.prepare(state)
		if state.short_circuit_answer is not None:
			self.finish_short_circuit(state)
			return state
		reply = self.generate(state, state.messages)
		self.settle(state, reply)
		logger.info(
			"station ai answer intent=%s attempts=%d warnings=%d",
			state.intent,
			state.attempts,
			len(state.warnings),
		)
		return state


def pipeline_metadata(state: PipelineState) -> Dict[str, Any]:
	plan = state.plan or default_plan(state.heuristic_intent)
	return {
		"intent": state.intent,
		"heuristic_intent": state.heuristic_intent,
		"plan": plan.as_dict(),
		"preflight": state.preflight.as_dict() if state.preflight is not None else None,
		"runtime_requested": state.runtime_requested,
		"runtime_available": bool(state.runtime is not None and state.runtime.available),
		"wiki_snippets": len(state.wiki_snippets),
		"web_snippets": len(state.web_snippets),
		"attempts": state.attempts,
		"stages": serialize_trace(state.trace),
		"sources": prompts.citation_sources(state.wiki_snippets, state.web_snippets),
	}
