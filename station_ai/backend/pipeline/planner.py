from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Sequence, Tuple

from station_ai.backend import config, constants
from station_ai.backend.errors import ChatServiceError
from station_ai.backend.pipeline.policies import trim_runes
from station_ai.backend.pipeline.types import (
	CONTEXT_LEVELS,
	INTENTS,
	RESPONSE_MODES,
	Agent,
	ChatCompletionClient,
	Intent,
	PipelineRequest,
	PlannerPlan,
)
from station_ai.backend.schemas import ContextPayload, HistoryMessage


logger = logging.getLogger(__name__)

_DEFAULT_TRADING_AGENTS = (Agent.SCAN_ANALYZER, Agent.RISK_CHECKER)

_DEFAULT_PLANS: Dict[str, PlannerPlan] = {
	"smalltalk": PlannerPlan(intent="smalltalk", context_level="none", response_mode="short"),
	"trading_analysis": PlannerPlan(
		intent="trading_analysis",
		context_level="full",
		response_mode="structured",
		agents=_DEFAULT_TRADING_AGENTS,
	),
	"product_help": PlannerPlan(
		intent="product_help",
		context_level="summary",
		response_mode="qa",
		need_wiki=True,
	),
	"debug_support": PlannerPlan(
		intent="debug_support",
		context_level="summary",
		response_mode="diagnostic",
		need_wiki=True,
	),
	"web_research": PlannerPlan(
		intent="web_research",
		context_level="summary",
		response_mode="qa",
		need_web=True,
	),
	"general": PlannerPlan(intent="general", context_level="summary", response_mode="qa"),
}

_PLANNER_SYSTEM_PROMPT = (
	"You are the routing planner of a trading assistant for EVE Online station trading. "
	"Return ONLY one JSON object, no prose and no markdown, with exactly these keys: "
	'"intent" (one of: smalltalk, trading_analysis, product_help, debug_support, web_research, general), '
	'"context_level" (one of: none, summary, full), '
	'"response_mode" (one of: short, structured, diagnostic, qa), '
	'"need_wiki" (boolean), "need_web" (boolean), '
	'"ask_clarification" (boolean), "clarification" (string, empty unless ask_clarification is true), '
	'"agents" (array drawn from: intent_router, scan_analyzer, risk_checker, wiki_retriever, web_retriever, debug_helper). '
	"Ask for clarification only when the request cannot be answered at all without it."
)


class PlannerFailure(Exception):
	def __init__(self, warning: str):
		super().__init__(warning)
		self.warning = warning


def default_plan(intent: Intent) -> PlannerPlan:
	return _DEFAULT_PLANS.get(intent, _DEFAULT_PLANS["general"])


def _extract_json_object(raw: str) -> Dict[str, Any]:
	candidate = raw.strip()
	if not candidate:
		raise PlannerFailure("planner invalid response: empty answer")
	if candidate.startswith("```"):
		candidate = re.sub(r"^```[a-zA-Z]*\s*", "", candidate)
		candidate = re.sub(r"\s*```$", "", candidate)
	start = candidate.find("{")
	end = candidate.rfind("}")
	if start == -1 or end == -1 or end <= start:
		raise PlannerFailure("planner did not return json")
	try:
		parsed = json.loads(candidate[start : end + 1])
	except json.JSONDecodeError as exc:
		raise PlannerFailure("planner json parse failed") from exc
	if not isinstance(parsed, dict):
		raise PlannerFailure("planner invalid response: not an object")
	return parsed


def _as_bool(value: Any, fallback: bool) -> bool:
	if isinstance(value, bool):
		return value
	if isinstance(value, str):
		lowered = value.strip().lower()
		if lowered in ("true", "yes", "1"):
			return True
		if lowered in ("false", "no", "0"):
			return False
	return fallback


def _enum_value(value: Any, allowed: Sequence[str], fallback: str) -> str:
	if isinstance(value, str):
		candidate = value.strip().lower()
		if candidate in allowed:
			return candidate
	return fallback


def _agents(value: Any) -> Tuple[Agent, ...]:
	if not isinstance(value, list):
		return ()
	agents: List[Agent] = []
	for item in value:
		agent = Agent.parse(item)
		if agent is None or agent in agents:
			continue
		agents.append(agent)
		if len(agents) >= constants.MAX_PLAN_AGENTS:
			break
	return tuple(agents)


def apply_guardrails(plan: PlannerPlan) -> PlannerPlan:
	if plan.intent == "smalltalk":
		return replace(plan, context_level="none", response_mode="short", need_wiki=False, need_web=False)
	if plan.intent == "trading_analysis":
		agents = plan.agents or _DEFAULT_TRADING_AGENTS
		return replace(plan, context_level="full", agents=agents)
	return plan


def normalize_plan(payload: Dict[str, Any], heuristic_intent: Intent) -> PlannerPlan:
	intent = _enum_value(payload.get("intent"), INTENTS, heuristic_intent)
	fallback = default_plan(intent)  # type: ignore[arg-type]
	clarification = payload.get("clarification")
	clarification_text = " ".join(clarification.split()) if isinstance(clarification, str) else ""
	plan = PlannerPlan(
		intent=intent,  # type: ignore[arg-type]
		context_level=_enum_value(payload.get("context_level"), CONTEXT_LEVELS, fallback.context_level),  # type: ignore[arg-type]
		response_mode=_enum_value(payload.get("response_mode"), RESPONSE_MODES, fallback.response_mode),  # type: ignore[arg-type]
		need_wiki=_as_bool(payload.get("need_wiki"), fallback.need_wiki),
		need_web=_as_bool(payload.get("need_web"), fallback.need_web),
		ask_clarification=_as_bool(payload.get("ask_clarification"), False),
		clarification=trim_runes(clarification_text, constants.MAX_CLARIFICATION_RUNES),
		agents=_agents(payload.get("agents")),
	)
	return apply_guardrails(plan)


def context_brief(context: ContextPayload) -> str:
	"""One paragraph describing the scan context without dumping rows."""
	summary = context.summary
	parts = []
	if context.tab_id or context.tab_title:
		parts.append(f"tab={context.tab_title or context.tab_id}")
	if context.system_name:
		parts.append(f"system={context.system_name}")
	if context.station_scope:
		parts.append(f"scope={context.station_scope}")
	parts.append(f"rows={len(context.rows)}")
	parts.append(f"visible_rows={summary.visible_rows}")
	parts.append(f"actionable_rows={summary.actionable_rows}")
	parts.append(f"high_risk_rows={summary.high_risk_rows}")
	if summary.avg_margin:
		parts.append(f"avg_margin={summary.avg_margin:.2f}%")
	if summary.avg_daily_profit:
		parts.append(f"avg_daily_profit={summary.avg_daily_profit:.0f} ISK")
	return "Scan context: " + ", ".join(parts) + "."


def planner_user_prompt(message: str, heuristic_intent: Intent, history: Sequence[HistoryMessage], context: ContextPayload) -> str:
	lines = [
		f"message: {message}",
		f"heuristic_intent: {heuristic_intent}",
		"recent_history:",
	]
	recent = list(history)[-constants.PLANNER_HISTORY_TURNS:]
	if not recent:
		lines.append("(none)")
	for item in recent:
		lines.append(f"- {item.role}: {trim_runes(' '.join(item.content.split()), constants.PLANNER_HISTORY_RUNES)}")
	lines.append(f"context: {context_brief(context)}")
	return "\n".join(lines)


def run_planner(
	client: ChatCompletionClient,
	request: PipelineRequest,
	heuristic_intent: Intent,
	history: Sequence[HistoryMessage],
) -> Tuple[PlannerPlan, List[str]]:
	"""Ask the planner model for a plan; any failure yields the default plan and a warning."""
	fallback = default_plan(heuristic_intent)
	request.raise_if_canceled()
	messages = [
		{"role": "system", "content": _PLANNER_SYSTEM_PROMPT},
		{"role": "user", "content": planner_user_prompt(request.user_message, heuristic_intent, history, request.context)},
	]
	try:
		reply = client.complete(
			messages,
			model=request.planner_model or request.model,
			temperature=0.0,
			max_tokens=constants.PLANNER_MAX_TOKENS,
			timeout=config.planner_timeout(),
		)
		payload = _extract_json_object(reply.answer)
	except ChatServiceError as exc:
		logger.warning("planner unavailable: %s", exc.message)
		return fallback, [f"planner unavailable: {exc.message}"]
	except PlannerFailure as exc:
		logger.info("planner fallback: %s", exc.warning)
		return fallback, [exc.warning]
	return normalize_plan(payload, heuristic_intent), []
