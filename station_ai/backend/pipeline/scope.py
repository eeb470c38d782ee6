from __future__ import annotations

from typing import Dict, List

from station_ai.backend import constants
from station_ai.backend.pipeline.types import Intent, PlannerPlan, PreflightResult
from station_ai.backend.schemas import ContextPayload, ContextSummary


def _clear_rows(context: ContextPayload) -> ContextPayload:
	return context.model_copy(update={"rows": []})


def _clear_rows_and_summary(context: ContextPayload) -> ContextPayload:
	return context.model_copy(update={"rows": [], "summary": ContextSummary()})


def _cap_rows(context: ContextPayload, limit: int) -> ContextPayload:
	return context.model_copy(update={"rows": list(context.rows[:limit])})


def context_for_intent(context: ContextPayload, intent: Intent) -> ContextPayload:
	if intent == "smalltalk":
		return _clear_rows_and_summary(context)
	if intent in ("product_help", "web_research"):
		return _clear_rows(context)
	if intent == "general":
		return _cap_rows(context, constants.GENERAL_CONTEXT_ROWS)
	return _cap_rows(context, constants.MAX_CONTEXT_ROWS)


def scope_context(context: ContextPayload, intent: Intent, plan: PlannerPlan) -> ContextPayload:
	"""Reduce the caller's context by intent, then by the plan's context level.

	The plan's level wins over the intent default. The input payload is left
	untouched.
	"""
	scoped = context_for_intent(context, intent)
	if plan.context_level == "none":
		return _clear_rows_and_summary(scoped)
	if plan.context_level == "summary":
		return _clear_rows(scoped)
	return _cap_rows(scoped, constants.MAX_CONTEXT_ROWS)


_RUNTIME_CAVEAT = {
	"en": "account runtime data was requested but is unavailable",
	"ru": "данные аккаунта запрошены, но недоступны",
}


def preflight(
	locale: str,
	plan: PlannerPlan,
	context: ContextPayload,
	runtime_requested: bool,
	runtime_available: bool,
) -> PreflightResult:
	missing: List[str] = []
	caveats: List[str] = []
	has_rows = bool(context.rows)
	if (plan.context_level == "full" or plan.intent == "trading_analysis") and not has_rows:
		missing.append("rows")
	if plan.intent == "trading_analysis" and context.summary.visible_rows == 0 and not has_rows:
		missing.append("summary.visible_rows")
	if runtime_requested and not runtime_available:
		caveats.append(_RUNTIME_CAVEAT.get(locale, _RUNTIME_CAVEAT["en"]))
	if missing:
		return PreflightResult(status="fail", missing=missing, caveats=caveats)
	if caveats:
		return PreflightResult(status="partial", caveats=caveats)
	return PreflightResult(status="pass")


_REFUSALS: Dict[str, str] = {
	"en": (
		"I can't analyze this yet: the current scan context is missing {fields}. "
		"Run a scan (or relax the filters so that rows are visible) and ask again."
	),
	"ru": (
		"Пока не могу провести анализ: в текущем контексте скана отсутствуют {fields}. "
		"Запусти скан (или ослабь фильтры, чтобы появились строки) и спроси снова."
	),
}


def preflight_refusal(locale: str, missing: List[str]) -> str:
	template = _REFUSALS.get(locale, _REFUSALS["en"])
	return template.format(fields=", ".join(missing) if missing else "rows")
