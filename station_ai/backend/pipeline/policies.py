from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

from station_ai.backend import constants
from station_ai.backend.errors import ChatServiceError
from station_ai.backend.pipeline.types import Intent, ProviderReply


logger = logging.getLogger(__name__)

# Field and status names of the planner/preflight contract. None of them
# belongs in a user-facing answer.
_DIAGNOSTIC_MARKERS = (
	"need_full_context",
	"constraint_violation",
	"rows_seen_count",
	"missing_fields",
	"preflight_status",
	"context_level",
	"response_mode",
	"ask_clarification",
	"need_wiki",
	"need_web",
	"agent_notes",
	'"status":',
	'"status" :',
)

_CORRECTIVE_INSTRUCTIONS = {
	"en": (
		"Your previous answer was rejected by server validation ({issue}). "
		"Answer the original question again in plain language for the user. "
		"Do not output JSON, status codes or internal field names."
	),
	"ru": (
		"Предыдущий ответ отклонён серверной проверкой ({issue}). "
		"Ответь на исходный вопрос заново, обычным языком для пользователя. "
		"Не выводи JSON, коды статусов и внутренние имена полей."
	),
}
_TRADING_CORRECTIVE_SUFFIX = {
	"en": " Ground the answer in concrete numbers from the scan rows (ISK, %, volumes).",
	"ru": " Опирайся на конкретные числа из строк скана (ISK, %, объёмы).",
}


def trim_runes(text: str, limit: int) -> str:
	if limit <= 0:
		return ""
	if len(text) <= limit:
		return text
	return text[:limit].rstrip()


def contains_diagnostic_marker(text: str) -> bool:
	lowered = text.lower()
	return any(marker in lowered for marker in _DIAGNOSTIC_MARKERS)


def validate_answer(answer: str, intent: Intent) -> Tuple[bool, str]:
	text = (answer or "").strip()
	if not text:
		return False, "empty answer"
	if contains_diagnostic_marker(text):
		return False, "answer leaked internal diagnostic fields"
	if intent == "trading_analysis":
		if len(text) < constants.MIN_TRADING_ANSWER_RUNES:
			return False, "trading answer too short"
		if not any(ch.isdigit() for ch in text):
			return False, "trading answer has no numbers"
	return True, ""


def corrective_instruction(locale: str, intent: Intent, issue: str) -> str:
	key = locale if locale in _CORRECTIVE_INSTRUCTIONS else "en"
	text = _CORRECTIVE_INSTRUCTIONS[key].format(issue=issue)
	if intent == "trading_analysis":
		text += _TRADING_CORRECTIVE_SUFFIX[key]
	return text


RegenerateFn = Callable[[List[Dict[str, str]]], ProviderReply]


@dataclass
class GateOutcome:
	reply: ProviderReply
	attempts: int
	warnings: List[str] = field(default_factory=list)


class AnswerGate:
	"""Two-state answer check: the initial attempt and one corrective attempt.

	There is deliberately no loop here. A rejected answer costs exactly one
	extra provider call; a second rejection keeps the first answer.
	"""

	def __init__(self, *, locale: str, intent: Intent, messages: List[Dict[str, str]], regenerate: RegenerateFn):
		self._locale = locale
		self._intent = intent
		self._messages = messages
		self._regenerate = regenerate

	def settle(self, reply: ProviderReply) -> GateOutcome:
		valid, issue = validate_answer(reply.answer, self._intent)
		if valid:
			return GateOutcome(reply=reply, attempts=1)

		logger.info("answer rejected (%s); issuing corrective retry", issue)
		warnings = [f"server validation requested retry: {issue}"]
		corrective = [
			*self._messages,
			{"role": "assistant", "content": reply.answer.strip() or "(empty)"},
			{"role": "user", "content": corrective_instruction(self._locale, self._intent, issue)},
		]
		try:
			retry = self._regenerate(corrective)
		except ChatServiceError as exc:
			logger.warning("corrective retry failed: %s", exc.message)
			warnings.append(f"retry failed: {exc.message}")
			return GateOutcome(reply=reply, attempts=2, warnings=warnings)

		retry_valid, retry_issue = validate_answer(retry.answer, self._intent)
		if retry_valid:
			return GateOutcome(reply=retry, attempts=2, warnings=warnings)
		warnings.append(f"retry rejected: {retry_issue}")
		return GateOutcome(reply=reply, attempts=2, warnings=warnings)
