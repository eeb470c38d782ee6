from __future__ import annotations

import re
from typing import Iterable, List, Sequence

from station_ai.backend import constants
from station_ai.backend.pipeline.keywords import normalize_text
from station_ai.backend.pipeline.policies import contains_diagnostic_marker, trim_runes
from station_ai.backend.pipeline.types import Intent
from station_ai.backend.schemas import HistoryMessage


SMALLTALK_MAX_RUNES = 40
FOLLOWUP_MAX_RUNES = 60
FOLLOWUP_HISTORY_TURNS = 4

_DEBUG_PATTERNS = [
	r"\berrors?\b",
	r"\bbugs?\b",
	r"\bcrash",
	r"stack ?trace",
	r"traceback",
	r"exception",
	r"\bundefined\b",
	r"\bpanic",
	r"\bfreez",
	r"not working",
	r"doesn t work",
	r"\bbroken\b",
	r"ошибк",
	r"\bбаг",
	r"не работает",
	r"сломал",
	r"\bпадает",
	r"\bвылет",
	r"\bглюч",
	r"зависа",
]

# Scan filter names and decision-shaped asks; strong enough to outrank
# the product and web vocabularies below.
_STRUCTURED_TRADING_PATTERNS = [
	r"\bscan_snapshot\b",
	r"\bmin_margin\b",
	r"\bmin_daily_volume\b",
	r"\bmin_item_profit\b",
	r"\bmargin_percent\b",
	r"\bdaily_profit\b",
	r"\bs2b\b",
	r"\bbfs\b",
	r"\bcts\b",
	r"\bhigh_risk\b",
	r"\bextreme_price\b",
	r"decision matrix",
	r"capital allocation",
	r"execute now",
	r"\bdrawdown\b",
	r"risk[ -]reward",
	r"position siz",
	r"матриц\w* решений",
	r"распределени\w* капитал",
	r"аллокац",
	r"просадк",
]

_PRODUCT_PATTERNS = [
	r"how does",
	r"how do i\b",
	r"how it works",
	r"\bdocs?\b",
	r"documentation",
	r"\bwiki\b",
	r"roadmap",
	r"\bfeatures?\b",
	r"tutorial",
	r"\bguide\b",
	r"\bproject\b",
	r"как работает",
	r"как пользоваться",
	r"как настроить",
	r"в проекте",
	r"\bпроект",
	r"документац",
	r"\bвики\b",
	r"\bфич",
	r"функционал",
	r"инструкци",
	r"\bгайд",
	r"роадмап",
]

_WEB_PATTERNS = [
	r"\bgoogle",
	r"\bsearch (the )?(web|internet|online)",
	r"\bnews\b",
	r"\blatest\b",
	r"\bpatch notes?\b",
	r"\bdevblog",
	r"on the internet",
	r"погугли",
	r"\bгугл",
	r"поищи",
	r"в интернете",
	r"новост",
	r"\bсвеж",
	r"патчнот",
	r"девблог",
]

_GENERAL_TRADING_PATTERNS = [
	r"\btrad",
	r"\bscan",
	r"\bmargin",
	r"\brisk",
	r"\borders?\b",
	r"\bprofit",
	r"\bisk\b",
	r"\bvolume",
	r"\bflip",
	r"\bbuy",
	r"\bsell",
	r"\bdeals?\b",
	r"\bmarket",
	r"\bitems?\b",
	r"сделк",
	r"\bскан",
	r"\bмарж",
	r"\bриск",
	r"\bордер",
	r"прибыл",
	r"профит",
	r"\bоб[ъь][её]м",
	r"\bторг",
	r"\bтрейд",
	r"\bрын",
	r"покупк",
	r"продаж",
	r"\bтовар",
	r"\bпредмет",
]

_SMALLTALK_PATTERNS = [
	r"^(hi|hello|hey|yo|hiya|howdy|sup)\b",
	r"\bgood (morning|afternoon|evening)\b",
	r"\bhow are you\b",
	r"\bthanks?\b",
	r"\bthank you\b",
	r"\bпривет",
	r"\bздравств",
	r"\bздаров",
	r"\bхай\b",
	r"\bдобр(ый|ое|ого) (день|утро|вечер|утра|вечера)",
	r"\bспасибо",
	r"\bкак дела",
	r"\bкак ты\b",
]

_FOLLOWUP_PATTERNS = [
	r"^why\b",
	r"^and\b",
	r"\bexplain",
	r"\belaborate",
	r"\bmore detail",
	r"\bwhat next\b",
	r"\bwhat now\b",
	r"\bnext step",
	r"^почему",
	r"^зачем",
	r"^а если",
	r"объясни",
	r"поясни",
	r"подробнее",
	r"что дальше",
	r"дальше",
]

_FOLLOWUP_ANCHOR_PATTERNS = [
	r"recommend",
	r"\brisk",
	r"\btrad",
	r"\bmargin",
	r"\bprofit",
	r"\bisk\b",
	r"\bbuy",
	r"\bsell",
	r"\border",
	r"рекоменд",
	r"\bриск",
	r"сделк",
	r"\bмарж",
	r"прибыл",
	r"\bордер",
	r"\bторг",
]


def _matches_any(text: str, patterns: Iterable[str]) -> bool:
	return any(re.search(pattern, text) for pattern in patterns)


def _is_trading_followup(message: str, text: str, history: Sequence[HistoryMessage]) -> bool:
	if len(message.strip()) > FOLLOWUP_MAX_RUNES or not _matches_any(text, _FOLLOWUP_PATTERNS):
		return False
	assistant_turns = [item for item in history if item.role == "assistant"]
	for item in assistant_turns[-FOLLOWUP_HISTORY_TURNS:]:
		if _matches_any(item.content.lower(), _FOLLOWUP_ANCHOR_PATTERNS):
			return True
	return False


def detect_intent(message: str, history: Sequence[HistoryMessage] = ()) -> Intent:
	text = normalize_text(message)
	if not text:
		return "general"
	if _matches_any(text, _DEBUG_PATTERNS):
		return "debug_support"
	if _matches_any(message.lower(), _STRUCTURED_TRADING_PATTERNS) or _matches_any(text, _STRUCTURED_TRADING_PATTERNS):
		return "trading_analysis"
	if _matches_any(text, _PRODUCT_PATTERNS):
		return "product_help"
	if _matches_any(text, _WEB_PATTERNS):
		return "web_research"
	if _matches_any(text, _GENERAL_TRADING_PATTERNS):
		return "trading_analysis"
	if len(message.strip()) <= SMALLTALK_MAX_RUNES and _matches_any(text, _SMALLTALK_PATTERNS):
		return "smalltalk"
	if _is_trading_followup(message, text, history):
		return "trading_analysis"
	return "general"


def normalize_history(messages: Iterable[HistoryMessage]) -> List[HistoryMessage]:
	"""Keep user/assistant turns only, trimmed and bounded, newest last."""
	normalized: List[HistoryMessage] = []
	for item in messages:
		role = (item.role or "").strip().lower()
		if role not in ("user", "assistant"):
			continue
		content = trim_runes((item.content or "").strip(), constants.MAX_HISTORY_CONTENT_RUNES)
		if not content:
			continue
		if role == "assistant" and contains_diagnostic_marker(content):
			continue
		normalized.append(HistoryMessage(role=role, content=content))
	return normalized[-constants.MAX_HISTORY_MESSAGES:]
