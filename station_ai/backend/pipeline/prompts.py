from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Sequence

from station_ai.backend import constants
from station_ai.backend.pipeline.keywords import normalize_text
from station_ai.backend.pipeline.policies import trim_runes
from station_ai.backend.pipeline.types import Agent, KnowledgeSnippet, PlannerPlan, RuntimeContext
from station_ai.backend.schemas import ContextPayload, ContextRow, HistoryMessage


_PERSONA = {
	"en": (
		"You are {name}, the trading assistant of the Eve Flipper app for EVE Online station trading. "
		"Answer in English, for the user, in plain language."
	),
	"ru": (
		"Ты {name}, торговый ассистент приложения Eve Flipper для станционной торговли в EVE Online. "
		"Отвечай по-русски, для пользователя, простым языком."
	),
}

_INTENT_POLICIES = {
	"en": {
		"smalltalk": "This is casual conversation. Reply briefly and warmly; do not analyze scan data.",
		"trading_analysis": (
			"This is a trading analysis request. Ground every claim in the provided scan rows and summary, "
			"quote concrete numbers (ISK, %, volumes) and give explicit recommendations. "
			"Never invent rows, items or prices that are not in the context."
		),
		"product_help": (
			"This is a question about the app itself. Answer from the documentation snippets and cite them; "
			"if the documentation does not cover it, say so."
		),
		"debug_support": (
			"This is a troubleshooting request. Identify the likely cause, list concrete checks in order "
			"and reference documentation where it helps."
		),
		"web_research": (
			"This is a research request. Use the web snippets, cite each fact you take from them "
			"and point out when sources are missing or stale."
		),
		"general": "Answer the question directly; use the scan summary only when it is relevant.",
	},
	"ru": {
		"smalltalk": "Это непринуждённый разговор. Ответь коротко и дружелюбно, без анализа данных скана.",
		"trading_analysis": (
			"Это запрос на торговый анализ. Опирай каждое утверждение на строки и сводку скана, "
			"приводи конкретные числа (ISK, %, объёмы) и давай явные рекомендации. "
			"Не выдумывай строки, предметы и цены, которых нет в контексте."
		),
		"product_help": (
			"Это вопрос о самом приложении. Отвечай по фрагментам документации и ссылайся на них; "
			"если документация этого не покрывает, так и скажи."
		),
		"debug_support": (
			"Это запрос на диагностику. Назови вероятную причину, перечисли конкретные проверки по порядку "
			"и ссылайся на документацию, где это помогает."
		),
		"web_research": (
			"Это исследовательский запрос. Используй веб-фрагменты, указывай источник каждого взятого факта "
			"и отмечай, если источников нет или они устарели."
		),
		"general": "Отвечай на вопрос прямо; сводку скана используй, только если она относится к делу.",
	},
}

_MODE_SUFFIX = {
	"en": {
		"short": "Keep the reply to one or two sentences.",
		"structured": (
			"Structure the reply with short headed sections: key findings, recommendations "
			"(execute now / monitor / reject) and risks."
		),
		"diagnostic": "Structure the reply as: symptom, probable cause, steps to verify, fix.",
	},
	"ru": {
		"short": "Ограничься одним-двумя предложениями.",
		"structured": (
			"Структурируй ответ короткими разделами с заголовками: ключевые выводы, рекомендации "
			"(исполнять сейчас / наблюдать / отклонить) и риски."
		),
		"diagnostic": "Структурируй ответ так: симптом, вероятная причина, шаги проверки, исправление.",
	},
}

_RULES = {
	"en": (
		"Cite documentation as [WIKI n] and web sources as [WEB n] using only the numbers given; never invent citations. "
		"Never output JSON, status codes or internal field names of this system."
	),
	"ru": (
		"Ссылайся на документацию как [WIKI n], на веб-источники как [WEB n], только по данным номерам; не выдумывай ссылки. "
		"Никогда не выводи JSON, коды статусов и внутренние имена полей этой системы."
	),
}

_AGENTS_LABEL = {"en": "Active agents", "ru": "Активные агенты"}

_FULL_SETTINGS_DIRECTIVE = {
	"en": (
		"The user asked for the complete scan configuration: list EVERY field of the scan_snapshot object "
		"with its current value, including advanced fields, without skipping any."
	),
	"ru": (
		"Пользователь просит полный список настроек: перечисли значения ВСЕХ полей объекта scan_snapshot, "
		"включая расширенные поля, ничего не пропуская."
	),
}

_CAVEAT_SENTENCE = {
	"en": "Data caveat: {caveats}. Say so briefly and do not invent the missing numbers.",
	"ru": "Ограничение данных: {caveats}. Кратко упомяни это и не выдумывай отсутствующие числа.",
}

_PLAN_LABELS = {
	"en": ("Intent", "Context depth", "Answer shape", "Documentation lookup", "Web lookup", "yes", "no"),
	"ru": ("Намерение", "Глубина контекста", "Форма ответа", "Поиск по документации", "Веб-поиск", "да", "нет"),
}

_SECTION_LABELS = {
	"en": ("Plan", "User message", "Scan context (JSON)", "Internal notes (do not quote)", "Knowledge"),
	"ru": ("План", "Сообщение пользователя", "Контекст скана (JSON)", "Внутренние заметки (не цитировать)", "Знания"),
}

_EXPLICIT_FULL_SETTINGS_PHRASES = [
	"list all scan parameters",
	"list all scan settings",
	"all scan settings",
	"all scan parameters",
	"every scan setting",
	"full scan settings",
	"full scan config",
	"полный список настроек",
	"полный список параметров",
	"все настройки скана",
	"все параметры скана",
	"все настройки сканирования",
	"все параметры сканирования",
]
_FULL_TERMS = [r"\bfull\b", r"\ball\b", r"\bevery\b", r"\bentire\b", r"\bcomplete\b", r"\bполн", r"\bвсе\b", r"\bвсех\b", r"\bвесь\b"]
_LIST_TERMS = [r"\blist\b", r"\benumerate\b", r"\bdump\b", r"\bсписок", r"\bперечисл", r"\bвыведи\b"]
_SETTINGS_TERMS = [
	r"\bsettings?\b",
	r"\bparameters?\b",
	r"\bfields?\b",
	r"\bfilters?\b",
	r"\bнастро",
	r"\bпараметр",
	r"\bпол(е|я|ей)\b",
	r"\bфильтр",
]

_INACTIVE_ACTIONS = ("reject", "avoid", "skip", "отклон")
_TOP_ROWS = 3


def _locale(locale: str) -> str:
	return locale if locale in _PERSONA else "en"


def _matches_any(text: str, patterns: Iterable[str]) -> bool:
	return any(re.search(pattern, text) for pattern in patterns)


def requests_full_scan_settings(message: str) -> bool:
	text = normalize_text(message)
	if not text:
		return False
	if any(phrase in text for phrase in _EXPLICIT_FULL_SETTINGS_PHRASES):
		return True
	return _matches_any(text, _FULL_TERMS) and _matches_any(text, _LIST_TERMS) and _matches_any(text, _SETTINGS_TERMS)


def system_prompt(locale: str, assistant_name: str, plan: PlannerPlan) -> str:
	key = _locale(locale)
	parts = [
		_PERSONA[key].format(name=assistant_name or constants.DEFAULT_ASSISTANT_NAME),
		_INTENT_POLICIES[key][plan.intent],
	]
	suffix = _MODE_SUFFIX[key].get(plan.response_mode)
	if suffix:
		parts.append(suffix)
	parts.append(_RULES[key])
	if plan.agents:
		parts.append(f"{_AGENTS_LABEL[key]}: " + ", ".join(agent.value for agent in plan.agents) + ".")
	return "\n".join(parts)


def serialize_context(context: ContextPayload, runtime: RuntimeContext | None = None) -> str:
	payload: Dict[str, Any] = context.model_dump(exclude={"runtime"}, exclude_none=True)
	if runtime is not None:
		payload["runtime"] = runtime.as_dict()
	return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def _format_isk(value: float) -> str:
	return f"{value:,.0f} ISK"


def top_rows(rows: Sequence[ContextRow], limit: int = _TOP_ROWS) -> List[ContextRow]:
	"""Most profitable actionable rows, composite score as tie-break."""
	actionable = [row for row in rows if not any(word in row.action.lower() for word in _INACTIVE_ACTIONS)]
	pool = actionable or list(rows)
	return sorted(pool, key=lambda row: (-row.daily_profit, -row.cts))[:limit]


def _runtime_note(runtime: RuntimeContext | None) -> str:
	if runtime is None or not runtime.available:
		detail = "; ".join(runtime.notes) if runtime is not None and runtime.notes else "no data"
		return f"account_runtime: unavailable ({detail})"
	parts = []
	if runtime.wallet_balance is not None:
		parts.append(f"wallet {_format_isk(runtime.wallet_balance)}")
	if runtime.orders:
		parts.append(f"open orders {runtime.orders.get('buy_count', 0)} buy / {runtime.orders.get('sell_count', 0)} sell")
	if runtime.trade_flow:
		parts.append(
			f"{runtime.trade_flow.get('window_days', constants.TRADE_FLOW_WINDOW_DAYS)}d net flow "
			f"{_format_isk(float(runtime.trade_flow.get('net_flow', 0.0)))}"
		)
	if runtime.risk:
		parts.append(f"risk {runtime.risk.get('risk_level')} ({runtime.risk.get('risk_score')}/100)")
	return "account_runtime: " + (", ".join(parts) if parts else "connected, no figures")


def agent_notes(
	plan: PlannerPlan,
	context: ContextPayload,
	*,
	wiki_snippets: Sequence[KnowledgeSnippet] = (),
	web_snippets: Sequence[KnowledgeSnippet] = (),
	runtime: RuntimeContext | None = None,
	runtime_requested: bool = False,
) -> List[str]:
	notes: List[str] = []
	for agent in plan.agents:
		if agent == Agent.INTENT_ROUTER:
			notes.append(f"intent_router: routed as {plan.intent}")
		elif agent == Agent.SCAN_ANALYZER:
			best = top_rows(context.rows)
			if not best:
				notes.append("scan_analyzer: no rows in context")
				continue
			described = [
				f"{row.type_name or row.type_id}"
				+ (f" @ {row.station_name}" if row.station_name else "")
				+ f" (profit {_format_isk(row.daily_profit)}/day, margin {row.margin_percent:.1f}%, "
				f"volume {row.daily_volume:g}/day, CTS {row.cts:.1f})"
				for row in best
			]
			notes.append("scan_analyzer: top rows by profit: " + "; ".join(described))
		elif agent == Agent.RISK_CHECKER:
			summary = context.summary
			high_risk = summary.high_risk_rows or sum(1 for row in context.rows if row.high_risk)
			extreme = summary.extreme_rows or sum(1 for row in context.rows if row.extreme_price)
			visible = summary.visible_rows or len(context.rows)
			notes.append(f"risk_checker: {high_risk} high-risk and {extreme} extreme-price rows out of {visible} visible")
		elif agent == Agent.WIKI_RETRIEVER:
			notes.append(f"wiki_retriever: {len(wiki_snippets)} documentation snippets attached")
		elif agent == Agent.WEB_RETRIEVER:
			notes.append(f"web_retriever: {len(web_snippets)} web snippets attached")
		elif agent == Agent.DEBUG_HELPER:
			identifiers = [
				f"tab={context.tab_id or '-'}",
				f"title={context.tab_title or '-'}",
				f"system={context.system_name or '-'}",
				f"scope={context.station_scope or '-'}",
			]
			if context.region_id is not None:
				identifiers.append(f"region_id={context.region_id}")
			if context.station_id is not None:
				identifiers.append(f"station_id={context.station_id}")
			notes.append("debug_helper: " + ", ".join(identifiers))
	if runtime_requested:
		notes.append(_runtime_note(runtime))
	return notes


def knowledge_block(wiki_snippets: Sequence[KnowledgeSnippet], web_snippets: Sequence[KnowledgeSnippet]) -> List[str]:
	lines: List[str] = []
	for label, snippets in (("WIKI", wiki_snippets), ("WEB", web_snippets)):
		for index, snippet in enumerate(snippets, start=1):
			meta = [f"page: {snippet.page}"] if snippet.page else []
			if snippet.section:
				meta.append(f"section: {snippet.section}")
			if snippet.url:
				meta.append(f"url: {snippet.url}")
			header = f"[{label} {index}] {snippet.title}"
			if meta:
				header += " (" + ", ".join(meta) + ")"
			lines.append(header)
			lines.append(snippet.content)
	return lines


def citation_sources(
	wiki_snippets: Sequence[KnowledgeSnippet], web_snippets: Sequence[KnowledgeSnippet]
) -> List[Dict[str, str]]:
	sources: List[Dict[str, str]] = []
	for label, snippets in (("WIKI", wiki_snippets), ("WEB", web_snippets)):
		for index, snippet in enumerate(snippets, start=1):
			sources.append(
				{
					"ref": f"{label} {index}",
					"source": snippet.source_label,
					"title": snippet.title,
					"page": snippet.page,
					"url": snippet.url,
				}
			)
	return sources


def user_prompt(
	locale: str,
	message: str,
	context_json: str,
	plan: PlannerPlan,
	*,
	caveats: Sequence[str] = (),
	notes: Sequence[str] = (),
	wiki_snippets: Sequence[KnowledgeSnippet] = (),
	web_snippets: Sequence[KnowledgeSnippet] = (),
) -> str:
	key = _locale(locale)
	intent_label, depth_label, shape_label, docs_label, web_label, yes, no = _PLAN_LABELS[key]
	plan_label, message_label, context_label, notes_label, knowledge_label = _SECTION_LABELS[key]
	sections = [
		f"{plan_label}: {intent_label}: {plan.intent}; {depth_label}: {plan.context_level}; "
		f"{shape_label}: {plan.response_mode}; {docs_label}: {yes if plan.need_wiki else no}; "
		f"{web_label}: {yes if plan.need_web else no}",
		f"{message_label}:\n{message}",
		f"{context_label}:\n{context_json}",
	]
	if requests_full_scan_settings(message):
		sections.append(_FULL_SETTINGS_DIRECTIVE[key])
	if caveats:
		sections.append(_CAVEAT_SENTENCE[key].format(caveats="; ".join(caveats)))
	if notes:
		sections.append(f"{notes_label}:\n" + "\n".join(f"- {note}" for note in notes))
	block = knowledge_block(wiki_snippets, web_snippets)
	if block:
		sections.append(f"{knowledge_label}:\n" + "\n".join(block))
	return "\n\n".join(sections)


def build_messages(system: str, history: Sequence[HistoryMessage], user: str) -> List[Dict[str, str]]:
	messages = [{"role": "system", "content": system}]
	for item in list(history)[-constants.MAX_HISTORY_MESSAGES:]:
		messages.append({"role": item.role, "content": trim_runes(item.content, constants.MAX_PROMPT_HISTORY_RUNES)})
	messages.append({"role": "user", "content": user})
	return messages
