import json
from dataclasses import replace
from unittest import TestCase

from station_ai.backend.pipeline import prompts
from station_ai.backend.pipeline.planner import default_plan
from station_ai.backend.pipeline.types import Agent, KnowledgeSnippet, RuntimeContext
from station_ai.backend.schemas import ContextPayload, ContextRow, ContextSummary, HistoryMessage


def _rows():
	return [
		ContextRow(type_id=1, type_name="Tritanium", daily_profit=5_000_000, cts=71.0, margin_percent=8.2, action="execute"),
		ContextRow(type_id=2, type_name="Pyerite", daily_profit=9_000_000, cts=40.0, margin_percent=11.0, action="reject"),
		ContextRow(type_id=3, type_name="Mexallon", daily_profit=5_000_000, cts=80.0, margin_percent=6.0, action="monitor"),
		ContextRow(type_id=4, type_name="Isogen", daily_profit=1_000_000, cts=90.0, margin_percent=4.0, high_risk=True),
		ContextRow(type_id=5, type_name="Nocxium", daily_profit=7_000_000, cts=10.0, margin_percent=15.0, extreme_price=True),
	]


class FullSettingsDetectionTests(TestCase):
	def test_explicit_and_combined_phrases(self) -> None:
		self.assertTrue(prompts.requests_full_scan_settings("Покажи полный список настроек скана"))
		self.assertTrue(prompts.requests_full_scan_settings("List all scan parameters please"))
		self.assertTrue(prompts.requests_full_scan_settings("can you list every filter I used?"))
		self.assertTrue(prompts.requests_full_scan_settings("перечисли все параметры"))

	def test_ordinary_questions_do_not_trigger(self) -> None:
		self.assertFalse(prompts.requests_full_scan_settings("what is the margin on tritanium"))
		self.assertFalse(prompts.requests_full_scan_settings("show all trades"))
		self.assertFalse(prompts.requests_full_scan_settings(""))


class PromptAssemblyTests(TestCase):
	def test_system_prompt_carries_persona_policy_mode_and_agents(self) -> None:
		text = prompts.system_prompt("en", "Aura", default_plan("trading_analysis"))
		self.assertIn("You are Aura", text)
		self.assertIn("trading analysis request", text)
		self.assertIn("key findings", text)
		self.assertIn("Active agents: scan_analyzer, risk_checker.", text)
		self.assertIn("[WIKI n]", text)

	def test_system_prompt_is_localized(self) -> None:
		text = prompts.system_prompt("ru", "", default_plan("smalltalk"))
		self.assertIn("Ты Station AI", text)
		self.assertIn("Ограничься одним-двумя предложениями.", text)

	def test_full_settings_directive_in_russian_prompt(self) -> None:
		text = prompts.user_prompt("ru", "Покажи полный список настроек скана", "{}", default_plan("trading_analysis"))
		self.assertIn("ВСЕХ полей объекта scan_snapshot", text)
		self.assertIn("Сообщение пользователя:\nПокажи полный список настроек скана", text)

	def test_user_prompt_sections(self) -> None:
		wiki = [KnowledgeSnippet(source_label="WIKI", title="Execution Plan", content="Walks the book.", page="Execution-Plan")]
		web = [KnowledgeSnippet(source_label="WEB", title="Patch notes", content="Fees changed.", url="https://example.com/p")]
		text = prompts.user_prompt(
			"en",
			"how do fees work",
			'{"rows":[]}',
			default_plan("product_help"),
			caveats=["account runtime data was requested but is unavailable"],
			notes=["wiki_retriever: 1 documentation snippets attached"],
			wiki_snippets=wiki,
			web_snippets=web,
		)
		self.assertIn("Plan: Intent: product_help; Context depth: summary; Answer shape: qa; Documentation lookup: yes", text)
		self.assertIn("Data caveat: account runtime data was requested but is unavailable.", text)
		self.assertIn("- wiki_retriever: 1 documentation snippets attached", text)
		self.assertIn("[WIKI 1] Execution Plan (page: Execution-Plan)", text)
		self.assertIn("[WEB 1] Patch notes (url: https://example.com/p)", text)
		self.assertNotIn("scan_snapshot", text)

	def test_serialize_context_drops_client_runtime_and_adds_server_runtime(self) -> None:
		context = ContextPayload(tab_id="station", runtime={"wallet_balance": 1e12})
		plain = json.loads(prompts.serialize_context(context))
		self.assertNotIn("runtime", plain)
		enriched = json.loads(prompts.serialize_context(context, RuntimeContext(available=True, wallet_balance=10.0)))
		self.assertEqual(enriched["runtime"]["wallet_balance"], 10.0)

	def test_build_messages_bounds_history(self) -> None:
		history = [HistoryMessage(role="user", content="y" * 3000)] + [
			HistoryMessage(role="assistant", content=f"turn {index}") for index in range(20)
		]
		messages = prompts.build_messages("system", history, "question")
		self.assertEqual(messages[0], {"role": "system", "content": "system"})
		self.assertEqual(messages[-1], {"role": "user", "content": "question"})
		self.assertEqual(len(messages), 18)
		self.assertEqual(messages[1]["content"], "turn 4")

		short = prompts.build_messages("system", history[:1], "question")
		self.assertEqual(len(short[1]["content"]), 2000)


class AgentNotesTests(TestCase):
	def test_scan_analyzer_lists_top_actionable_rows(self) -> None:
		context = ContextPayload(rows=_rows(), summary=ContextSummary(visible_rows=5))
		notes = prompts.agent_notes(default_plan("trading_analysis"), context)
		analyzer = next(note for note in notes if note.startswith("scan_analyzer:"))
		self.assertLess(analyzer.index("Nocxium"), analyzer.index("Mexallon"))
		self.assertLess(analyzer.index("Mexallon"), analyzer.index("Tritanium"))
		self.assertNotIn("Pyerite", analyzer)
		self.assertNotIn("Isogen", analyzer)

	def test_risk_checker_counts_flags(self) -> None:
		context = ContextPayload(rows=_rows())
		notes = prompts.agent_notes(default_plan("trading_analysis"), context)
		self.assertIn("risk_checker: 1 high-risk and 1 extreme-price rows out of 5 visible", notes)

	def test_runtime_note_reports_unavailable_and_available(self) -> None:
		plan = default_plan("general")
		unavailable = prompts.agent_notes(plan, ContextPayload(), runtime=None, runtime_requested=True)
		self.assertEqual(unavailable, ["account_runtime: unavailable (no data)"])

		runtime = RuntimeContext(
			available=True,
			wallet_balance=1_500_000.0,
			orders={"buy_count": 2, "sell_count": 3},
			risk={"risk_level": "safe", "risk_score": 12.5},
		)
		available = prompts.agent_notes(plan, ContextPayload(), runtime=runtime, runtime_requested=True)
		self.assertEqual(available, ["account_runtime: wallet 1,500,000 ISK, open orders 2 buy / 3 sell, risk safe (12.5/100)"])

	def test_debug_helper_echoes_identifiers(self) -> None:
		context = ContextPayload(tab_id="radius", system_name="Amarr", region_id=10000043)
		plan = replace(default_plan("debug_support"), agents=(Agent.DEBUG_HELPER, Agent.WIKI_RETRIEVER))
		notes = prompts.agent_notes(plan, context, wiki_snippets=[])
		self.assertIn("debug_helper: tab=radius, title=-, system=Amarr, scope=-, region_id=10000043", notes)
		self.assertIn("wiki_retriever: 0 documentation snippets attached", notes)

	def test_top_rows_uses_all_rows_when_none_actionable(self) -> None:
		rows = [ContextRow(type_id=1, daily_profit=1.0, action="reject"), ContextRow(type_id=2, daily_profit=2.0, action="avoid")]
		self.assertEqual([row.type_id for row in prompts.top_rows(rows)], [2, 1])

	def test_citation_sources_number_each_kind(self) -> None:
		wiki = [KnowledgeSnippet(source_label="README", title="Overview", content="c", page="README")]
		web = [KnowledgeSnippet(source_label="WEB", title="A", content="c"), KnowledgeSnippet(source_label="WEB", title="B", content="c")]
		refs = [source["ref"] for source in prompts.citation_sources(wiki, web)]
		self.assertEqual(refs, ["WIKI 1", "WEB 1", "WEB 2"])
