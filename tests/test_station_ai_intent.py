from unittest import TestCase

from station_ai.backend.pipeline.intent import detect_intent, normalize_history
from station_ai.backend.pipeline.keywords import extract_keywords, normalize_text
from station_ai.backend.schemas import HistoryMessage


class IntentDetectionTests(TestCase):
	def test_russian_vocabulary_routes_to_expected_intents(self) -> None:
		self.assertEqual(detect_intent("привет"), "smalltalk")
		self.assertEqual(detect_intent("покажи лучшие сделки"), "trading_analysis")
		self.assertEqual(detect_intent("что в скане?"), "trading_analysis")
		self.assertEqual(detect_intent("у меня ошибка при скане"), "debug_support")
		self.assertEqual(detect_intent("как работает station trading в проекте"), "product_help")
		self.assertEqual(detect_intent("погугли новости по патчу"), "web_research")

	def test_english_vocabulary_routes_to_expected_intents(self) -> None:
		self.assertEqual(detect_intent("hi"), "smalltalk")
		self.assertEqual(detect_intent("top trades in current scan"), "trading_analysis")
		self.assertEqual(detect_intent("the app crashes with a traceback"), "debug_support")
		self.assertEqual(detect_intent("where are the docs for radius scan?"), "product_help")
		self.assertEqual(detect_intent("google the latest patch notes"), "web_research")

	def test_debug_outranks_trading_vocabulary(self) -> None:
		self.assertEqual(detect_intent("error while loading scan results"), "debug_support")

	def test_structured_trading_fields_outrank_product_vocabulary(self) -> None:
		self.assertEqual(detect_intent("what does scan_snapshot min_margin mean in the docs"), "trading_analysis")

	def test_long_greeting_is_not_smalltalk(self) -> None:
		message = "hello there my friend, I would love to chat about the weather today"
		self.assertGreater(len(message), 40)
		self.assertEqual(detect_intent(message), "general")

	def test_greeting_length_counts_punctuation(self) -> None:
		message = "hey" + "!" * 40
		self.assertEqual(len(message), 43)
		self.assertEqual(detect_intent(message), "general")
		self.assertEqual(detect_intent("hello, how are you?"), "smalltalk")

	def test_short_followup_inherits_trading_from_recent_assistant_turn(self) -> None:
		history = [
			HistoryMessage(role="user", content="what should I do"),
			HistoryMessage(role="assistant", content="Recommendation: buy Tritanium, risk is low."),
		]
		self.assertEqual(detect_intent("почему?", history), "trading_analysis")
		self.assertEqual(detect_intent("почему?"), "general")

	def test_followup_ignores_assistant_turns_outside_recent_window(self) -> None:
		history = [HistoryMessage(role="assistant", content="Recommendation: sell Pyerite.")]
		history += [HistoryMessage(role="assistant", content="Sure, anything else?") for _ in range(4)]
		self.assertEqual(detect_intent("why?", history), "general")

	def test_empty_message_is_general(self) -> None:
		self.assertEqual(detect_intent("   "), "general")


class HistoryNormalizationTests(TestCase):
	def test_drops_foreign_roles_empty_turns_and_leaked_diagnostics(self) -> None:
		history = [
			HistoryMessage(role="system", content="you are a bot"),
			HistoryMessage(role="user", content="  first question  "),
			HistoryMessage(role="assistant", content=""),
			HistoryMessage(role="assistant", content='{"need_full_context": true}'),
			HistoryMessage(role="Assistant", content="A normal answer."),
		]
		normalized = normalize_history(history)
		self.assertEqual(
			[(item.role, item.content) for item in normalized],
			[("user", "first question"), ("assistant", "A normal answer.")],
		)

	def test_keeps_last_sixteen_turns_with_bounded_content(self) -> None:
		history = [HistoryMessage(role="user", content=f"message {index}") for index in range(20)]
		history.append(HistoryMessage(role="assistant", content="x" * 5000))
		normalized = normalize_history(history)
		self.assertEqual(len(normalized), 16)
		self.assertEqual(normalized[0].content, "message 5")
		self.assertEqual(len(normalized[-1].content), 4000)


class KeywordTests(TestCase):
	def test_normalize_text_collapses_punctuation(self) -> None:
		self.assertEqual(normalize_text("  Hello,   WORLD!!! scan_snapshot? "), "hello world scan_snapshot")

	def test_extract_keywords_skips_stop_words_short_terms_and_duplicates(self) -> None:
		keywords = extract_keywords("How does the execution plan handle slippage? Execution plan, please")
		self.assertEqual(keywords, ["execution", "plan", "handle", "slippage"])

	def test_extract_keywords_respects_limit(self) -> None:
		text = " ".join(f"term{index}" for index in range(30))
		self.assertEqual(len(extract_keywords(text)), 12)
		self.assertEqual(len(extract_keywords(text, limit=3)), 3)
