from __future__ import annotations

import re
from typing import List

MAX_KEYWORDS = 12
MIN_KEYWORD_RUNES = 3

_NON_WORD_PATTERN = re.compile(r"[^\w]+", re.UNICODE)

_STOP_WORDS = frozenset(
	{
		# en
		"the", "and", "for", "are", "but", "not", "you", "your", "all", "any", "can", "had", "her",
		"was", "one", "our", "out", "has", "have", "his", "how", "its", "let", "may", "who", "why",
		"what", "when", "where", "which", "with", "this", "that", "these", "those", "there", "their",
		"them", "then", "than", "from", "into", "about", "would", "could", "should", "will", "just",
		"does", "did", "doing", "been", "being", "were", "also", "some", "more", "most", "very",
		"please", "show", "tell", "give", "want", "need", "like", "make", "get", "use", "using",
		# ru
		"что", "как", "где", "когда", "почему", "зачем", "это", "этот", "эта", "эти", "тот", "там",
		"тут", "для", "при", "про", "или", "она", "они", "оно", "его", "ее", "её", "мне", "меня",
		"мой", "мои", "моя", "нас", "вас", "вам", "нам", "так", "уже", "еще", "ещё", "все", "всё",
		"всех", "был", "была", "были", "быть", "есть", "нет", "над", "под", "без", "чем", "чтобы",
		"если", "только", "очень", "можно", "нужно", "надо", "какие", "какой", "какая", "покажи",
		"скажи", "дай", "пожалуйста",
	}
)


def normalize_text(text: str) -> str:
	"""Lower-case and replace punctuation runs with single spaces."""
	return " ".join(_NON_WORD_PATTERN.sub(" ", (text or "").lower()).split())


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> List[str]:
	keywords: List[str] = []
	seen = set()
	for term in normalize_text(text).split():
		if len(term) < MIN_KEYWORD_RUNES or term in _STOP_WORDS or term in seen:
			continue
		seen.add(term)
		keywords.append(term)
		if len(keywords) >= limit:
			break
	return keywords
