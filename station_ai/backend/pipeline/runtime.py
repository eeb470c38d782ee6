from __future__ import annotations

import logging
import math
import re
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Protocol, Sequence

from station_ai.backend import constants
from station_ai.backend.errors import AccountDataError, SessionUnavailableError
from station_ai.backend.pipeline.keywords import normalize_text
from station_ai.backend.pipeline.types import Intent, RuntimeContext
from station_ai.backend.schemas import ContextRow
from station_ai.backend.services.cache_service import TTLCache


logger = logging.getLogger(__name__)

_HARD_ACCOUNT_PATTERNS = [
	r"\bwallets?\b",
	r"\bbalances?\b",
	r"\bportfolio",
	r"\bledger",
	r"\btransactions?\b",
	r"\bpnl\b",
	r"\bp l\b",
	r"кошел[её]к|кошельк",
	r"\bбаланс",
	r"\bпортфел",
	r"транзакци",
	r"\bледжер",
]
_POSSESSIVE_PATTERNS = [
	r"\bmy\b",
	r"\bmine\b",
	r"\bмой\b",
	r"\bмоя\b",
	r"\bмо[её]\b",
	r"\bмои\b",
	r"\bмоих\b",
	r"\bмоим\b",
	r"\bмоей\b",
	r"\bмоего\b",
	r"\bмоему\b",
]
_SOFT_ACCOUNT_PATTERNS = [
	r"\borders?\b",
	r"\bhistory\b",
	r"\brisks?\b",
	r"\bformulas?\b",
	r"\bордер",
	r"\bистори",
	r"\bриск",
	r"\bформул",
]

_RISK_MIN_SAMPLE_DAYS = 5
_RISK_LOW_SAMPLE_DAYS = 20
_EWMA_LAMBDA = 0.94

_NOTES = {
	"en": {
		"session": "account session unavailable: {detail}",
		"refresh": "account token refresh failed: {detail}",
		"wallet": "wallet balance unavailable: {detail}",
		"orders": "active orders unavailable: {detail}",
		"transactions": "wallet transactions unavailable: {detail}",
		"risk_sample": "not enough trading days for a risk estimate",
	},
	"ru": {
		"session": "сессия аккаунта недоступна: {detail}",
		"refresh": "не удалось обновить токен аккаунта: {detail}",
		"wallet": "баланс кошелька недоступен: {detail}",
		"orders": "активные ордера недоступны: {detail}",
		"transactions": "транзакции кошелька недоступны: {detail}",
		"risk_sample": "недостаточно торговых дней для оценки риска",
	},
}


def _matches_any(text: str, patterns: Iterable[str]) -> bool:
	return any(re.search(pattern, text) for pattern in patterns)


def needs_runtime_context(intent: Intent, message: str) -> bool:
	if intent in ("smalltalk", "product_help"):
		return False
	text = normalize_text(message)
	if not text:
		return False
	if _matches_any(text, _HARD_ACCOUNT_PATTERNS):
		return True
	return _matches_any(text, _POSSESSIVE_PATTERNS) and _matches_any(text, _SOFT_ACCOUNT_PATTERNS)


@dataclass
class AccountSession:
	character_id: int
	access_token: str
	character_name: str = ""


class SessionProvider(Protocol):
	def resolve(self) -> AccountSession:
		...

	def refresh(self, session: AccountSession) -> AccountSession:
		...


class AccountData(Protocol):
	def wallet_balance(self, character_id: int, access_token: str) -> float:
		...

	def orders(self, character_id: int, access_token: str) -> List[Dict[str, Any]]:
		...

	def transactions(self, character_id: int, access_token: str) -> List[Dict[str, Any]]:
		...


def _number(value: Any) -> float:
	try:
		result = float(value)
	except (TypeError, ValueError):
		return 0.0
	return result if math.isfinite(result) else 0.0


def _parse_date(value: Any) -> datetime | None:
	if not isinstance(value, str) or not value:
		return None
	try:
		parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
	except ValueError:
		return None
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed.astimezone(timezone.utc)


def summarize_orders(orders: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
	summary = {"buy_count": 0, "sell_count": 0, "open_buy_notional": 0.0, "open_sell_notional": 0.0}
	for order in orders:
		notional = _number(order.get("price")) * _number(order.get("volume_remain"))
		if order.get("is_buy_order"):
			summary["buy_count"] += 1
			summary["open_buy_notional"] += notional
		else:
			summary["sell_count"] += 1
			summary["open_sell_notional"] += notional
	summary["open_buy_notional"] = round(summary["open_buy_notional"], 2)
	summary["open_sell_notional"] = round(summary["open_sell_notional"], 2)
	return summary


def summarize_trade_flow(
	transactions: Sequence[Mapping[str, Any]],
	type_names: Mapping[int, str],
	*,
	now: datetime | None = None,
	window_days: int = constants.TRADE_FLOW_WINDOW_DAYS,
) -> Dict[str, Any]:
	current = now or datetime.now(timezone.utc)
	cutoff = current - timedelta(days=window_days)
	buy_notional = 0.0
	sell_notional = 0.0
	count = 0
	items: Dict[int, Dict[str, Any]] = {}
	for tx in transactions:
		when = _parse_date(tx.get("date"))
		if when is None or when < cutoff:
			continue
		type_id = int(_number(tx.get("type_id")))
		notional = _number(tx.get("unit_price")) * _number(tx.get("quantity"))
		count += 1
		if tx.get("is_buy"):
			buy_notional += notional
		else:
			sell_notional += notional
		item = items.setdefault(
			type_id,
			{
				"type_id": type_id,
				"type_name": type_names.get(type_id) or f"type {type_id}",
				"turnover": 0.0,
				"trades": 0,
			},
		)
		item["turnover"] += notional
		item["trades"] += 1
	ranked = sorted(items.values(), key=lambda item: (-item["turnover"], -item["trades"], item["type_id"]))
	top_items = []
	for item in ranked[: constants.TRADE_FLOW_TOP_ITEMS]:
		top_items.append({**item, "turnover": round(item["turnover"], 2)})
	return {
		"window_days": window_days,
		"buy_notional": round(buy_notional, 2),
		"sell_notional": round(sell_notional, 2),
		"net_flow": round(sell_notional - buy_notional, 2),
		"transactions": count,
		"top_items": top_items,
	}


def _daily_realized_pnl(transactions: Sequence[Mapping[str, Any]], cutoff: datetime) -> List[float]:
	"""FIFO-match sells against earlier buys per type and bucket realized P&L by UTC day."""
	dated = []
	for tx in transactions:
		when = _parse_date(tx.get("date"))
		if when is not None:
			dated.append((when, int(_number(tx.get("transaction_id"))), tx))
	dated.sort(key=lambda item: (item[0], item[1]))

	lots: Dict[int, Deque[List[float]]] = defaultdict(deque)
	daily: Dict[str, float] = defaultdict(float)
	for when, _, tx in dated:
		type_id = int(_number(tx.get("type_id")))
		price = _number(tx.get("unit_price"))
		quantity = _number(tx.get("quantity"))
		if tx.get("is_buy"):
			lots[type_id].append([price, quantity])
			continue
		if when < cutoff:
			continue
		day = when.date().isoformat()
		queue = lots[type_id]
		remaining = quantity
		while remaining > 0 and queue:
			lot = queue[0]
			matched = min(lot[1], remaining)
			daily[day] += (price - lot[0]) * matched
			lot[1] -= matched
			remaining -= matched
			if lot[1] <= 0:
				queue.popleft()
		if remaining > 0:
			# No cost basis inside the history we have: count as revenue.
			daily[day] += price * remaining
	return [daily[day] for day in sorted(daily)]


def _median(values: Sequence[float]) -> float:
	ordered = sorted(values)
	size = len(ordered)
	if size == 0:
		return 0.0
	middle = size // 2
	if size % 2:
		return ordered[middle]
	return 0.5 * (ordered[middle - 1] + ordered[middle])


def _ewma_std(values: Sequence[float], decay: float = _EWMA_LAMBDA) -> float:
	if len(values) < 2:
		return 0.0
	mean = sum(values) / len(values)
	variance = sum((value - mean) ** 2 for value in values) / len(values)
	for value in values:
		variance = decay * variance + (1 - decay) * (value - mean) ** 2
	return math.sqrt(variance)


def summarize_risk(
	transactions: Sequence[Mapping[str, Any]],
	*,
	now: datetime | None = None,
	window_days: int = constants.TRADE_FLOW_WINDOW_DAYS,
) -> Dict[str, Any] | None:
	"""Portfolio risk from daily realized P&L; None when the sample is too small."""
	current = now or datetime.now(timezone.utc)
	pnls = _daily_realized_pnl(transactions, current - timedelta(days=window_days))
	if len(pnls) < _RISK_MIN_SAMPLE_DAYS:
		return None
	typical = _median([abs(value) for value in pnls])
	if typical <= 0:
		return None
	volatility = _ewma_std([value / typical for value in pnls])
	score = min(max(volatility * 40, 0.0), 100.0)
	if score < 30:
		level = "safe"
	elif score > 70:
		level = "high"
	else:
		level = "balanced"
	return {
		"window_days": window_days,
		"sample_days": len(pnls),
		"worst_day_loss": round(max(-min(pnls), 0.0), 2),
		"typical_daily_pnl": round(typical, 2),
		"risk_score": round(score, 1),
		"risk_level": level,
		"low_sample": len(pnls) < _RISK_LOW_SAMPLE_DAYS,
	}


def type_names_from_rows(rows: Sequence[ContextRow]) -> Dict[int, str]:
	return {row.type_id: row.type_name for row in rows if row.type_id and row.type_name}


class RuntimeContextBuilder:
	"""Fetches wallet, orders and transactions in parallel for one request."""

	def __init__(
		self,
		*,
		sessions: SessionProvider,
		account: AccountData,
		transactions_cache: TTLCache,
		now: Callable[[], datetime] | None = None,
	):
		self._sessions = sessions
		self._account = account
		self._transactions_cache = transactions_cache
		self._now = now or (lambda: datetime.now(timezone.utc))

	def build(
		self,
		*,
		locale: str,
		rows: Sequence[ContextRow],
		cancel_check: Callable[[], None] | None = None,
	) -> RuntimeContext:
		notes = _NOTES.get(locale, _NOTES["en"])
		runtime = RuntimeContext()
		try:
			session = self._sessions.resolve()
		except SessionUnavailableError as exc:
			runtime.notes.append(notes["session"].format(detail=exc))
			return runtime
		try:
			session = self._sessions.refresh(session)
		except SessionUnavailableError as exc:
			runtime.notes.append(notes["refresh"].format(detail=exc))
			return runtime
		runtime.character_id = session.character_id

		lock = Lock()
		succeeded: List[str] = []
		type_names = type_names_from_rows(rows)

		def guarded(branch: str, fetch: Callable[[], None]) -> None:
			try:
				if cancel_check is not None:
					cancel_check()
				fetch()
			except AccountDataError as exc:
				logger.warning("runtime %s fetch failed: %s", branch, exc)
				with lock:
					runtime.notes.append(notes[branch].format(detail=exc))
				return
			with lock:
				succeeded.append(branch)

		def fetch_wallet() -> None:
			balance = self._account.wallet_balance(session.character_id, session.access_token)
			with lock:
				runtime.wallet_balance = round(_number(balance), 2)

		def fetch_orders() -> None:
			summary = summarize_orders(self._account.orders(session.character_id, session.access_token))
			with lock:
				runtime.orders = summary

		def fetch_transactions() -> None:
			transactions = self._transactions_cache.get(session.character_id)
			if transactions is None:
				transactions = self._account.transactions(session.character_id, session.access_token)
				self._transactions_cache.set(session.character_id, transactions)
			now = self._now()
			trade_flow = summarize_trade_flow(transactions, type_names, now=now)
			risk = summarize_risk(transactions, now=now)
			with lock:
				runtime.trade_flow = trade_flow
				runtime.risk = risk
				if risk is None:
					runtime.notes.append(notes["risk_sample"])

		with ThreadPoolExecutor(max_workers=3, thread_name_prefix="station-ai-runtime") as pool:
			futures = [
				pool.submit(guarded, "wallet", fetch_wallet),
				pool.submit(guarded, "orders", fetch_orders),
				pool.submit(guarded, "transactions", fetch_transactions),
			]
			for future in futures:
				future.result()

		runtime.available = bool(succeeded)
		return runtime
