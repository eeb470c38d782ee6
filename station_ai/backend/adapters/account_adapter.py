from __future__ import annotations

from typing import Any, Dict, List

import httpx

from station_ai.backend import config
from station_ai.backend.errors import AccountDataError, SessionUnavailableError
from station_ai.backend.pipeline.runtime import AccountSession


_ACCOUNT_TIMEOUT_S = 15.0


class StaticSessionProvider:
	"""Session taken from STATION_AI_CHARACTER_ID / STATION_AI_ACCESS_TOKEN.

	The token is issued elsewhere; refreshing only checks it is still present.
	"""

	def resolve(self) -> AccountSession:
		character_id = config.character_id()
		if character_id is None:
			raise SessionUnavailableError("no character session configured")
		token = config.access_token()
		if not token:
			raise SessionUnavailableError("no access token configured")
		return AccountSession(character_id=character_id, access_token=token)

	def refresh(self, session: AccountSession) -> AccountSession:
		token = config.access_token()
		if not token:
			raise SessionUnavailableError("access token expired")
		return AccountSession(
			character_id=session.character_id,
			access_token=token,
			character_name=session.character_name,
		)


class EsiAccountData:
	"""Character wallet and market data from the EVE Swagger Interface."""

	def __init__(
		self,
		*,
		base_url: str | None = None,
		timeout_s: float = _ACCOUNT_TIMEOUT_S,
		transport: httpx.BaseTransport | None = None,
	):
		self._base_url = (base_url or config.esi_base_url()).rstrip("/")
		self._timeout_s = timeout_s
		self._transport = transport

	def _get(self, path: str, access_token: str) -> Any:
		url = f"{self._base_url}{path}"
		headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
		try:
			with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
				response = client.get(url, headers=headers, params={"datasource": "tranquility"})
		except httpx.HTTPError as exc:
			raise AccountDataError(f"{path}: {exc.__class__.__name__}") from exc
		if response.status_code != 200:
			raise AccountDataError(f"{path}: HTTP {response.status_code}")
		try:
			return response.json()
		except ValueError as exc:
			raise AccountDataError(f"{path}: invalid JSON") from exc

	def wallet_balance(self, character_id: int, access_token: str) -> float:
		payload = self._get(f"/characters/{character_id}/wallet/", access_token)
		if isinstance(payload, bool) or not isinstance(payload, (int, float)):
			raise AccountDataError("wallet: unexpected payload")
		return float(payload)

	def orders(self, character_id: int, access_token: str) -> List[Dict[str, Any]]:
		payload = self._get(f"/characters/{character_id}/orders/", access_token)
		if not isinstance(payload, list):
			raise AccountDataError("orders: unexpected payload")
		return [item for item in payload if isinstance(item, dict)]

	def transactions(self, character_id: int, access_token: str) -> List[Dict[str, Any]]:
		payload = self._get(f"/characters/{character_id}/wallet/transactions/", access_token)
		if not isinstance(payload, list):
			raise AccountDataError("transactions: unexpected payload")
		return [item for item in payload if isinstance(item, dict)]
