from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Literal

from station_ai.backend import constants
from station_ai.backend.errors import ChatServiceError
from station_ai.backend.pipeline.types import ProviderReply


logger = logging.getLogger(__name__)

GENERATION_START_PCT = 45.0
GENERATION_SPAN_PCT = 45.0
USAGE_PCT = 96.0
RESULT_PCT = 100.0
_MIN_BUDGET_TOKENS = 500
_MAX_BUDGET_TOKENS = 6000
_END_SENTINEL = "[DONE]"

ControllerState = Literal["streaming", "done"]


def decode_text_content(value: Any) -> str:
	"""Decode a provider content field: a plain string or a list of typed text parts."""
	if isinstance(value, str):
		return value
	if not isinstance(value, list):
		return ""
	parts: List[str] = []
	for item in value:
		if isinstance(item, str):
			parts.append(item)
			continue
		if not isinstance(item, dict):
			continue
		part_type = item.get("type", "text")
		text = item.get("text")
		if part_type in ("text", "output_text") and isinstance(text, str):
			parts.append(text)
	return "".join(parts)


def estimate_tokens(text: str) -> int:
	if not text:
		return 0
	return int(math.ceil(len(text) / constants.STREAM_CHARS_PER_TOKEN))


def generation_progress(completion_tokens_est: int, max_tokens: int) -> float:
	budget = min(max(max_tokens, _MIN_BUDGET_TOKENS), _MAX_BUDGET_TOKENS)
	advance = min(GENERATION_SPAN_PCT * completion_tokens_est / budget, GENERATION_SPAN_PCT)
	return round(GENERATION_START_PCT + advance, 2)


def _provider_stream_error(payload: Dict[str, Any]) -> ChatServiceError:
	error = payload.get("error")
	if isinstance(error, dict):
		message = str(error.get("message") or error.get("code") or "unknown error")
	else:
		message = str(error)
	return ChatServiceError(
		status_code=502,
		code="station_ai_provider_error",
		message=f"Provider stream error: {message}",
	)


class StreamDeliveryController:
	"""Turns raw provider SSE lines into delta and usage events.

	`data:` payloads are buffered until a blank line, which flushes them as one
	chunk, or until the `[DONE]` sentinel, which ends the stream. Comment lines
	and other SSE fields are ignored.
	"""

	def __init__(self, *, model: str, max_tokens: int):
		self.state: ControllerState = "streaming"
		self._requested_model = model
		self._max_tokens = max_tokens
		self._buffer: List[str] = []
		self._parts: List[str] = []
		self._answer_runes = 0
		self._progress = GENERATION_START_PCT
		self.model = ""
		self.provider_message_id = ""
		self.usage: Dict[str, Any] = {}
		self.delta_count = 0

	@property
	def done(self) -> bool:
		return self.state == "done"

	@property
	def answer(self) -> str:
		return "".join(self._parts)

	@property
	def completion_tokens_est(self) -> int:
		return int(math.ceil(self._answer_runes / constants.STREAM_CHARS_PER_TOKEN)) if self._answer_runes else 0

	def feed(self, line: str) -> List[Dict[str, Any]]:
		if self.done:
			return []
		line = line.rstrip("\r\n")
		if not line:
			return self._flush()
		if line.startswith(":"):
			return []
		if not line.startswith("data:"):
			return []
		payload = line[5:]
		if payload.startswith(" "):
			payload = payload[1:]
		if payload.strip() == _END_SENTINEL:
			events = self._flush()
			self.state = "done"
			return events
		self._buffer.append(payload)
		return []

	def close(self) -> List[Dict[str, Any]]:
		"""Flush whatever is buffered when the provider stream ends without a sentinel."""
		if self.done:
			return []
		events = self._flush()
		self.state = "done"
		return events

	def reply(self) -> ProviderReply:
		return ProviderReply(
			answer=self.answer.strip(),
			model=self.model or self._requested_model,
			provider_message_id=self.provider_message_id,
			usage=dict(self.usage),
		)

	def _flush(self) -> List[Dict[str, Any]]:
		if not self._buffer:
			return []
		lines, self._buffer = self._buffer, []
		try:
			chunks = [json.loads("\n".join(lines))]
		except json.JSONDecodeError:
			# Some gateways drop the blank separator; fall back to one event per line.
			chunks = []
			for item in lines:
				try:
					chunks.append(json.loads(item))
				except json.JSONDecodeError:
					logger.debug("skipping malformed stream chunk: %.120s", item)
		events: List[Dict[str, Any]] = []
		for chunk in chunks:
			if isinstance(chunk, dict):
				events.extend(self._handle_chunk(chunk))
		return events

	def _handle_chunk(self, chunk: Dict[str, Any]) -> List[Dict[str, Any]]:
		if chunk.get("error"):
			raise _provider_stream_error(chunk)
		if not self.model and isinstance(chunk.get("model"), str):
			self.model = chunk["model"]
		if not self.provider_message_id and isinstance(chunk.get("id"), str):
			self.provider_message_id = chunk["id"]

		events: List[Dict[str, Any]] = []
		choices = chunk.get("choices")
		if isinstance(choices, list) and choices and isinstance(choices[0], dict):
			delta = choices[0].get("delta")
			if not isinstance(delta, dict):
				delta = choices[0].get("message") if isinstance(choices[0].get("message"), dict) else {}
			text = decode_text_content(delta.get("content"))
			if text:
				events.append(self._delta_event(text))

		usage = chunk.get("usage")
		if isinstance(usage, dict) and usage and not self.usage:
			self.usage = dict(usage)
			events.append(
				{
					"type": "usage",
					"prompt_tokens": usage.get("prompt_tokens", 0),
					"completion_tokens": usage.get("completion_tokens", 0),
					"total_tokens": usage.get("total_tokens", 0),
					"progress_pct": USAGE_PCT,
				}
			)
		return events

	def _delta_event(self, text: str) -> Dict[str, Any]:
		self._parts.append(text)
		self._answer_runes += len(text)
		self.delta_count += 1
		estimate = self.completion_tokens_est
		self._progress = max(self._progress, generation_progress(estimate, self._max_tokens))
		return {
			"type": "delta",
			"delta": text,
			"progress_pct": self._progress,
			"completion_tokens_est": estimate,
		}
