from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Iterator

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from station_ai.backend.schemas import ChatRequest, ChatResponse
from station_ai.backend.services import chat_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth/station/ai", tags=["station-ai"])

_DISCONNECT_POLL_S = 0.5


def _http_error(exc: chat_service.ChatServiceError) -> HTTPException:
	return HTTPException(
		status_code=exc.status_code,
		detail={"code": exc.code, "message": exc.message},
	)


def _encode_ndjson(event: dict) -> str:
	return json.dumps(event, ensure_ascii=False, default=str) + "\n"


def _cancel_event() -> threading.Event:
	return threading.Event()


async def watch_disconnect(request: Request, cancel_event: threading.Event, poll_s: float = _DISCONNECT_POLL_S) -> None:
	"""Set `cancel_event` once the client has gone away."""
	while not cancel_event.is_set():
		if await request.is_disconnected():
			logger.info("client disconnected from %s; canceling", request.url.path)
			cancel_event.set()
			return
		await asyncio.sleep(poll_s)


@router.post("/chat", response_model=ChatResponse)
async def chat(payload: ChatRequest, request: Request):
	cancel_event = _cancel_event()
	watcher = asyncio.create_task(watch_disconnect(request, cancel_event))
	try:
		return await run_in_threadpool(chat_service.respond, payload, cancel_event)
	except chat_service.ChatServiceError as exc:
		raise _http_error(exc) from exc
	finally:
		watcher.cancel()


@router.post("/chat/stream")
def chat_stream(payload: ChatRequest):
	try:
		pipeline_request = chat_service.normalize_chat_request(payload)
	except chat_service.ChatServiceError as exc:
		raise _http_error(exc) from exc

	def generate() -> Iterator[str]:
		events = chat_service.stream_respond(pipeline_request)
		try:
			for event in events:
				yield _encode_ndjson(event)
		except Exception:
			logger.exception("station ai stream crashed")
			yield _encode_ndjson(
				{"type": "error", "code": "station_ai_provider_error", "message": "Station AI stream failed.", "progress_pct": 0}
			)
		finally:
			events.close()

	return StreamingResponse(
		generate(),
		media_type="application/x-ndjson",
		headers={
			"Cache-Control": "no-cache",
			"X-Accel-Buffering": "no",
		},
	)
