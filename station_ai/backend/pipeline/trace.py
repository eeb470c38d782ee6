from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List

from station_ai.backend.pipeline.types import PipelineState, StageEvent, StageStatus


logger = logging.getLogger(__name__)


def now_iso() -> str:
	return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def make_event(*, stage: str, status: StageStatus, detail: str) -> StageEvent:
	return StageEvent(stage=stage, status=status, detail=detail, timestamp=now_iso())


def record(state: PipelineState, *, stage: str, status: StageStatus, detail: str) -> None:
	state.trace.append(make_event(stage=stage, status=status, detail=detail))
	logger.debug("stage=%s status=%s detail=%s", stage, status, detail)


def serialize_trace(trace_events: Iterable[StageEvent]) -> List[dict]:
	return [event.as_dict() for event in trace_events]
