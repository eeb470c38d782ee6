from station_ai.backend.pipeline.orchestrator import PipelineDependencies, PipelineOrchestrator, pipeline_metadata
from station_ai.backend.pipeline.types import PipelineRequest, PipelineState, StageEvent

__all__ = [
	"PipelineDependencies",
	"PipelineOrchestrator",
	"PipelineRequest",
	"PipelineState",
	"StageEvent",
	"pipeline_metadata",
]
