"""
Pipeline Tracing
State transitions, per-stage timings and degradation records for one search call
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum


class PipelineState(str, Enum):
    """Orchestrator states; optional states are skipped by configuration"""
    EXPANDING = "expanding"
    RETRIEVING = "retrieving"
    FUSING = "fusing"
    SELECTING = "selecting"
    EXPANDING_DOCS = "expanding_docs"
    RERANKING = "reranking"
    COMPRESSING = "compressing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StageTrace:
    """Trace information for a single pipeline stage"""

    state: PipelineState
    started_at: float
    ended_at: float = 0.0
    duration_ms: float = 0.0

    input_count: int = 0
    output_count: int = 0

    data: Dict[str, Any] = field(default_factory=dict)

    error: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None

    def complete(self, output_count: int = 0, data: Optional[Dict[str, Any]] = None) -> None:
        """Mark stage as complete"""
        self.ended_at = time.time()
        self.duration_ms = (self.ended_at - self.started_at) * 1000
        self.output_count = output_count
        if data:
            self.data.update(data)

    def fail(self, error: str, output_count: int = 0) -> None:
        """Mark stage as failed; the pipeline continued with fallback data"""
        self.ended_at = time.time()
        self.duration_ms = (self.ended_at - self.started_at) * 1000
        self.output_count = output_count
        self.error = error

    def skip(self, reason: str) -> None:
        """Mark stage as skipped"""
        self.ended_at = time.time()
        self.duration_ms = 0.0
        self.skipped = True
        self.skip_reason = reason

    @property
    def ran(self) -> bool:
        return not self.skipped and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "duration_ms": round(self.duration_ms, 2),
            "input_count": self.input_count,
            "output_count": self.output_count,
            "data": self.data,
            "error": self.error,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
        }


@dataclass
class RetrieverCall:
    """Outcome of one (query variant, retriever) call"""
    query_text: str
    method: str
    succeeded: bool
    result_count: int = 0
    attempts: int = 1
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_text": self.query_text,
            "method": self.method,
            "succeeded": self.succeeded,
            "result_count": self.result_count,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class PipelineTrace:
    """
    Complete trace of a pipeline execution

    Owned by exactly one search call; never shared between calls.
    """

    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.time)
    ended_at: float = 0.0
    total_duration_ms: float = 0.0

    original_query: str = ""
    query_variants: List[str] = field(default_factory=list)

    state: PipelineState = PipelineState.EXPANDING
    transitions: List[PipelineState] = field(default_factory=list)
    stages: List[StageTrace] = field(default_factory=list)
    retriever_calls: List[RetrieverCall] = field(default_factory=list)

    final_results_count: int = 0

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def start_stage(self, state: PipelineState, input_count: int = 0) -> StageTrace:
        """Enter a state and start tracking its stage"""
        self.state = state
        self.transitions.append(state)
        stage = StageTrace(state=state, started_at=time.time(), input_count=input_count)
        self.stages.append(stage)
        return stage

    def skip_stage(self, state: PipelineState, reason: str, input_count: int = 0) -> StageTrace:
        """Record a stage that was not entered; no state transition happens"""
        stage = StageTrace(state=state, started_at=time.time(), input_count=input_count)
        stage.skip(reason)
        self.stages.append(stage)
        return stage

    def finish(self, state: PipelineState, results_count: int = 0) -> None:
        """Enter a terminal state"""
        self.state = state
        self.transitions.append(state)
        self.ended_at = time.time()
        self.total_duration_ms = (self.ended_at - self.started_at) * 1000
        self.final_results_count = results_count

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def get_stage(self, state: PipelineState) -> Optional[StageTrace]:
        for stage in self.stages:
            if stage.state == state:
                return stage
        return None

    def stages_run(self) -> List[str]:
        """States whose stage actually ran to completion"""
        return [s.state.value for s in self.stages if s.ran]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "original_query": self.original_query,
            "query_variants": self.query_variants,
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "stages": [s.to_dict() for s in self.stages],
            "retriever_calls": [c.to_dict() for c in self.retriever_calls],
            "final_results_count": self.final_results_count,
            "errors": self.errors,
            "warnings": self.warnings,
        }
