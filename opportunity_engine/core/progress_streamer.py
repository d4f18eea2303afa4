"""
Progress Streamer - structured run events.

The pipeline emits ProgressEvents; subscribers decide what to do with
them (log them, push them to an HTTP client, record them for status
polling).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class PipelinePhase(Enum):
    INITIALIZATION = "initialization"
    INITIAL_ANALYSIS = "initial_analysis"
    GAP_PLANNING = "gap_planning"
    ENRICHMENT = "enrichment"
    AGGREGATION = "aggregation"
    REPORT_DRAFTING = "report_drafting"
    EVALUATION = "evaluation"
    REVISION = "revision"
    FINALIZATION = "finalization"
    COMPLETE = "complete"


# Share of overall progress per phase
PHASE_WEIGHTS = {
    PipelinePhase.INITIALIZATION: 0.02,
    PipelinePhase.INITIAL_ANALYSIS: 0.13,
    PipelinePhase.GAP_PLANNING: 0.05,
    PipelinePhase.ENRICHMENT: 0.25,
    PipelinePhase.AGGREGATION: 0.05,
    PipelinePhase.REPORT_DRAFTING: 0.20,
    PipelinePhase.EVALUATION: 0.10,
    PipelinePhase.REVISION: 0.15,
    PipelinePhase.FINALIZATION: 0.05,
    PipelinePhase.COMPLETE: 0.0,
}


@dataclass
class ProgressEvent:
    """A single progress update."""
    phase: PipelinePhase
    message: str
    progress: float  # 0.0 to 1.0 within the phase
    detail: Dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict:
        return {
            'phase': self.phase.value,
            'message': self.message,
            'progress': self.progress,
            'detail': dict(self.detail),
            'timestamp': self.timestamp,
        }


class ProgressStreamer:
    """
    Tracks and streams pipeline progress.
    Supports a sync callback and async queue subscribers.
    """

    def __init__(self, callback: Optional[Callable[[ProgressEvent], None]] = None,
                 verbose: bool = True):
        self.callback = callback
        self.verbose = verbose
        self.events: List[ProgressEvent] = []
        self.start_time = time.monotonic()
        self.current_phase = PipelinePhase.INITIALIZATION
        self._listeners: List[asyncio.Queue] = []
        self._phase_progress: Dict[str, float] = {}

    def update(self, phase: PipelinePhase, message: str,
               progress: float = 0.0, detail: Dict = None):
        """Record a progress update and fan it out to subscribers."""
        event = ProgressEvent(
            phase=phase,
            message=message,
            progress=progress,
            detail=detail or {}
        )
        self.events.append(event)
        self.current_phase = phase
        self._phase_progress[phase.value] = progress

        if self.verbose:
            elapsed = time.monotonic() - self.start_time
            logger.info(
                f"[{phase.value}] {self.overall_progress():.0%} | {message} ({elapsed:.1f}s)"
            )

        if self.callback:
            try:
                self.callback(event)
            except Exception as e:
                logger.error(f"Progress callback failed: {e}")

        for queue in self._listeners:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Progress subscriber queue full; event dropped")

    def subscribe(self) -> asyncio.Queue:
        """Subscribe to real-time events (for streaming endpoints)."""
        queue = asyncio.Queue(maxsize=100)
        self._listeners.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._listeners:
            self._listeners.remove(queue)

    def overall_progress(self) -> float:
        """Weighted progress across phases."""
        phases = list(PipelinePhase)
        if self.current_phase == PipelinePhase.COMPLETE:
            return 1.0
        current_idx = phases.index(self.current_phase)

        total = 0.0
        for i, phase in enumerate(phases):
            weight = PHASE_WEIGHTS.get(phase, 0)
            if i < current_idx:
                total += weight
            elif i == current_idx:
                total += weight * self._phase_progress.get(phase.value, 0)
        return min(total, 1.0)

    def get_summary(self) -> Dict:
        return {
            'current_phase': self.current_phase.value,
            'overall_progress': self.overall_progress(),
            'elapsed_seconds': time.monotonic() - self.start_time,
            'events_count': len(self.events),
            'phases_completed': sorted({
                e.phase.value for e in self.events if e.progress >= 1.0
            }),
        }

    def get_timeline(self) -> List[Dict]:
        return [e.to_dict() for e in self.events]
