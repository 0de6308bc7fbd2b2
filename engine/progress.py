"""Progress stages and the per-run reporter.

Every stage owns a slice of the 0-100 scale:

  bootstrap    0-15   runtime import / model init
  download    15-65   model files
  finalize    65-70   model ready
  synthesis   70-95   token loop
  postprocess 95-98   sample validation
  playback    98-100  hand-off to the crossfade coordinator

A reporter belongs to one generate() call. It never lets the percent go
backwards; the only way down is fail(), which resets to 0.
"""

from dataclasses import dataclass

from .types import GENERATION_PROGRESS, EventSink, ProgressEvent, discard_event


@dataclass(frozen=True)
class Stage:
    name: str
    start: int
    end: int

    def clamp(self, percent: float) -> int:
        return int(max(self.start, min(self.end, round(percent))))

    def at(self, fraction: float) -> int:
        """Map a 0.0-1.0 fraction of this stage onto the global scale."""
        fraction = max(0.0, min(1.0, fraction))
        return self.clamp(self.start + fraction * (self.end - self.start))


BOOTSTRAP = Stage("bootstrap", 0, 15)
DOWNLOAD = Stage("download", 15, 65)
FINALIZE = Stage("finalize", 65, 70)
SYNTHESIS = Stage("synthesis", 70, 95)
POSTPROCESS = Stage("postprocess", 95, 98)
PLAYBACK = Stage("playback", 98, 100)


class ProgressReporter:
    """Emits generation-progress events for a single pipeline run."""

    def __init__(self, emit: EventSink = discard_event):
        self._emit = emit
        self._percent = 0
        self._label = ""

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def label(self) -> str:
        return self._label

    def report(self, stage: Stage, percent: float, label: str) -> ProgressEvent:
        """Clamp to the stage range and to the last reported value, then emit."""
        value = max(self._percent, stage.clamp(percent))
        self._percent = value
        self._label = label
        event = ProgressEvent(stage=stage.name, percent=value, label=label)
        self._emit(GENERATION_PROGRESS, event.payload())
        return event

    def fail(self, message: str) -> ProgressEvent:
        """Terminal failure: reset to 0 with an error label."""
        self._percent = 0
        self._label = f"Error: {message}"
        event = ProgressEvent(stage="error", percent=0, label=self._label)
        self._emit(GENERATION_PROGRESS, event.payload())
        return event
