"""Shared data types for the loop engine."""

from dataclasses import dataclass, field
import time
from typing import Any, Callable, Dict

import numpy as np

# Events pushed to the UI collaborator
MODEL_STATUS = "model-status"
GENERATION_PROGRESS = "generation-progress"
GENERATION_COMPLETE = "generation-complete"

# emit(event_name, payload), fire-and-forget
EventSink = Callable[[str, Dict[str, Any]], None]


def discard_event(event: str, payload: Dict[str, Any]) -> None:
    """Default sink: drop events nobody asked for."""


@dataclass(frozen=True)
class ModelHandle:
    """A loaded generation capability. Opaque to everything but the backend."""
    model: Any
    sample_rate: int
    name: str = ""
    processor: Any = None
    device: str = "cpu"


@dataclass(frozen=True)
class GenerationRequest:
    """One user-triggered prompt."""
    prompt: str
    requested_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class AudioBuffer:
    """Mono float32 samples at a fixed rate. Read-only once built."""
    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {self.sample_rate}")
        # Own copy, so nobody upstream can change what is playing
        samples = np.array(self.samples, dtype=np.float32).reshape(-1)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frames / self.sample_rate


@dataclass(frozen=True)
class ProgressEvent:
    """One generation-progress update."""
    stage: str
    percent: int
    label: str

    def payload(self) -> Dict[str, Any]:
        return {"progress": self.percent, "label": self.label}
