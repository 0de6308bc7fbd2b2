"""Shared test fixtures: fake MusicGen backend, event recorder, null audio output."""

import time
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest

from engine.types import GENERATION_PROGRESS, ModelHandle
from gateway.audio.crossfade import CrossfadeCoordinator
from gateway.audio.output import AudioOutput

FAKE_RATE = 24000  # deliberately not MusicGen's 32 kHz


class FakeBackend:
    """Stands in for MusicGenBackend: same load/synthesize contract, no torch.

    load_errors / synth_errors are consumed one per call; None means succeed.
    """

    model_id = "fake/musicgen"

    def __init__(
        self,
        sample_rate: int = FAKE_RATE,
        samples: Optional[np.ndarray] = None,
        download_ticks: Sequence[Tuple[int, int, str]] = (
            (0, 100, "config.json"),
            (40, 100, "model.safetensors"),
            (100, 100, "model.safetensors"),
        ),
        load_errors: Sequence[Optional[Exception]] = (),
        synth_errors: Sequence[Optional[Exception]] = (),
        load_delay: float = 0.0,
        steps: int = 4,
    ):
        self.sample_rate = sample_rate
        self.samples = samples
        self.download_ticks = list(download_ticks)
        self.load_errors = list(load_errors)
        self.synth_errors = list(synth_errors)
        self.load_delay = load_delay
        self.steps = steps
        self.load_calls = 0
        self.prompts: List[str] = []

    def load(self, on_progress=None) -> ModelHandle:
        self.load_calls += 1
        if self.load_delay:
            time.sleep(self.load_delay)
        for loaded, total, label in self.download_ticks:
            if on_progress:
                on_progress(loaded, total, label)
        error = self.load_errors.pop(0) if self.load_errors else None
        if error is not None:
            raise error
        return ModelHandle(model=object(), sample_rate=self.sample_rate, name=self.model_id)

    def synthesize(self, handle, prompt, max_steps, on_step=None):
        self.prompts.append(prompt)
        for i in range(1, self.steps + 1):
            if on_step:
                on_step(i * max_steps // self.steps)
        error = self.synth_errors.pop(0) if self.synth_errors else None
        if error is not None:
            raise error
        if self.samples is not None:
            return self.samples
        t = np.arange(handle.sample_rate // 10) / handle.sample_rate
        return (0.3 * np.sin(2 * np.pi * 220.0 * t)).astype(np.float32)


class EventRecorder:
    """Event sink that keeps everything it is sent."""

    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def __call__(self, event: str, payload: dict):
        self.events.append((event, dict(payload)))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> List[dict]:
        return [payload for event, payload in self.events if event == name]

    def progress(self) -> List[int]:
        return [p["progress"] for p in self.of(GENERATION_PROGRESS)]

    def clear(self):
        self.events.clear()


def null_output_factory(outputs: Optional[list] = None):
    """Output factory for the coordinator that never touches a sound device."""
    def factory(sample_rate: int) -> AudioOutput:
        output = AudioOutput(sample_rate, backend="null")
        output.open()
        if outputs is not None:
            outputs.append(output)
        return output
    return factory


def make_coordinator(duration: float = 0.05, margin: float = 0.01, outputs: Optional[list] = None):
    return CrossfadeCoordinator(null_output_factory(outputs), duration=duration, margin=margin)


def make_buffer_samples(n: int = 100, value: float = 0.5) -> np.ndarray:
    return np.full(n, value, dtype=np.float32)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
