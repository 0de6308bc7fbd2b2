"""Output graph — buffer sources mixed through gain params into one device.

A small Web-Audio-shaped graph for PortAudio:

- BufferSource plays an AudioBuffer once or loops it with no gap
- GainParam holds a value plus scheduled linear ramps on the output clock
- AudioOutput owns the clock, the connected (source, gain) voices and the
  sounddevice stream whose callback pulls render()

The clock is the number of frames rendered so far. With the "null"
backend nothing pulls frames, so time only moves when render() is called.
"""

import logging
import threading
from bisect import bisect_left
from typing import List, Optional, Tuple

import numpy as np

from engine.errors import PlaybackError
from engine.types import AudioBuffer

log = logging.getLogger("audio_output")


class GainParam:
    """Gain automation: a resting value plus (time, value) breakpoints.

    Between breakpoints the value is linearly interpolated; after the last
    one it holds. The resting value and breakpoints live in one tuple that
    every change replaces with a single assignment, so the audio thread
    always reads a consistent snapshot.
    """

    def __init__(self, value: float = 1.0):
        self._schedule: Tuple[float, List[Tuple[float, float]]] = (float(value), [])

    def cancel_scheduled_values(self, t: float):
        """Drop every breakpoint at or after t, holding the value at t."""
        value = self.value_at(t)
        resting, events = self._schedule
        events = [e for e in events if e[0] < t]
        if events:
            events.append((t, value))
            self._schedule = (resting, events)
        else:
            self._schedule = (value, events)

    def set_value_at_time(self, value: float, t: float):
        resting, events = self._schedule
        events = [e for e in events if e[0] < t]
        events.append((t, float(value)))
        self._schedule = (resting, events)

    def linear_ramp_to_value_at_time(self, value: float, t: float):
        resting, events = self._schedule
        events = list(events)
        if events and t < events[-1][0]:
            t = events[-1][0]
        events.append((t, float(value)))
        self._schedule = (resting, events)

    def hold_then_ramp(self, t: float, level: Optional[float] = None,
                       target: Optional[float] = None, end: Optional[float] = None):
        """Replace everything from t on in one step.

        Holds level at t (None keeps the value at t), then ramps linearly
        to target at end when a target is given.
        """
        resting, events = self._schedule
        if level is None:
            level = self.value_at(t)
        events = [e for e in events if e[0] < t]
        events.append((t, float(level)))
        if target is not None:
            end = t if end is None else max(t, end)
            events.append((end, float(target)))
        self._schedule = (resting, events)

    def value_at(self, t: float) -> float:
        resting, events = self._schedule
        if not events:
            return resting
        times = [e[0] for e in events]
        if t < times[0]:
            return resting
        i = bisect_left(times, t)
        if i >= len(events):
            return events[-1][1]
        t1, v1 = events[i]
        if t1 == t or i == 0:
            return v1
        t0, v0 = events[i - 1]
        return v0 + (v1 - v0) * (t - t0) / (t1 - t0)

    def values(self, start: float, frames: int, sample_rate: int) -> np.ndarray:
        """Per-frame gain for a render block starting at output time start."""
        resting, events = self._schedule
        if not events:
            return np.full(frames, resting, dtype=np.float32)
        t = start + np.arange(frames, dtype=np.float64) / sample_rate
        times = np.array([e[0] for e in events])
        vals = np.array([e[1] for e in events])
        out = np.interp(t, times, vals, left=resting, right=vals[-1])
        return out.astype(np.float32)


class BufferSource:
    """Reads an AudioBuffer from the start, optionally wrapping forever."""

    def __init__(self, buffer: AudioBuffer, loop: bool = True):
        self.buffer = buffer
        self.loop = loop
        self.playing = False
        self._pos = 0

    @property
    def position(self) -> int:
        return self._pos

    def start(self):
        self._pos = 0
        self.playing = True

    def stop(self):
        self.playing = False

    def read(self, frames: int) -> np.ndarray:
        """Return exactly frames samples; silence once a one-shot has ended."""
        out = np.zeros(frames, dtype=np.float32)
        if not self.playing:
            return out

        data = self.buffer.samples
        n = data.shape[0]
        written = 0
        while written < frames:
            if self._pos >= n:
                if not self.loop:
                    self.playing = False
                    break
                self._pos = 0  # seamless wrap, same block

            to_copy = min(n - self._pos, frames - written)
            out[written:written + to_copy] = data[self._pos:self._pos + to_copy]
            self._pos += to_copy
            written += to_copy
        return out


class AudioOutput:
    """One audio device at a fixed sample rate, mixing every connected voice.

    Args:
        sample_rate: Device rate; must equal the rate of every buffer played.
        channels: Device channel count; mono voices are copied to each.
        device: sounddevice device index or name, None for the default.
        blocksize: Frames per callback, 0 lets PortAudio choose.
        backend: "sounddevice" for a real stream, "null" for a silent clock.
    """

    def __init__(
        self,
        sample_rate: int,
        channels: int = 1,
        device=None,
        blocksize: int = 0,
        backend: str = "sounddevice",
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self.blocksize = blocksize
        self.backend = backend
        self._voices: List[Tuple[BufferSource, GainParam]] = []
        self._frames = 0
        self._stream = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def current_time(self) -> float:
        """Output clock in seconds."""
        return self._frames / self.sample_rate

    @property
    def voice_count(self) -> int:
        with self._lock:
            return len(self._voices)

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self):
        """Start the device stream (no-op for the null backend)."""
        if self._closed:
            raise PlaybackError("Audio output already closed")
        if self._stream is not None or self.backend == "null":
            return

        try:
            import sounddevice as sd

            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                blocksize=self.blocksize,
                device=self.device,
                channels=self.channels,
                dtype="float32",
                callback=self._callback,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            raise PlaybackError(f"Audio device unavailable: {e}") from e
        log.info("Audio output open: %d Hz, %d ch, device=%s", self.sample_rate, self.channels, self.device)

    def create_gain(self, value: float = 1.0) -> GainParam:
        return GainParam(value)

    def connect(self, source: BufferSource, gain: GainParam):
        with self._lock:
            self._voices.append((source, gain))

    def disconnect(self, source: BufferSource):
        """Remove a source from the mix. Unknown sources are ignored."""
        with self._lock:
            self._voices = [v for v in self._voices if v[0] is not source]

    def render(self, frames: int) -> np.ndarray:
        """Mix the next block and advance the clock. Shape (frames, channels)."""
        with self._lock:
            start = self.current_time
            mix = np.zeros(frames, dtype=np.float32)
            for source, gain in self._voices:
                if source.playing:
                    mix += source.read(frames) * gain.values(start, frames, self.sample_rate)
            self._frames += frames

        np.clip(mix, -1.0, 1.0, out=mix)
        return np.repeat(mix[:, None], self.channels, axis=1)

    def _callback(self, outdata: np.ndarray, frames: int, time_info, status):
        """sounddevice callback — runs on the PortAudio thread."""
        if status:
            log.debug("Output stream status: %s", status)
        outdata[:] = self.render(frames)

    def close(self):
        """Stop the stream and drop every voice. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        with self._lock:
            self._voices = []
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                log.warning("Error closing audio stream: %s", e)
            self._stream = None
        log.info("Audio output closed")


def create_output(
    sample_rate: int,
    backend: str = "sounddevice",
    device: Optional[str] = None,
    blocksize: int = 0,
    channels: int = 1,
) -> AudioOutput:
    """Build and open an output for the given rate."""
    output = AudioOutput(sample_rate, channels=channels, device=device, blocksize=blocksize, backend=backend)
    output.open()
    return output
