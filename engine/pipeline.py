"""Generation pipeline — prompt -> model -> samples -> playback.

One generate() call is one run with its own ProgressReporter:

  1. acquire model   0-70   (delegated to ModelLoader)
  2. synthesize     70-95   (step counter / max_steps)
  3. validate       95-98
  4. playback       98-100  (hand-off to the crossfade coordinator)

Every failure ends the run with a single progress event at 0 carrying an
"Error: ..." label. Whatever was already playing keeps playing.
"""

import asyncio
import functools
import logging
from typing import Optional

import numpy as np

from .errors import EmptyResultError, LoopgenError, SynthesisError
from .model_loader import ModelLoader
from .progress import PLAYBACK, POSTPROCESS, SYNTHESIS, ProgressReporter
from .types import (
    GENERATION_COMPLETE,
    AudioBuffer,
    EventSink,
    GenerationRequest,
    ModelHandle,
    discard_event,
)

log = logging.getLogger("pipeline")

DEFAULT_MAX_STEPS = 512  # ~10s of MusicGen audio


class GenerationPipeline:
    """Drives prompt-to-loop requests against a shared loader and playback target.

    Args:
        loader: The process-wide ModelLoader; its backend also synthesizes.
        playback: Anything with start(AudioBuffer), normally a CrossfadeCoordinator.
        emit: Event sink for the UI collaborator.
        max_steps: Token budget per generation; also the progress denominator.
    """

    def __init__(
        self,
        loader: ModelLoader,
        playback,
        emit: EventSink = discard_event,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        self._loader = loader
        self._playback = playback
        self._emit = emit
        self.max_steps = max_steps

    async def generate(self, prompt: Optional[str]) -> Optional[AudioBuffer]:
        """Generate and start looping audio for prompt.

        Returns the buffer now playing, or None if the prompt was empty or
        the run failed (the failure has already been reported).
        """
        prompt = (prompt or "").strip()
        if not prompt:
            return None

        request = GenerationRequest(prompt=prompt)
        progress = ProgressReporter(self._emit)
        log.info("Generate: %r", request.prompt[:80])

        try:
            handle = await self._loader.ensure_loaded(progress)
            raw = await self._synthesize(handle, request.prompt, progress)

            progress.report(POSTPROCESS, POSTPROCESS.start, "Processing audio...")
            buffer = to_audio_buffer(raw, handle.sample_rate)

            progress.report(PLAYBACK, PLAYBACK.start, "Starting playback...")
            self._playback.start(buffer)
        except LoopgenError as e:
            log.error("Audio generation failed (%s): %s", type(e).__name__, e)
            progress.fail(str(e))
            return None
        except Exception as e:
            log.exception("Audio generation failed unexpectedly")
            progress.fail(f"{type(e).__name__}: {e}")
            return None

        progress.report(PLAYBACK, PLAYBACK.end, "Playing")
        self._emit(GENERATION_COMPLETE, {})
        log.info(
            "Now looping %r: %.2fs @ %dHz",
            request.prompt[:60], buffer.duration, buffer.sample_rate,
        )
        return buffer

    async def _synthesize(self, handle: ModelHandle, prompt: str, progress: ProgressReporter):
        """Run the backend's blocking synthesize() in the thread pool."""
        loop = asyncio.get_running_loop()
        total = self.max_steps

        def on_step(done: int):
            loop.call_soon_threadsafe(
                progress.report, SYNTHESIS, SYNTHESIS.at(done / total), "Generating audio..."
            )

        progress.report(SYNTHESIS, SYNTHESIS.start, "Generating audio...")
        fn = functools.partial(self._loader.backend.synthesize, handle, prompt, total, on_step)
        try:
            return await loop.run_in_executor(None, fn)
        except LoopgenError:
            raise
        except Exception as e:
            raise SynthesisError(f"Synthesis failed: {e}") from e


def to_audio_buffer(raw, sample_rate: int) -> AudioBuffer:
    """Validate backend output and wrap it at the model's own sample rate.

    Channel-first input is reduced to its first channel; NaN/inf become 0.

    Raises:
        EmptyResultError: raw is missing or holds no samples.
    """
    if raw is None:
        raise EmptyResultError("No audio data generated")

    samples = np.asarray(raw, dtype=np.float32)
    while samples.ndim > 1:
        samples = samples[0] if samples.shape[0] else samples.reshape(-1)

    if samples.size == 0:
        raise EmptyResultError("No audio data generated")

    samples = np.nan_to_num(samples, nan=0.0, posinf=0.0, neginf=0.0)
    return AudioBuffer(samples=samples, sample_rate=sample_rate)
