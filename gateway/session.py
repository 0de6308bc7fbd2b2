"""Playback session — one audio device, its crossfade coordinator and pipeline."""

import logging
from typing import Optional

from engine.model_loader import ModelLoader
from engine.musicgen import MusicGenBackend
from engine.pipeline import GenerationPipeline
from engine.types import AudioBuffer, EventSink, discard_event

from .audio.crossfade import CrossfadeCoordinator, PlaybackState
from .audio.output import AudioOutput, create_output
from .config import Settings

log = logging.getLogger("session")


def create_backend(settings: Settings) -> MusicGenBackend:
    """MusicGen backend configured from settings."""
    return MusicGenBackend(
        model_id=settings.model_id,
        device=settings.model_device,
        patterns=settings.model_patterns,
        revision=settings.model_revision,
        guidance_scale=settings.guidance_scale,
    )


def _device_arg(device: Optional[str]):
    """sounddevice takes an int index or a name substring."""
    if device and device.isdigit():
        return int(device)
    return device or None


class Session:
    """Turns prompts into looping audio on one output device.

    The ModelLoader is passed in because the loaded model outlives any one
    session; the output device is opened on the first successful generation.
    """

    def __init__(self, loader: ModelLoader, settings: Settings, emit: EventSink = discard_event):
        self._settings = settings
        self.loader = loader
        self.coordinator = CrossfadeCoordinator(
            output_factory=self._open_output,
            duration=settings.crossfade_duration,
            margin=settings.teardown_margin,
        )
        self.pipeline = GenerationPipeline(
            loader,
            self.coordinator,
            emit=emit,
            max_steps=settings.max_new_tokens,
        )

    def _open_output(self, sample_rate: int) -> AudioOutput:
        s = self._settings
        return create_output(
            sample_rate,
            backend=s.audio_backend,
            device=_device_arg(s.audio_device),
            blocksize=s.audio_blocksize,
            channels=s.audio_channels,
        )

    @property
    def playback_state(self) -> PlaybackState:
        return self.coordinator.state

    async def generate(self, prompt: Optional[str]) -> Optional[AudioBuffer]:
        """Generate audio for prompt and crossfade it in."""
        return await self.pipeline.generate(prompt)

    def stop_audio(self):
        """Stop all playback (current and fading)."""
        self.coordinator.stop_all()

    async def close(self):
        """Stop playback and release the audio device."""
        self.coordinator.close()
        log.info("Session closed")
