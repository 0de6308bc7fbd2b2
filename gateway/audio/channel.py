"""PlaybackChannel — one source -> gain -> device path for a generated loop."""

import logging
from typing import Optional

from engine.types import AudioBuffer

from .output import AudioOutput, BufferSource, GainParam

log = logging.getLogger("channel")


class PlaybackChannel:
    """A playing AudioBuffer with its own gain control.

    Use PlaybackChannel.start() to build and begin playback in one step.
    stop() is terminal and idempotent: stopping twice is not an error.
    """

    def __init__(self, output: AudioOutput, buffer: AudioBuffer, loop: bool = True, gain: float = 1.0):
        if buffer.sample_rate != output.sample_rate:
            raise ValueError(
                f"Buffer rate {buffer.sample_rate} Hz does not match output rate {output.sample_rate} Hz"
            )
        self.output = output
        self.buffer = buffer
        self.loop = loop
        self.source = BufferSource(buffer, loop=loop)
        self.gain_param: GainParam = output.create_gain(gain)
        self._stopped = False

    @classmethod
    def start(cls, output: AudioOutput, buffer: AudioBuffer, loop: bool = True, gain: float = 1.0) -> "PlaybackChannel":
        """Wire source -> gain -> output and begin playing immediately."""
        channel = cls(output, buffer, loop=loop, gain=gain)
        channel.source.start()
        output.connect(channel.source, channel.gain_param)
        log.debug(
            "Channel started: %d frames @ %d Hz, loop=%s, gain=%.2f",
            buffer.frames, buffer.sample_rate, loop, gain,
        )
        return channel

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def gain(self) -> float:
        """Gain at the output's present time."""
        return self.gain_param.value_at(self.output.current_time)

    def set_gain(self, level: Optional[float] = None, ramp_to: Optional[float] = None, over: float = 0.0):
        """Pin the gain now, then optionally ramp linearly.

        Args:
            level: Value to hold from now on; None keeps the present value.
            ramp_to: Target of a linear ramp starting now.
            over: Ramp length in seconds of output time.
        """
        now = self.output.current_time
        # One swap: the audio thread sees the old schedule or the new one
        self.gain_param.hold_then_ramp(now, level, target=ramp_to, end=now + max(0.0, over))

    def stop(self):
        """Stop playback and release the graph. No-op if already stopped."""
        if self._stopped:
            return
        self._stopped = True
        self.source.stop()
        self.output.disconnect(self.source)
        log.debug("Channel stopped (%d frames)", self.buffer.frames)
