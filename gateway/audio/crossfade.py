"""Crossfade coordinator — hands playback from the old loop to the new one.

  IDLE --start--> SINGLE_ACTIVE --start--> TRANSITIONING
                        ^                        |
                        +---- last teardown -----+

On start() while something plays, the new channel comes in at gain 0 and
ramps to 1 while the current one ramps to 0 over the crossfade duration.
The new channel is current immediately. The old one becomes outgoing and
is released by its own teardown task after the ramp (plus a margin); a
later transition never cancels an earlier one's teardown.

start() and stop_all() never suspend, so the current/outgoing slots can't
be observed half-updated by a generation completing concurrently.
"""

import asyncio
import enum
import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from engine.errors import PlaybackError
from engine.types import AudioBuffer

from .channel import PlaybackChannel
from .output import AudioOutput

log = logging.getLogger("crossfade")

CROSSFADE_DURATION = 2.0  # seconds
TEARDOWN_MARGIN = 0.1  # seconds after the ramp before the old channel is released


class PlaybackState(enum.Enum):
    IDLE = "idle"
    SINGLE_ACTIVE = "single_active"
    TRANSITIONING = "transitioning"


@dataclass
class Transition:
    """One crossfade: the channel fading out and the task that will release it."""
    id: int
    channel: PlaybackChannel
    started_at: float
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class CrossfadeCoordinator:
    """Owns the current and outgoing playback channels for one output device.

    Args:
        output_factory: Called with a sample rate on first start; returns an
            open AudioOutput.
        duration: Crossfade length in seconds.
        margin: Extra wait after the ramp before an outgoing channel is released.
        loop: Whether new channels loop their buffer.
    """

    def __init__(
        self,
        output_factory: Callable[[int], AudioOutput],
        duration: float = CROSSFADE_DURATION,
        margin: float = TEARDOWN_MARGIN,
        loop: bool = True,
    ):
        self._output_factory = output_factory
        self.duration = duration
        self.margin = margin
        self.loop = loop
        self._output: Optional[AudioOutput] = None
        self._current: Optional[PlaybackChannel] = None
        self._outgoing: Dict[int, Transition] = {}
        self._ids = itertools.count(1)

    @property
    def output(self) -> Optional[AudioOutput]:
        return self._output

    @property
    def current(self) -> Optional[PlaybackChannel]:
        return self._current

    @property
    def outgoing(self) -> Tuple[PlaybackChannel, ...]:
        return tuple(t.channel for t in self._outgoing.values())

    @property
    def transitions(self) -> Tuple[Transition, ...]:
        return tuple(self._outgoing.values())

    @property
    def state(self) -> PlaybackState:
        if self._current is None:
            return PlaybackState.IDLE
        if self._outgoing:
            return PlaybackState.TRANSITIONING
        return PlaybackState.SINGLE_ACTIVE

    def _ensure_output(self, sample_rate: int) -> AudioOutput:
        if self._output is None:
            try:
                self._output = self._output_factory(sample_rate)
            except PlaybackError:
                raise
            except Exception as e:
                raise PlaybackError(f"Audio device unavailable: {e}") from e
        elif self._output.sample_rate != sample_rate:
            raise PlaybackError(
                f"Buffer rate {sample_rate} Hz does not match output rate {self._output.sample_rate} Hz"
            )
        return self._output

    def start(self, buffer: AudioBuffer) -> PlaybackChannel:
        """Start looping buffer, crossfading from whatever is current.

        Raises:
            PlaybackError: the device could not be opened or the rate differs.
                Playback state is unchanged in that case.
        """
        output = self._ensure_output(buffer.sample_rate)
        previous = self._current

        if previous is None:
            channel = PlaybackChannel.start(output, buffer, loop=self.loop, gain=1.0)
            self._current = channel
            log.info("Playback started: %.2fs loop", buffer.duration)
            return channel

        channel = PlaybackChannel.start(output, buffer, loop=self.loop, gain=0.0)
        channel.set_gain(0.0, ramp_to=1.0, over=self.duration)
        previous.set_gain(None, ramp_to=0.0, over=self.duration)

        transition = Transition(id=next(self._ids), channel=previous, started_at=output.current_time)
        transition.task = asyncio.ensure_future(self._release_after(transition))
        self._outgoing[transition.id] = transition
        self._current = channel
        log.info(
            "Crossfade #%d started: %.1fs, %d outgoing",
            transition.id, self.duration, len(self._outgoing),
        )
        return channel

    async def _release_after(self, transition: Transition):
        """Release one outgoing channel once its fade has finished."""
        try:
            await asyncio.sleep(self.duration + self.margin)
        finally:
            transition.channel.stop()
            self._outgoing.pop(transition.id, None)
            log.debug("Crossfade #%d complete, outgoing channel released", transition.id)

    def stop_all(self):
        """Stop current and outgoing channels immediately. Safe when idle."""
        for transition in list(self._outgoing.values()):
            if transition.task is not None:
                transition.task.cancel()
            transition.channel.stop()
        self._outgoing.clear()

        if self._current is not None:
            self._current.stop()
            self._current = None
            log.info("Playback stopped")

    def close(self):
        """Stop everything and release the audio device. Safe to call repeatedly."""
        self.stop_all()
        if self._output is not None:
            self._output.close()
            self._output = None
