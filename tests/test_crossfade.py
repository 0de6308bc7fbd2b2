"""Tests for CrossfadeCoordinator: state machine, gain curves, teardown timers."""

import asyncio

import numpy as np
import pytest

from conftest import make_buffer_samples, make_coordinator
from engine.errors import PlaybackError
from engine.types import AudioBuffer
from gateway.audio.crossfade import CrossfadeCoordinator, PlaybackState

RATE = 1000


def _buffer(value=0.5, rate=RATE):
    return AudioBuffer(samples=make_buffer_samples(300, value), sample_rate=rate)


class TestStateMachine:
    def test_idle_to_single_active(self):
        coordinator = make_coordinator()

        async def run():
            channel = coordinator.start(_buffer())
            return channel

        channel = asyncio.run(run())
        assert coordinator.state is PlaybackState.SINGLE_ACTIVE
        assert coordinator.current is channel
        assert channel.loop
        assert channel.gain == 1.0
        assert coordinator.outgoing == ()

    def test_second_start_transitions_and_promotes_immediately(self):
        coordinator = make_coordinator(duration=0.2)

        async def run():
            first = coordinator.start(_buffer())
            second = coordinator.start(_buffer(0.25))
            snapshot = (coordinator.state, coordinator.current, coordinator.outgoing)
            coordinator.stop_all()
            return first, second, snapshot

        first, second, (state, current, outgoing) = asyncio.run(run())
        assert state is PlaybackState.TRANSITIONING
        assert current is second
        assert outgoing == (first,)

    def test_teardown_returns_to_single_active(self):
        coordinator = make_coordinator(duration=0.05, margin=0.01)

        async def run():
            first = coordinator.start(_buffer())
            second = coordinator.start(_buffer(0.25))
            await asyncio.sleep(0.15)
            return first, second

        first, second = asyncio.run(run())
        assert first.stopped
        assert not second.stopped
        assert coordinator.state is PlaybackState.SINGLE_ACTIVE
        assert coordinator.output.voice_count == 1

    def test_outgoing_not_released_before_ramp_ends(self):
        coordinator = make_coordinator(duration=0.3, margin=0.05)

        async def run():
            first = coordinator.start(_buffer())
            coordinator.start(_buffer(0.25))
            await asyncio.sleep(0.1)
            early = first.stopped
            coordinator.stop_all()
            return early

        assert asyncio.run(run()) is False

    def test_stop_all(self):
        coordinator = make_coordinator(duration=0.5)

        async def run():
            first = coordinator.start(_buffer())
            second = coordinator.start(_buffer(0.25))
            tasks = [t.task for t in coordinator.transitions]
            coordinator.stop_all()
            await asyncio.sleep(0)
            return first, second, tasks

        first, second, tasks = asyncio.run(run())
        assert first.stopped and second.stopped
        assert all(t.cancelled() for t in tasks)
        assert coordinator.state is PlaybackState.IDLE
        assert coordinator.output.voice_count == 0

    def test_stop_all_and_close_are_safe_when_idle(self):
        coordinator = make_coordinator()
        coordinator.stop_all()
        coordinator.close()
        coordinator.close()
        assert coordinator.state is PlaybackState.IDLE

    def test_close_releases_device(self):
        outputs = []
        coordinator = make_coordinator(outputs=outputs)

        async def run():
            coordinator.start(_buffer())
            coordinator.close()

        asyncio.run(run())
        assert outputs[0].closed
        assert coordinator.output is None


class TestGainCurves:
    def test_inverse_linear_ramps(self):
        coordinator = make_coordinator(duration=0.2)

        async def run():
            old = coordinator.start(_buffer())
            output = coordinator.output
            output.render(37)  # crossfade starts mid-stream
            new = coordinator.start(_buffer(0.25))
            curve = [(old.gain, new.gain)]
            output.render(100)  # half way
            curve.append((old.gain, new.gain))
            output.render(100)  # end
            curve.append((old.gain, new.gain))
            coordinator.stop_all()
            return curve

        start, mid, end = asyncio.run(run())
        assert start == (1.0, 0.0)
        assert mid == (pytest.approx(0.5), pytest.approx(0.5))
        assert end == (pytest.approx(0.0, abs=1e-9), pytest.approx(1.0))

    def test_rendered_mix_is_continuous(self):
        coordinator = make_coordinator(duration=0.2)

        async def run():
            coordinator.start(_buffer(0.5))
            output = coordinator.output
            before = output.render(10)[:, 0]
            coordinator.start(_buffer(0.25))
            during = output.render(200)[:, 0]
            after = output.render(10)[:, 0]
            coordinator.stop_all()
            return before, during, after

        before, during, after = asyncio.run(run())
        assert before[-1] == pytest.approx(0.5)
        assert during[0] == pytest.approx(0.5)
        # Each step of a linear crossfade between 0.5 and 0.25 is tiny, so no click
        assert np.abs(np.diff(during)).max() < 0.01
        assert after[0] == pytest.approx(0.25)


class TestStackedTransitions:
    def test_each_transition_keeps_its_own_timer(self):
        coordinator = make_coordinator(duration=0.4, margin=0.02)

        async def run():
            a = coordinator.start(_buffer(0.1))
            b = coordinator.start(_buffer(0.2))
            await asyncio.sleep(0.2)
            c = coordinator.start(_buffer(0.3))
            assert len(coordinator.outgoing) == 2
            await asyncio.sleep(0.3)  # past a's deadline (0.42), before b's (0.62)
            mid = (a.stopped, b.stopped, c.stopped)
            await asyncio.sleep(0.25)
            end = (a.stopped, b.stopped, c.stopped)
            return c, mid, end

        c, mid, end = asyncio.run(run())
        assert mid == (True, False, False)
        assert end == (True, True, False)
        assert coordinator.current is c
        assert coordinator.state is PlaybackState.SINGLE_ACTIVE


class TestPlaybackFailures:
    def test_device_failure_leaves_state_untouched(self):
        def broken(rate):
            raise OSError("no default output device")

        coordinator = CrossfadeCoordinator(broken)
        with pytest.raises(PlaybackError, match="no default output device"):
            coordinator.start(_buffer())
        assert coordinator.state is PlaybackState.IDLE
        assert coordinator.output is None

    def test_rate_mismatch_keeps_current_playing(self):
        coordinator = make_coordinator()

        async def run():
            first = coordinator.start(_buffer())
            with pytest.raises(PlaybackError):
                coordinator.start(_buffer(rate=RATE * 2))
            return first

        first = asyncio.run(run())
        assert coordinator.current is first
        assert not first.stopped
        assert coordinator.state is PlaybackState.SINGLE_ACTIVE
