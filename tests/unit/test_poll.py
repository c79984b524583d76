"""Tests for poll_until_ready."""
import pytest

from claw_pilot.exceptions import PollTimeoutError
from claw_pilot.poll import poll_until_ready


def _sequence(*answers):
    calls = []
    it = iter(answers)

    async def probe():
        calls.append(1)
        answer = next(it, answers[-1])
        if isinstance(answer, Exception):
            raise answer
        return answer

    return probe, calls


class TestPollUntilReady:
    async def test_ready_immediately(self):
        probe, calls = _sequence(True)
        await poll_until_ready(probe, timeout=1, interval=0.01)
        assert len(calls) == 1

    async def test_ready_after_retries(self):
        probe, calls = _sequence(False, False, True)
        await poll_until_ready(probe, timeout=1, interval=0.01)
        assert len(calls) == 3

    async def test_exceptions_count_as_not_ready(self):
        probe, calls = _sequence(ConnectionError("refused"), True)
        await poll_until_ready(probe, timeout=1, interval=0.01)
        assert len(calls) == 2

    async def test_timeout(self):
        probe, calls = _sequence(False)
        with pytest.raises(PollTimeoutError, match="gateway x not ready"):
            await poll_until_ready(probe, timeout=0.05, interval=0.01, label="gateway x")
        assert len(calls) >= 2

    async def test_waits_fixed_interval(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        probe, _ = _sequence(False, False, False, True)
        await poll_until_ready(probe, timeout=10, interval=0.5, sleep=fake_sleep)
        assert sleeps == [0.5, 0.5, 0.5]
