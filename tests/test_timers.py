import asyncio

from motion_guard.timers import TimerService, alarm_key, recording_key, reset_key


class TestKeys:
    def test_keys_are_unique_per_purpose(self):
        assert recording_key("CAM1") == "recording_CAM1"
        assert reset_key("CAM1") == "reset_CAM1"
        assert alarm_key("CAM1") == "alarm_CAM1"


class TestTimerService:
    def test_fires_callback_once_after_delay(self):
        """A started timer fires exactly once and is then no longer active."""
        fired = []

        async def scenario():
            timers = TimerService()
            timers.start("t", 0.02, lambda: fired.append("t"))
            assert timers.is_active("t")
            await asyncio.sleep(0.08)
            assert not timers.is_active("t")

        asyncio.run(scenario())
        assert fired == ["t"]

    def test_restarting_a_key_cancels_the_previous_timer(self):
        """Starting under an in-use key must never produce two callbacks."""
        fired = []

        async def scenario():
            timers = TimerService()
            timers.start("t", 0.02, lambda: fired.append("first"))
            timers.start("t", 0.04, lambda: fired.append("second"))
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert fired == ["second"]

    def test_cancel_prevents_callback(self):
        fired = []

        async def scenario():
            timers = TimerService()
            timers.start("t", 0.02, lambda: fired.append("t"))
            assert timers.cancel("t") is True
            assert timers.cancel("t") is False
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert fired == []

    def test_remaining_reports_seconds_or_minus_one(self):
        async def scenario():
            timers = TimerService()
            assert timers.remaining("missing") == -1
            timers.start("t", 10, lambda: None)
            remaining = timers.remaining("t")
            timers.cancel_all()
            return remaining

        remaining = asyncio.run(scenario())
        assert 9.0 < remaining <= 10.0

    def test_cancel_all_clears_every_timer(self):
        fired = []

        async def scenario():
            timers = TimerService()
            timers.start("a", 0.01, lambda: fired.append("a"))
            timers.start("b", 0.01, lambda: fired.append("b"))
            timers.cancel_all()
            assert timers.active_keys() == []
            await asyncio.sleep(0.04)

        asyncio.run(scenario())
        assert fired == []

    def test_coroutine_callbacks_run_as_tasks(self):
        """Coroutine callbacks are scheduled and can be awaited via drain()."""
        fired = []

        async def callback():
            await asyncio.sleep(0.01)
            fired.append("done")

        async def scenario():
            timers = TimerService()
            timers.start("t", 0.01, callback)
            await asyncio.sleep(0.02)
            await timers.drain()

        asyncio.run(scenario())
        assert fired == ["done"]

    def test_failing_callback_does_not_break_other_timers(self):
        fired = []

        def boom():
            raise RuntimeError("boom")

        async def scenario():
            timers = TimerService()
            timers.start("bad", 0.01, boom)
            timers.start("good", 0.02, lambda: fired.append("good"))
            await asyncio.sleep(0.06)

        asyncio.run(scenario())
        assert fired == ["good"]
