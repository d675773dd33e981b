import asyncio
from unittest.mock import MagicMock

from motion_guard.alarm import AlarmMode, AlarmSequencer
from motion_guard.config import AlarmConfig
from motion_guard.events import EventChannel
from motion_guard.timers import TimerService


def _make_alarm(
    duration: float = 0.05,
    cooldown: float = 0.05,
    enabled: bool = True,
    hardware=None,
) -> tuple[AlarmSequencer, MagicMock, EventChannel]:
    hardware = hardware if hardware is not None else MagicMock()
    channel = EventChannel()
    alarm = AlarmSequencer(
        AlarmConfig(duration_seconds=duration, volume_level=80, enabled=enabled),
        TimerService(),
        channel,
        hardware=hardware,
        cooldown_seconds=cooldown,
    )
    return alarm, hardware, channel


class TestTrigger:
    def test_trigger_activates_siren_and_enters_triggered(self):
        async def scenario():
            alarm, hardware, channel = _make_alarm(duration=10)
            assert alarm.trigger("CAM1") is True
            assert alarm.mode is AlarmMode.TRIGGERED
            hardware.activate.assert_called_once_with(80)
            assert [e.camera_id for e in channel.named("alarmTriggered")] == ["CAM1"]
            alarm.stop()

        asyncio.run(scenario())

    def test_retrigger_of_active_camera_is_rejected(self):
        async def scenario():
            alarm, hardware, _ = _make_alarm(duration=10)
            assert alarm.trigger("CAM1") is True
            assert alarm.trigger("CAM1") is False
            assert hardware.activate.call_count == 1
            alarm.stop()

        asyncio.run(scenario())

    def test_disarmed_system_does_not_trigger(self):
        async def scenario():
            alarm, hardware, _ = _make_alarm()
            alarm.disarm()
            assert alarm.trigger("CAM1") is False
            hardware.activate.assert_not_called()

        asyncio.run(scenario())

    def test_disabled_config_starts_disarmed(self):
        async def scenario():
            alarm, _, _ = _make_alarm(enabled=False)
            assert alarm.mode is AlarmMode.DISARMED
            assert alarm.trigger("CAM1") is False

        asyncio.run(scenario())


class TestTimeoutAndCooldown:
    def test_timeout_enters_cooldown_then_rearms(self):
        """TRIGGERED -> COOLDOWN after the duration, then ARMED after the cooldown."""

        async def scenario():
            alarm, hardware, channel = _make_alarm(duration=0.03, cooldown=0.1)
            alarm.trigger("CAM1")
            await asyncio.sleep(0.06)
            assert alarm.mode is AlarmMode.COOLDOWN
            hardware.deactivate.assert_called_once()
            assert alarm.trigger("CAM2") is False
            await asyncio.sleep(0.12)
            assert alarm.mode is AlarmMode.ARMED
            assert [e.camera_id for e in channel.named("alarmStopped")] == ["CAM1"]

        asyncio.run(scenario())

    def test_siren_stays_on_until_last_camera_clears(self):
        async def scenario():
            alarm, hardware, _ = _make_alarm(duration=0.1, cooldown=0.1)
            alarm.trigger("CAM1")
            await asyncio.sleep(0.05)
            alarm.trigger("CAM2")
            await asyncio.sleep(0.07)
            # CAM1 timed out, CAM2 still active
            assert alarm.mode is AlarmMode.TRIGGERED
            assert alarm.active_cameras() == ["CAM2"]
            hardware.deactivate.assert_not_called()
            await asyncio.sleep(0.08)
            assert alarm.mode is AlarmMode.COOLDOWN
            hardware.deactivate.assert_called_once()
            alarm.stop()

        asyncio.run(scenario())


class TestManualOverride:
    def test_stop_skips_cooldown(self):
        """A manual stop mid-TRIGGERED goes straight to ARMED and silences once."""

        async def scenario():
            alarm, hardware, channel = _make_alarm(duration=10)
            alarm.trigger("CAM1")
            alarm.stop()
            assert alarm.mode is AlarmMode.ARMED
            hardware.deactivate.assert_called_once()
            assert alarm.active_cameras() == []
            assert channel.named("alarmStopped")[-1].camera_id is None
            # The cancelled duration timer never fires
            await asyncio.sleep(0.02)
            assert alarm.trigger("CAM1") is True
            alarm.stop()

        asyncio.run(scenario())

    def test_disarm_mid_trigger_deactivates_exactly_once(self):
        async def scenario():
            alarm, hardware, channel = _make_alarm(duration=10)
            alarm.trigger("CAM1")
            alarm.disarm()
            assert alarm.mode is AlarmMode.DISARMED
            hardware.deactivate.assert_called_once()
            assert len(channel.named("alarmDisarmed")) == 1

        asyncio.run(scenario())

    def test_disarm_during_cooldown_is_not_undone_by_cooldown_timer(self):
        async def scenario():
            alarm, _, _ = _make_alarm(duration=0.01, cooldown=0.1)
            alarm.trigger("CAM1")
            await asyncio.sleep(0.02)
            assert alarm.mode is AlarmMode.COOLDOWN
            alarm.disarm()
            await asyncio.sleep(0.15)
            assert alarm.mode is AlarmMode.DISARMED

        asyncio.run(scenario())

    def test_stopping_one_camera_keeps_others_triggered(self):
        async def scenario():
            alarm, hardware, _ = _make_alarm(duration=10)
            alarm.trigger("CAM1")
            alarm.trigger("CAM2")
            alarm.stop("CAM1")
            assert alarm.mode is AlarmMode.TRIGGERED
            hardware.deactivate.assert_not_called()
            alarm.stop("CAM2")
            assert alarm.mode is AlarmMode.ARMED
            hardware.deactivate.assert_called_once()

        asyncio.run(scenario())

    def test_toggle_and_arm(self):
        async def scenario():
            alarm, _, channel = _make_alarm()
            assert alarm.toggle() is AlarmMode.DISARMED
            assert alarm.toggle() is AlarmMode.ARMED
            assert len(channel.named("alarmArmed")) == 1

        asyncio.run(scenario())


class TestHardwareFaults:
    def test_activate_failure_is_logged_not_raised(self):
        """The state machine proceeds as if the siren had switched on."""

        async def scenario():
            hardware = MagicMock()
            hardware.activate.side_effect = OSError("gpio busy")
            hardware.deactivate.side_effect = OSError("gpio busy")
            alarm, _, _ = _make_alarm(duration=10, hardware=hardware)
            assert alarm.trigger("CAM1") is True
            assert alarm.mode is AlarmMode.TRIGGERED
            alarm.stop()
            assert alarm.mode is AlarmMode.ARMED

        asyncio.run(scenario())

    def test_simulated_siren_is_default(self, caplog):
        async def scenario():
            channel = EventChannel()
            alarm = AlarmSequencer(AlarmConfig(duration_seconds=10), TimerService(), channel)
            with caplog.at_level("INFO"):
                alarm.trigger("CAM1")
                alarm.stop()

        asyncio.run(scenario())
        assert "siren active" in caplog.text


class TestConfigUpdates:
    def test_update_config_clamps_volume_and_toggles_enabled(self):
        async def scenario():
            alarm, hardware, _ = _make_alarm(duration=10)
            result = alarm.update_config(volume_level=150, duration_seconds=5)
            assert result["volume_level"] == 100
            assert result["duration_seconds"] == 5

            alarm.update_config(enabled=False)
            assert alarm.mode is AlarmMode.DISARMED
            alarm.update_config(enabled=True)
            assert alarm.mode is AlarmMode.ARMED

            alarm.trigger("CAM1")
            hardware.activate.assert_called_once_with(100)
            state = alarm.get_state()
            assert state["state"] == "TRIGGERED"
            assert state["active_alarms"][0]["camera_id"] == "CAM1"
            alarm.stop()

        asyncio.run(scenario())
