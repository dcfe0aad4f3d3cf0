from unittest.mock import MagicMock

import pytest

from pillbox.datamodel import NotificationPermission, Reminder, RepeatType, ToastLevel
from pillbox.events import E
from pillbox.metrics import runtime_metrics
from pillbox.notify import sound
from pillbox.notify.emitter import NotificationEmitter, reminder_body, reminder_title


def _reminder(dosage="100mg"):
    return Reminder(
        id="r1", name="Aspirin", dosage=dosage, times=["09:00"], repeat=RepeatType.DAILY,
        next_at=None, paused=False, created_at=0,
    )


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def play_sound():
    return MagicMock(return_value=True)


class TestText:
    def test_title_and_body(self):
        assert reminder_title(_reminder()) == "Time to take Aspirin"
        assert reminder_body(_reminder()) == "Dosage: 100mg"
        assert reminder_body(_reminder(dosage="")) is None


class TestPermission:
    def test_granted_when_enabled(self, bus, notifier):
        emitter = NotificationEmitter(bus, system_enabled=True, sound_enabled=False, notifier=notifier)
        assert emitter.permission == NotificationPermission.DEFAULT
        assert emitter.request_permission() == NotificationPermission.GRANTED

    def test_denied_when_disabled(self, bus, notifier):
        emitter = NotificationEmitter(bus, system_enabled=False, sound_enabled=False, notifier=notifier)
        assert emitter.request_permission() == NotificationPermission.DENIED

    def test_requested_once(self, bus, notifier):
        emitter = NotificationEmitter(bus, system_enabled=True, sound_enabled=False, notifier=notifier)
        emitter.request_permission()
        emitter.system_enabled = False
        assert emitter.request_permission() == NotificationPermission.GRANTED


class TestNotify:
    async def test_system_notification_when_granted(self, bus, recorded, notifier, play_sound):
        emitter = NotificationEmitter(bus, system_enabled=True, sound_enabled=True,
                                      notifier=notifier, play_sound=play_sound)
        emitter.request_permission()

        assert await emitter.notify_reminder(_reminder()) is True

        notifier.notify.assert_called_once()
        kwargs = notifier.notify.call_args.kwargs
        assert kwargs["title"] == "Time to take Aspirin"
        assert kwargs["message"] == "Dosage: 100mg"
        assert recorded[E.UI_TOAST] == []
        play_sound.assert_called_once()

    async def test_falls_back_to_toast_when_denied(self, bus, recorded, notifier, play_sound):
        emitter = NotificationEmitter(bus, system_enabled=False, sound_enabled=True,
                                      notifier=notifier, play_sound=play_sound)
        emitter.request_permission()
        before = runtime_metrics.notification_fallback_count

        assert await emitter.notify("Time to take Aspirin", "Dosage: 100mg") is False

        notifier.notify.assert_not_called()
        [toast] = recorded[E.UI_TOAST]
        assert (toast.title, toast.body, toast.level) == ("Time to take Aspirin", "Dosage: 100mg", ToastLevel.INFO)
        assert runtime_metrics.notification_fallback_count == before + 1
        play_sound.assert_called_once()

    async def test_falls_back_to_toast_when_system_fails(self, bus, recorded, notifier, play_sound):
        notifier.notify.side_effect = NotImplementedError("no backend")
        emitter = NotificationEmitter(bus, system_enabled=True, sound_enabled=False,
                                      notifier=notifier, play_sound=play_sound)
        emitter.request_permission()

        assert await emitter.notify("Title") is False
        assert [t.title for t in recorded[E.UI_TOAST]] == ["Title"]
        play_sound.assert_not_called()

    async def test_sound_errors_are_swallowed(self, bus, recorded, notifier):
        emitter = NotificationEmitter(bus, system_enabled=False, sound_enabled=True, notifier=notifier,
                                      play_sound=MagicMock(side_effect=RuntimeError("no audio device")))
        assert await emitter.notify("Title") is False
        assert len(recorded[E.UI_TOAST]) == 1


class TestTone:
    def test_envelope_shape(self):
        np = pytest.importorskip("numpy")
        n = int(sound.DURATION_S * sound.SAMPLE_RATE)
        gain = sound.build_envelope(n)
        peak_index = int(sound.ATTACK_S * sound.SAMPLE_RATE)
        assert gain[0] == pytest.approx(sound.FLOOR_GAIN)
        assert gain[peak_index] == pytest.approx(sound.PEAK_GAIN, rel=0.05)
        assert gain[-1] == pytest.approx(sound.FLOOR_GAIN)
        assert np.argmax(gain) == pytest.approx(peak_index, abs=2)

    def test_tone_is_stereo_int16(self):
        np = pytest.importorskip("numpy")
        tone = sound.build_tone()
        assert tone.dtype == np.int16
        assert tone.shape == (int(sound.DURATION_S * sound.SAMPLE_RATE), 2)
        assert np.abs(tone).max() <= int(sound.PEAK_GAIN * 32767) + 1

    def test_beep_without_audio_returns_false(self, monkeypatch):
        def broken():
            raise RuntimeError("mixer not available")

        monkeypatch.setattr(sound, "_get_sound", broken)
        assert sound.beep() is False
