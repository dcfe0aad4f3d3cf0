import asyncio
import base64
import time
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from pillbox.config import settings
from pillbox.datamodel import FiringEvent, Reminder, ReminderDraft, RepeatType
from pillbox.events import Bus
from pillbox.relay.app import create_app
from pillbox.relay.schemas import RuntimeControl
from pillbox.relay.sms import MISSING_FIELDS_ERROR, NOT_CONFIGURED_ERROR
from pillbox.ui.popup import ReminderPopup
from pillbox.ui.toast import ToastSink


def _reminder(**overrides):
    data = dict(
        id="r1", name="Aspirin", dosage="100mg", times=["09:00"], repeat=RepeatType.DAILY,
        next_at=1_000, paused=False, created_at=0,
    )
    data.update(overrides)
    return Reminder(**data)


@pytest.fixture
def control():
    return RuntimeControl(shutdown_event=asyncio.Event(), started_at=time.time())


@pytest.fixture
def scheduler():
    s = MagicMock()
    s.store = MagicMock()
    s.store.all.return_value = [_reminder()]
    s.store.upcoming.return_value = [_reminder()]
    s.store.get.return_value = _reminder()
    s.get_status.return_value = {"running": True, "armed_timers": 1, "reminders": 1}
    for name in ("add", "remove", "update", "toggle_pause", "snooze", "mark_taken", "add_note"):
        setattr(s, name, AsyncMock(return_value=_reminder()))
    return s


@pytest.fixture
def popup(scheduler):
    return ReminderPopup(scheduler, bus=Bus(), auto_hide_seconds=30, snooze_minutes=10)


@pytest.fixture
def toasts():
    return ToastSink(Bus())


@pytest.fixture
def twilio_requests():
    return []


@pytest.fixture
def twilio_response():
    return {"status": 201, "json": {"sid": "SM900"}}


@pytest.fixture
def client(control, scheduler, popup, toasts, twilio_requests, twilio_response, monkeypatch):
    monkeypatch.setattr(settings, "PILLBOX_API_TOKEN", "")

    def handler(request):
        twilio_requests.append(request)
        return httpx.Response(twilio_response["status"], json=twilio_response["json"])

    app = create_app(control, scheduler=scheduler, popup=popup, toasts=toasts,
                     transport=httpx.MockTransport(handler))
    return TestClient(app)


@pytest.fixture
def twilio_configured(monkeypatch):
    monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "tok")
    monkeypatch.setattr(settings, "TWILIO_FROM_NUMBER", "+15550000")


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.text == "ok"

    def test_health_payload(self, client):
        data = client.get("/api/v1/health").json()
        assert data["status"] == "ok"
        assert data["scheduler_running"] is True
        assert data["shutdown_requested"] is False


class TestPing:
    def test_default(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PING_MESSAGE", "ping")
        assert client.get("/api/ping").json() == {"message": "ping"}

    def test_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PING_MESSAGE", "pong")
        assert client.get("/api/ping").json() == {"message": "pong"}

    def test_empty_falls_back(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PING_MESSAGE", "")
        assert client.get("/api/ping").json() == {"message": "ping"}


class TestSmsRelay:
    @pytest.mark.parametrize("body", [{}, {"to": "+15550100"}, {"message": "hi"}, {"to": "", "message": "hi"}])
    def test_missing_fields(self, client, body, twilio_configured):
        resp = client.post("/api/sms", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": MISSING_FIELDS_ERROR}

    def test_not_configured(self, client, monkeypatch, twilio_requests):
        monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", "")
        resp = client.post("/api/sms", json={"to": "+15550100", "message": "hi"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": NOT_CONFIGURED_ERROR}
        assert twilio_requests == []

    def test_forwards_to_twilio(self, client, twilio_configured, twilio_requests):
        resp = client.post("/api/sms", json={"to": "+15550100", "message": "Time to take Aspirin"})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "id": "SM900"}
        [request] = twilio_requests
        assert str(request.url) == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"AC123:tok").decode()
        form = parse_qs(request.content.decode())
        assert form == {"To": ["+15550100"], "From": ["+15550000"], "Body": ["Time to take Aspirin"]}

    def test_gateway_error_status_passthrough(self, client, twilio_configured, twilio_response):
        twilio_response.update(status=400, json={"message": "Invalid 'To' Phone Number"})
        resp = client.post("/api/sms", json={"to": "nope", "message": "hi"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid 'To' Phone Number"}

    def test_gateway_error_without_message(self, client, twilio_configured, twilio_response):
        twilio_response.update(status=401, json={})
        resp = client.post("/api/sms", json={"to": "+15550100", "message": "hi"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Failed to send"

    def test_transport_exception_is_500(self, control, twilio_configured):
        def handler(request):
            raise httpx.ConnectError("dns failure", request=request)

        app = create_app(control, transport=httpx.MockTransport(handler))
        resp = TestClient(app).post("/api/sms", json={"to": "+15550100", "message": "hi"})
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "dns failure"}


class TestReminders:
    def test_list(self, client):
        data = client.get("/api/v1/reminders").json()
        assert data["total"] == 1
        assert data["items"][0]["nextAt"] == 1_000

    def test_upcoming(self, client):
        assert client.get("/api/v1/reminders/upcoming").json()["items"][0]["id"] == "r1"

    def test_create(self, client, scheduler):
        resp = client.post(
            "/api/v1/reminders",
            json={"name": "Aspirin", "dosage": "100mg", "times": ["9:00"], "repeat": "once",
                  "patientName": "Ana", "sendSms": True, "phone": "+15550100"},
        )
        assert resp.status_code == 201
        draft = scheduler.add.await_args.args[0]
        assert isinstance(draft, ReminderDraft)
        assert (draft.name, draft.times, draft.repeat) == ("Aspirin", ["9:00"], RepeatType.ONCE)
        assert (draft.patient_name, draft.send_sms, draft.phone) == ("Ana", True, "+15550100")

    def test_create_validation_error_is_400(self, client, scheduler):
        scheduler.add.side_effect = ValueError("提醒至少需要一个时间点")
        resp = client.post("/api/v1/reminders", json={"name": "Aspirin", "times": []})
        assert resp.status_code == 400

    def test_get_unknown_is_404(self, client, scheduler):
        scheduler.store.get.return_value = None
        assert client.get("/api/v1/reminders/missing").status_code == 404

    def test_patch_maps_field_names(self, client, scheduler):
        resp = client.patch("/api/v1/reminders/r1", json={"nextAt": 5, "patientAge": 70, "name": None})
        assert resp.status_code == 200
        scheduler.update.assert_awaited_once_with("r1", next_at=5, patient_age=70)

    def test_delete(self, client, scheduler):
        assert client.delete("/api/v1/reminders/r1").json() == {"ok": True, "id": "r1"}
        scheduler.remove.return_value = False
        assert client.delete("/api/v1/reminders/r1").status_code == 404

    def test_snooze(self, client, scheduler):
        assert client.post("/api/v1/reminders/r1/snooze", json={"minutes": 15}).status_code == 200
        scheduler.snooze.assert_awaited_once_with("r1", 15)

    def test_snooze_rejects_zero(self, client, scheduler):
        assert client.post("/api/v1/reminders/r1/snooze", json={"minutes": 0}).status_code == 422
        scheduler.snooze.assert_not_awaited()

    def test_taken_reports_removal(self, client, scheduler):
        scheduler.store.get.return_value = None
        data = client.post("/api/v1/reminders/r1/taken").json()
        assert data["removed"] is True
        assert data["reminder"]["id"] == "r1"

    def test_unknown_action_target_is_404(self, client, scheduler):
        scheduler.toggle_pause.return_value = None
        assert client.post("/api/v1/reminders/missing/pause").status_code == 404

    def test_note(self, client, scheduler):
        client.post("/api/v1/reminders/r1/note", json={"text": "with food"})
        scheduler.add_note.assert_awaited_once_with("r1", "with food")


class TestPopupRoutes:
    @pytest.fixture
    def shown(self, popup):
        popup.payload = FiringEvent.from_reminder(_reminder(phone=None))
        popup.visible = True
        return popup

    def test_empty(self, client):
        assert client.get("/api/v1/popup").json() == {"popup": None}

    def test_action_without_popup_is_409(self, client):
        assert client.post("/api/v1/popup/taken").status_code == 409

    def test_snooze_default(self, client, shown, scheduler):
        data = client.post("/api/v1/popup/snooze").json()
        scheduler.snooze.assert_awaited_once_with("r1", 10)
        assert data["popup"]["visible"] is False

    def test_snooze_invalid_minutes(self, client, shown, scheduler):
        assert client.post("/api/v1/popup/snooze", json={"minutes": 0}).status_code == 400
        scheduler.snooze.assert_not_awaited()

    def test_pause_keeps_visible(self, client, shown, scheduler):
        data = client.post("/api/v1/popup/pause").json()
        scheduler.toggle_pause.assert_awaited_once_with("r1")
        assert data["popup"]["visible"] is True

    def test_close(self, client, shown):
        assert client.post("/api/v1/popup/close").json() == {"popup": None}

    def test_note(self, client, shown, scheduler):
        client.post("/api/v1/popup/note", json={"text": "dizzy"})
        scheduler.add_note.assert_awaited_once_with("r1", "dizzy")

    def test_sms_without_phone(self, client, shown):
        assert client.post("/api/v1/popup/sms").json()["sms"] is None

    def test_unknown_action(self, client, shown):
        assert client.post("/api/v1/popup/explode").status_code == 404


class TestAuth:
    def test_token_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PILLBOX_API_TOKEN", "secret")
        assert client.get("/api/v1/reminders").status_code == 401
        assert client.get("/api/v1/reminders", headers={"Authorization": "Bearer secret"}).status_code == 200
        assert client.get("/api/v1/reminders", headers={"X-Pillbox-Token": "secret"}).status_code == 200
        assert client.get("/api/v1/reminders", headers={"X-Pillbox-Token": "wrong"}).status_code == 401

    def test_relay_routes_stay_open(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PILLBOX_API_TOKEN", "secret")
        assert client.get("/api/ping").status_code == 200
        assert client.get("/healthz").status_code == 200


class TestOps:
    def test_metrics(self, client):
        data = client.get("/api/v1/metrics").json()
        assert data["components"]["scheduler"]["armed_timers"] == 1
        assert "reminder_fired_count" in data["runtime"]

    def test_toasts(self, client, toasts):
        from pillbox.datamodel import Toast

        toasts.show(Toast(title="first"))
        toasts.show(Toast(title="second"))
        items = client.get("/api/v1/toasts").json()["items"]
        assert [t["title"] for t in items] == ["second", "first"]

    def test_logs_filtering(self, client, monkeypatch, tmp_path):
        log_file = tmp_path / "pillbox.log"
        log_file.write_text(
            "2026-10-18 08:00:00.000 | INFO     | pillbox.core.scheduler:start:1 - 调度器已启动\n"
            "2026-10-18 08:00:01.000 | WARNING  | pillbox.core.scheduler:mark_missed:2 - 提醒漏服: r1\n"
            "2026-10-18 08:00:02.000 | DEBUG    | pillbox.events:on:3 - 注册事件处理器\n",
            encoding="utf-8",
        )
        monkeypatch.setattr(settings, "PILLBOX_LOG_FILE", str(log_file))

        assert len(client.get("/api/v1/logs").json()["lines"]) == 3
        warnings = client.get("/api/v1/logs", params={"level": "warning"}).json()["lines"]
        assert len(warnings) == 1 and "r1" in warnings[0]
        assert len(client.get("/api/v1/logs", params={"q": "调度器"}).json()["lines"]) == 1
        by_reminder = client.get("/api/v1/logs", params={"reminder": "r1"}).json()
        assert by_reminder["reminder"] == "r1"
        assert by_reminder["lines"] == warnings
        assert client.get("/api/v1/logs", params={"stream": "error"}).json()["lines"] == []
        assert client.get("/api/v1/logs", params={"stream": "audit"}).status_code == 400

    def test_shutdown(self, client, control):
        resp = client.post("/api/v1/admin/shutdown", json={"reason": "test"})
        assert resp.json() == {"ok": True, "action": "shutdown", "reason": "test"}
        assert control.shutdown_event.is_set()

    def test_without_scheduler_is_503(self, control):
        app = create_app(control)
        assert TestClient(app).get("/api/v1/reminders").status_code == 503
