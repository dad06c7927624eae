"""
Tests for the Flask routes. Token verification and services are patched.
"""

import asyncio
import io
import threading
import time
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import app as app_module
import config
from models import Appointment, MedicalExtraction
from notifications import NotificationCenter
from runtime import BackgroundLoop

AUTH = {"Authorization": "Bearer test-token"}


@pytest.fixture
def services(presence):
    loop = BackgroundLoop()
    svc = SimpleNamespace(
        loop=loop,
        appointments=MagicMock(),
        presence=presence,
        notifications=NotificationCenter(),
        tts=MagicMock(speak=AsyncMock(return_value="/static/tts/temp_tts_abc.mp3")),
        openai_client=MagicMock(),
        monitors={},
        rooms={},
        join_lock=threading.Lock(),
    )
    with patch("app.get_services", return_value=svc):
        yield svc
    loop.stop()


@pytest.fixture
def client(services):
    app_module.app.config["TESTING"] = True
    with patch("app.auth.verify_id_token", return_value={"uid": "u1"}):
        yield app_module.app.test_client()


class TestAuth:
    """Tests for token verification"""

    def test_missing_token(self, services):
        """Test requests without a token are rejected"""
        response = app_module.app.test_client().get("/notifications")
        assert response.status_code == 401

    def test_invalid_token(self, services):
        """Test verification failures are rejected"""
        with patch("app.auth.verify_id_token", side_effect=ValueError("bad token")):
            response = app_module.app.test_client().get("/notifications", headers=AUTH)
        assert response.status_code == 401
        assert response.get_json()["error"] == "Authentication error"


class TestNotificationRoutes:
    """Tests for notification routes"""

    def test_list_notifications(self, client, services):
        """Test only the caller's notifications are listed"""
        services.notifications.trigger_meeting_notification("42", "u1", "PATIENT")
        services.notifications.trigger_meeting_notification("43", "someone-else", "PATIENT")

        data = client.get("/notifications", headers=AUTH).get_json()
        assert [n["payload"]["appointmentId"] for n in data["notifications"]] == ["42"]

    def test_open_notification_returns_payload(self, client, services):
        """Test opening returns the resume payload and dismisses the notification"""
        services.notifications.trigger_meeting_notification("42", "u1", "DOCTOR")

        data = client.post("/notifications/42/open", headers=AUTH).get_json()
        assert data["appointmentId"] == "42"
        assert data["userRole"] == "DOCTOR"
        assert services.notifications.get("42") is None

    def test_open_other_users_notification(self, client, services):
        """Test a notification for another user is not found"""
        services.notifications.trigger_meeting_notification("42", "someone-else", "DOCTOR")
        assert client.post("/notifications/42/open", headers=AUTH).status_code == 404


class TestMonitoringRoutes:
    """Tests for monitoring routes"""

    def test_start_and_stop(self, client, services):
        """Test monitoring starts once per user and can be stopped"""
        services.appointments.list_for_user.return_value = []

        first = client.post("/monitoring/start", json={"role": "PATIENT"}, headers=AUTH).get_json()
        second = client.post("/monitoring/start", json={"role": "PATIENT"}, headers=AUTH).get_json()
        assert first["handleId"] == second["handleId"]

        stopped = client.post("/monitoring/stop", headers=AUTH).get_json()
        assert stopped["stopped"] is True
        assert client.post("/monitoring/stop", headers=AUTH).get_json()["stopped"] is False

    def test_bad_role(self, client):
        """Test an unknown role is a bad request"""
        response = client.post("/monitoring/start", json={"role": "NURSE"}, headers=AUTH)
        assert response.status_code == 400


class TestConsultationRoutes:
    """Tests for consultation routes"""

    def test_join_unknown_appointment(self, client, services):
        """Test joining a missing appointment is not found"""
        services.appointments.get.return_value = None
        response = client.post("/consultations/42/join", json={"role": "DOCTOR"}, headers=AUTH)
        assert response.status_code == 404

    def test_join_as_non_participant(self, client, services):
        """Test a user who is not on the appointment is refused"""
        services.appointments.get.return_value = Appointment(id="42", doctor_id="d9", patient_id="p9", date_time=0)
        response = client.post("/consultations/42/join", json={"role": "DOCTOR"}, headers=AUTH)
        assert response.status_code == 403

    def test_join_status_and_leave(self, client, services):
        """Test the full join, status and leave flow for one party"""
        services.appointments.get.return_value = Appointment(id="42", doctor_id="u1", patient_id="p1", date_time=0)
        services.notifications.trigger_meeting_notification("42", "u1", "DOCTOR")

        joined = client.post("/consultations/42/join", json={"role": "DOCTOR"}, headers=AUTH).get_json()
        assert joined["state"] == "WAITING"
        assert joined["listening"] is True
        assert services.notifications.get("42") is None

        status = client.get("/consultations/42", headers=AUTH).get_json()
        assert status["role"] == "DOCTOR"

        muted = client.post("/consultations/42/mic", headers=AUTH).get_json()
        assert muted["listening"] is False

        left = client.post("/consultations/42/leave", headers=AUTH).get_json()
        assert left["state"] == "ENDED"
        assert client.get("/consultations/42", headers=AUTH).status_code == 404

    def test_status_without_join(self, client):
        """Test status for a consultation that was never joined"""
        assert client.get("/consultations/42", headers=AUTH).status_code == 404

    def test_audio_without_session(self, client):
        """Test audio cannot be uploaded outside a consultation"""
        assert client.post("/consultations/42/audio", headers=AUTH).status_code == 409

    def test_audio_rejected_while_muted(self, client, services):
        """Test clips uploaded while the microphone is muted are refused and never queued"""
        services.appointments.get.return_value = Appointment(id="42", doctor_id="u1", patient_id="p1", date_time=0)
        client.post("/consultations/42/join", json={"role": "DOCTOR"}, headers=AUTH)
        assert client.post("/consultations/42/mic", headers=AUTH).get_json()["listening"] is False

        response = client.post(
            "/consultations/42/audio",
            data={"audio": (io.BytesIO(b"\0" * 2048), "clip.webm")},
            content_type="multipart/form-data",
            headers=AUTH,
        )
        assert response.status_code == 409
        assert response.get_json()["error"] == "Microphone is muted"
        room = services.rooms["42:u1"]
        assert room.recognizer.audio_queue.empty()
        client.post("/consultations/42/leave", headers=AUTH)

    def test_concurrent_joins_open_one_room(self, client, services):
        """Test two simultaneous joins for the same user open a single room"""
        services.appointments.get.return_value = Appointment(id="42", doctor_id="u1", patient_id="p1", date_time=0)

        def build_room(*args, **kwargs):
            room = MagicMock(is_closed=False)
            room.status.return_value = {"state": "WAITING"}

            async def open_room():
                await asyncio.sleep(0.2)
            room.open = open_room
            room.close = AsyncMock()
            return room

        responses = []

        def join():
            # One test client per thread, as each browser tab has its own
            responses.append(app_module.app.test_client().post("/consultations/42/join", json={"role": "DOCTOR"}, headers=AUTH))

        with patch("app.ConsultationRoom", side_effect=build_room) as room_cls:
            threads = [threading.Thread(target=join) for _ in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(5)

        assert [r.status_code for r in responses] == [200, 200]
        assert room_cls.call_count == 1
        assert list(services.rooms) == ["42:u1"]

    def test_join_timeout_closes_half_open_room(self, client, services):
        """Test a join that times out cancels the opening and leaves no room behind"""
        services.appointments.get.return_value = Appointment(id="42", doctor_id="u1", patient_id="p1", date_time=0)
        room = MagicMock(is_closed=False)

        async def never_opens():
            await asyncio.Event().wait()
        room.open = never_opens
        room.close = AsyncMock()

        with patch("app.ConsultationRoom", return_value=room), \
                patch.object(config, "JOIN_TIMEOUT_SECONDS", 0.05):
            response = client.post("/consultations/42/join", json={"role": "DOCTOR"}, headers=AUTH)

        assert response.status_code == 504
        deadline = time.time() + 2
        while room.close.await_count == 0 and time.time() < deadline:
            time.sleep(0.01)
        room.close.assert_awaited_once()
        assert services.rooms == {}


class TestAssistantRoutes:
    """Tests for AI assistant routes"""

    def test_extract_medical_info(self, client):
        """Test extraction results are returned with camelCase keys"""
        result = MedicalExtraction(diagnosis="Flu", lab_tests=["CBC"])
        with patch("app.extract_medical_info", return_value=result) as extract:
            data = client.post("/extract-medical-info", json={"transcript": "Dr: flu"}, headers=AUTH).get_json()
        extract.assert_called_once_with("Dr: flu")
        assert data["extraction"]["labTests"] == ["CBC"]

    def test_explain(self, client):
        """Test layman explanations are returned"""
        with patch("app.get_layman_explanation", return_value="It means high blood pressure."):
            data = client.post("/explain", json={"query": "hypertension"}, headers=AUTH).get_json()
        assert data["explanation"] == "It means high blood pressure."

    def test_correct_medication_requires_name(self, client):
        """Test a missing medication name is a bad request"""
        assert client.post("/medications/correct", json={}, headers=AUTH).status_code == 400

    def test_assistant_text_query(self, client, services):
        """Test a typed question is answered and spoken"""
        with patch("app.get_general_response", return_value="Take it after meals.") as respond:
            data = client.post("/assistant/ask", data={"query": "metformin timing"}, headers=AUTH).get_json()
        respond.assert_called_once_with("metformin timing")
        services.tts.speak.assert_awaited_once_with("Take it after meals.")
        assert data["audioUrl"] == "/static/tts/temp_tts_abc.mp3"

    def test_assistant_voice_query(self, client, services):
        """Test a spoken question is transcribed in one pass and the answer spoken"""
        with patch("speech.transcribe_audio", return_value=" metformin timing ") as transcribe, \
                patch("app.get_general_response", return_value="Take it after meals.") as respond:
            data = client.post(
                "/assistant/ask",
                data={"audio": (io.BytesIO(b"\0" * 2048), "question.webm")},
                content_type="multipart/form-data",
                headers=AUTH,
            ).get_json()

        transcribe.assert_called_once()
        respond.assert_called_once_with("metformin timing")
        assert data["transcript"] == "metformin timing"
        assert data["audioUrl"] == "/static/tts/temp_tts_abc.mp3"

    def test_assistant_without_input(self, client):
        """Test a request with neither audio nor text is rejected"""
        assert client.post("/assistant/ask", data={}, headers=AUTH).status_code == 400


class TestShutdown:
    """Tests for the interpreter-exit hook"""

    def test_shutdown_closes_rooms_and_stops_loop(self):
        """Test every open room is closed, even after a failing one, and the loop stops"""
        loop = BackgroundLoop()
        failing = MagicMock()
        failing.close = AsyncMock(side_effect=RuntimeError("firestore down"))
        healthy = MagicMock()
        healthy.close = AsyncMock()
        svc = SimpleNamespace(loop=loop, rooms={"41:u1": failing, "42:u1": healthy})

        with patch("app._services", svc):
            app_module.shutdown_services()

        failing.close.assert_awaited_once()
        healthy.close.assert_awaited_once()
        assert svc.rooms == {}
        assert not loop._thread.is_alive()

    def test_shutdown_without_services(self):
        """Test the hook is a no-op when nothing was started"""
        with patch("app._services", None):
            app_module.shutdown_services()
