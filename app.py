import asyncio
import atexit
import concurrent.futures
import logging
import os
import secrets
import shutil
import tempfile
import threading
import time
from functools import wraps

from firebase_admin import auth
from flask import Flask, request, jsonify, session
from openai import OpenAI

import config
from appointment_monitor import AppointmentMonitor
from appointment_store import AppointmentStore
from consultation_room import ConsultationRoom
from errors import ConsultationError
from gemini_processor import correct_medication_spelling, extract_medical_info, get_general_response, get_layman_explanation
from models import Role
from notifications import NotificationCenter
from presence_store import PresenceStore
from runtime import BackgroundLoop
from speech import RecognitionError, TextToSpeech, WhisperRecognizer, cleanup_old_tts_files
from voice_capture import VoiceCaptureLoop

config.configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__, static_folder=config.STATIC_DIR)
app.secret_key = os.environ.get("FLASK_SECRET_KEY", secrets.token_hex(32))


class Services:
    """Process-wide collaborators, built on first use."""

    def __init__(self):
        openai_api_key = os.getenv("OPENAI_API_KEY")
        if not openai_api_key:
            logger.error("OPENAI_API_KEY not found in .env")
            raise ValueError("OPENAI_API_KEY not found in .env file")
        self.openai_client = OpenAI(api_key=openai_api_key)
        self.loop = BackgroundLoop()
        db = config.get_firestore_client()
        self.appointments = AppointmentStore(db)
        self.presence = PresenceStore(db)
        self.notifications = NotificationCenter()
        self.notifications.register_channel()
        self.tts = TextToSpeech()
        self.monitors = {}
        self.rooms = {}
        self.join_lock = threading.Lock()


_services = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    with _services_lock:
        if _services is None:
            _services = Services()
            logger.info("✅ Consultation services initialized")
        return _services


def shutdown_services():
    """Close open rooms so both parties see this one leave, then stop the loop."""
    with _services_lock:
        services = _services
    if services is None:
        return
    for key, room in list(services.rooms.items()):
        try:
            services.loop.run(room.close(), timeout=10)
        except Exception as e:
            logger.error(f"Failed to close consultation room {key} on shutdown: {str(e)}")
    services.rooms.clear()
    services.loop.stop()
    logger.info("Consultation services shut down")


atexit.register(shutdown_services)


def token_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization')
        token = None
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ")[1]
            logger.debug(f"Using token from Authorization header: {token[:20]}...")
        elif 'idToken' in session:
            token = session['idToken']
            logger.debug(f"Using token from session: {token[:20]}...")
        else:
            logger.error("No Authorization header or session token provided")
            return jsonify({"error": "Token missing"}), 401

        try:
            decoded_token = auth.verify_id_token(token, clock_skew_seconds=60)
            request.user = decoded_token
            logger.info(f"✅ Token verified for UID: {decoded_token.get('uid')}")
        except auth.ExpiredIdTokenError as e:
            logger.error(f"Expired ID token: {str(e)}")
            return jsonify({"error": "Expired ID token"}), 401
        except auth.InvalidIdTokenError as e:
            logger.error(f"Invalid ID token: {str(e)}")
            return jsonify({"error": "Invalid ID token"}), 401
        except Exception as e:
            logger.error(f"Token verification error: {str(e)}")
            return jsonify({"error": "Authentication error"}), 401
        return f(*args, **kwargs)
    return decorated


def _request_role() -> Role:
    data = request.get_json(silent=True) or {}
    return Role.parse(data.get('role') or request.form.get('role') or request.user.get('role'))


def _room_key(appointment_id, uid) -> str:
    return f"{appointment_id}:{uid}"


def _get_room(services: Services, appointment_id):
    return services.rooms.get(_room_key(appointment_id, request.user.get('uid')))


@app.before_request
def before_request_cleanup():
    cleanup_old_tts_files()


@app.route('/monitoring/start', methods=['POST'])
@token_required
def start_monitoring():
    try:
        uid = request.user.get('uid')
        role = _request_role()
        services = get_services()
        monitor = services.monitors.get(uid)
        if monitor is None:
            monitor = AppointmentMonitor(services.appointments, services.notifications)
            services.monitors[uid] = monitor
        handle = services.loop.call(monitor.start_monitoring, uid, role)
        return jsonify({"success": True, "handleId": handle.handle_id, "role": handle.role.value})
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error(f"Failed to start monitoring: {str(e)}")
        return jsonify({"error": str(e)}), 500


@app.route('/monitoring/stop', methods=['POST'])
@token_required
def stop_monitoring():
    uid = request.user.get('uid')
    services = get_services()
    monitor = services.monitors.get(uid)
    handle = monitor.active_handle if monitor is not None else None
    if handle is None:
        return jsonify({"success": True, "stopped": False})
    services.loop.call(monitor.stop_monitoring, handle)
    return jsonify({"success": True, "stopped": True})


@app.route('/notifications', methods=['GET'])
@token_required
def list_notifications():
    services = get_services()
    notifications = services.notifications.active_for_user(request.user.get('uid'))
    return jsonify({"success": True, "notifications": [n.to_dict() for n in notifications]})


@app.route('/notifications/<appointment_id>/open', methods=['POST'])
@token_required
def open_notification(appointment_id):
    services = get_services()
    notification = services.notifications.get(appointment_id)
    if notification is None or notification.payload.user_id != request.user.get('uid'):
        return jsonify({"error": "Notification not found"}), 404
    services.notifications.dismiss(appointment_id)
    # The payload carries everything needed to resume the session
    return jsonify({"success": True, **notification.payload.to_dict()})


@app.route('/consultations/<appointment_id>/join', methods=['POST'])
@token_required
def join_consultation(appointment_id):
    try:
        uid = request.user.get('uid')
        role = _request_role()
        services = get_services()
        # Check, open and register as one step so a double join opens one room
        with services.join_lock:
            room = _get_room(services, appointment_id)
            if room is not None and not room.is_closed:
                return jsonify({"success": True, **room.status()})

            appointment = services.appointments.get(appointment_id)
            if appointment is None:
                return jsonify({"error": "Appointment not found"}), 404
            party_id = appointment.doctor_id if role is Role.DOCTOR else appointment.patient_id
            if party_id != uid:
                logger.warning(f"User {uid} is not the {role.value} of appointment {appointment_id}")
                return jsonify({"error": "Not a participant of this appointment"}), 403

            async def open_room():
                recognizer = WhisperRecognizer(services.openai_client)
                new_room = ConsultationRoom(appointment_id, uid, role, services.presence, services.appointments, recognizer)
                try:
                    await new_room.open()
                except asyncio.CancelledError:
                    logger.warning(f"Join of consultation {appointment_id} cancelled, closing the room")
                    await new_room.close()
                    raise
                return new_room

            room = services.loop.run(open_room(), timeout=config.JOIN_TIMEOUT_SECONDS)
            services.rooms[_room_key(appointment_id, uid)] = room
        services.notifications.dismiss(appointment_id)
        return jsonify({"success": True, **room.status()})
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except ConsultationError as e:
        return jsonify({"error": str(e)}), 409
    except concurrent.futures.TimeoutError:
        logger.error(f"Timed out joining consultation {appointment_id}")
        return jsonify({"error": "Timed out joining consultation"}), 504
    except Exception as e:
        logger.error(f"Failed to join consultation {appointment_id}: {str(e)}")
        return jsonify({"error": str(e)}), 500


@app.route('/consultations/<appointment_id>', methods=['GET'])
@token_required
def consultation_status(appointment_id):
    room = _get_room(get_services(), appointment_id)
    if room is None:
        return jsonify({"error": "Not joined"}), 404
    return jsonify({"success": True, **room.status()})


@app.route('/consultations/<appointment_id>/audio', methods=['POST'])
@token_required
def upload_audio(appointment_id):
    services = get_services()
    room = _get_room(services, appointment_id)
    if room is None or room.is_closed:
        return jsonify({"error": "Consultation is not active"}), 409
    if not room.capture.is_active:
        logger.info(f"Dropping audio for consultation {appointment_id}: microphone is muted")
        return jsonify({"error": "Microphone is muted"}), 409

    partial = request.form.get('partial')
    if partial:
        services.loop.call(room.recognizer.submit_partial, partial)
    if 'audio' not in request.files:
        if partial:
            return jsonify({"success": True, "queued": False})
        logger.error("No audio file provided")
        return jsonify({"error": "No audio file provided"}), 400

    audio_file = request.files['audio']
    if audio_file.filename == '':
        logger.error("No audio file selected")
        return jsonify({"error": "No audio file selected"}), 400

    # The recognizer deletes the clip once transcribed
    fd, audio_path = tempfile.mkstemp(suffix=".webm", prefix=f"temp_audio_{request.user.get('uid')}_")
    os.close(fd)
    audio_file.save(audio_path)
    services.loop.call(room.recognizer.submit_clip, audio_path)
    return jsonify({"success": True, "queued": True})


@app.route('/consultations/<appointment_id>/mic', methods=['POST'])
@token_required
def toggle_mic(appointment_id):
    services = get_services()
    room = _get_room(services, appointment_id)
    if room is None:
        return jsonify({"error": "Not joined"}), 404
    try:
        listening = services.loop.call(room.toggle_mic)
        return jsonify({"success": True, "listening": listening})
    except ConsultationError as e:
        return jsonify({"error": str(e)}), 409


@app.route('/consultations/<appointment_id>/insights/refresh', methods=['POST'])
@token_required
def refresh_insights(appointment_id):
    services = get_services()
    room = _get_room(services, appointment_id)
    if room is None:
        return jsonify({"error": "Not joined"}), 404
    refreshed = services.loop.run(room.refresh_insights(), timeout=60)
    return jsonify({"success": True, "refreshed": refreshed, "insights": room.status()['insights']})


@app.route('/consultations/<appointment_id>/leave', methods=['POST'])
@token_required
def leave_consultation(appointment_id):
    services = get_services()
    room = services.rooms.pop(_room_key(appointment_id, request.user.get('uid')), None)
    if room is None:
        return jsonify({"error": "Not joined"}), 404
    services.loop.run(room.close(), timeout=30)
    return jsonify({"success": True, **room.status()})


@app.route('/extract-medical-info', methods=['POST'])
@token_required
def extract_info():
    data = request.get_json(silent=True) or {}
    transcript = data.get('transcript')
    if transcript is None and data.get('appointmentId'):
        room = _get_room(get_services(), data['appointmentId'])
        transcript = room.session.transcript.value if room is not None else ''
    result = extract_medical_info(transcript or '')
    return jsonify({"success": True, "extraction": result.model_dump(by_alias=True, mode='json')})


@app.route('/explain', methods=['POST'])
@token_required
def explain():
    data = request.get_json(silent=True) or {}
    return jsonify({"success": True, "explanation": get_layman_explanation(data.get('query', ''))})


@app.route('/medications/correct', methods=['POST'])
@token_required
def correct_medication():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    if not name:
        return jsonify({"error": "Missing medication name"}), 400
    return jsonify({"success": True, "name": correct_medication_spelling(name)})


@app.route('/assistant/ask', methods=['POST'])
@token_required
def assistant_ask():
    temp_dir = None
    try:
        services = get_services()
        query = request.form.get('query')
        audio_path = None
        if not query:
            if 'audio' not in request.files or request.files['audio'].filename == '':
                logger.error("No audio file or query provided")
                return jsonify({"error": "No audio file or query provided"}), 400
            temp_dir = tempfile.mkdtemp()
            audio_path = os.path.join(temp_dir, f"temp_audio_{request.user.get('uid')}.webm")
            request.files['audio'].save(audio_path)

        async def answer(query):
            if audio_path is not None:
                recognizer = WhisperRecognizer(services.openai_client)
                recognizer.submit_clip(audio_path)
                query = await VoiceCaptureLoop(recognizer, Role.DOCTOR).listen_once()
            response = await asyncio.to_thread(get_general_response, query)
            audio_url = await services.tts.speak(response)
            return query, response, audio_url

        start = time.time()
        query, response, audio_url = services.loop.run(answer(query), timeout=120)
        logger.debug(f"Assistant answered in {time.time() - start:.2f}s")
        return jsonify({"success": True, "transcript": query, "response": response, "audioUrl": audio_url})
    except RecognitionError as e:
        logger.error(f"Assistant transcription error: {str(e)}")
        return jsonify({"error": e.message}), 400
    except Exception as e:
        logger.error(f"Assistant error: {str(e)}")
        return jsonify({"error": str(e)}), 500
    finally:
        if temp_dir is not None:
            shutil.rmtree(temp_dir, ignore_errors=True)
            logger.debug(f"Cleaned up temporary files in: {temp_dir}")


@app.errorhandler(404)
def page_not_found(e):
    return jsonify({"error": "Not found"}), 404


if __name__ == '__main__':
    app.run(host='127.0.0.1', port=int(os.environ.get('PORT', 5000)))
