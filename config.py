import logging
import os
from dotenv import load_dotenv
import firebase_admin
from firebase_admin import credentials, firestore

# Load environment variables from .env file
load_dotenv(dotenv_path=os.path.join(os.getcwd(), '.env'))

logger = logging.getLogger(__name__)

# Appointment monitor timings
MONITOR_TOLERANCE_MS = int(os.getenv('MONITOR_TOLERANCE_MS', '60000'))
MONITOR_COOLDOWN_SECONDS = float(os.getenv('MONITOR_COOLDOWN_SECONDS', '120'))
MONITOR_POLL_SECONDS = float(os.getenv('MONITOR_POLL_SECONDS', '30'))
MONITOR_ERROR_RETRY_SECONDS = float(os.getenv('MONITOR_ERROR_RETRY_SECONDS', '30'))

# Live session
NO_SHOW_TIMEOUT_SECONDS = float(os.getenv('NO_SHOW_TIMEOUT_SECONDS', '300'))
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv('HEARTBEAT_INTERVAL_SECONDS', '10'))
PRESENCE_LEASE_MS = int(os.getenv('PRESENCE_LEASE_MS', '30000'))
JOIN_TIMEOUT_SECONDS = float(os.getenv('JOIN_TIMEOUT_SECONDS', '30'))

# Voice capture
RESULT_RESTART_DELAY_SECONDS = 0.1
ERROR_RESTART_DELAY_SECONDS = 0.3
LISTEN_TIMEOUT_SECONDS = float(os.getenv('LISTEN_TIMEOUT_SECONDS', '15'))
MAX_CONSECUTIVE_NETWORK_ERRORS = int(os.getenv('MAX_CONSECUTIVE_NETWORK_ERRORS', '3'))
SPEECH_LANGUAGE = os.getenv('SPEECH_LANGUAGE', 'en')

# AI insights
INSIGHT_MIN_TRANSCRIPT_CHARS = 50
INSIGHT_GROWTH_THRESHOLD_CHARS = 100
GEMINI_INSIGHTS_MODEL = os.getenv('GEMINI_INSIGHTS_MODEL', 'gemini-1.5-flash')
GEMINI_CHAT_MODEL = os.getenv('GEMINI_CHAT_MODEL', 'gemini-1.5-flash')
WHISPER_MODEL = os.getenv('WHISPER_MODEL', 'whisper-1')

# Storage
FIREBASE_CREDENTIALS = os.getenv('FIREBASE_CREDENTIALS', './Cred/Firebase/service-account.json')
APPOINTMENTS_COLLECTION = 'appointments'
SESSIONS_COLLECTION = 'consultation_sessions'
CONSULTATION_RECORDS_COLLECTION = 'consultation_records'
STATIC_DIR = os.getenv('STATIC_DIR', 'static')
UPLOAD_DIR = os.getenv('UPLOAD_DIR', os.path.join(STATIC_DIR, 'uploads'))


def configure_logging():
    level = os.getenv('LOG_LEVEL', 'DEBUG').upper()
    logging.basicConfig(level=getattr(logging, level, logging.DEBUG), format='%(asctime)s - %(levelname)s - %(message)s')


def get_firestore_client():
    """
    Initialize Firebase once and return a Firestore client.
    """
    if not firebase_admin._apps:
        cred = credentials.Certificate(FIREBASE_CREDENTIALS)
        firebase_admin.initialize_app(cred)
        logger.info("✅ Firebase initialized successfully. SDK Version: %s", firebase_admin.__version__)
    return firestore.client()
