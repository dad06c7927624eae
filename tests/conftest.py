"""
Shared fixtures for the consultation services tests.

Puts the project root on sys.path and sets dummy API keys before any module
under test is imported.
"""

import asyncio
import os
import sys
import threading

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from appointment_store import now_ms  # noqa: E402
from models import PresenceRecord, Role  # noqa: E402


class FakePresenceStore:
    """In-memory stand-in for the Firestore session document, with push updates."""

    def __init__(self):
        self.data = {}
        self.subscribers = {}
        self.lock = threading.Lock()

    def _snapshot(self, appointment_id):
        with self.lock:
            doc = self.data.get(str(appointment_id))
            if doc is None:
                return PresenceRecord()
            return PresenceRecord.from_dict({**doc, 'transcriptChunks': list(doc.get('transcriptChunks', []))})

    def _emit(self, appointment_id):
        record = self._snapshot(appointment_id)
        for callback in list(self.subscribers.get(str(appointment_id), [])):
            callback(record)

    def _doc(self, appointment_id):
        return self.data.setdefault(str(appointment_id), {'transcriptChunks': []})

    def mark_joined(self, appointment_id, role, joined=True):
        role = Role.parse(role)
        with self.lock:
            doc = self._doc(appointment_id)
            doc[role.presence_field] = joined
            doc[role.last_seen_field] = now_ms()
        self._emit(appointment_id)

    def heartbeat(self, appointment_id, role):
        role = Role.parse(role)
        with self.lock:
            self._doc(appointment_id)[role.last_seen_field] = now_ms()
        self._emit(appointment_id)

    def append_chunk(self, appointment_id, chunk):
        with self.lock:
            self._doc(appointment_id)['transcriptChunks'].append(chunk.to_dict())
        self._emit(appointment_id)

    def subscribe(self, appointment_id, callback):
        callbacks = self.subscribers.setdefault(str(appointment_id), [])
        callbacks.append(callback)
        callback(self._snapshot(appointment_id))

        def unsubscribe():
            if callback in callbacks:
                callbacks.remove(callback)
        return unsubscribe


class ScriptedRecognizer:
    """
    Recognizer that plays back a script of results. Entries are final texts,
    RecognitionError instances to raise, or (partial, final) tuples. Once the
    script runs out, recognize() blocks until cancelled.
    """

    def __init__(self, script=None):
        self.script = list(script or [])
        self.calls = 0
        self.discarded = 0

    async def recognize(self, on_partial=None):
        self.calls += 1
        if not self.script:
            await asyncio.Event().wait()
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, tuple):
            partial, final = item
            if on_partial is not None:
                on_partial(partial)
            await asyncio.sleep(0)
            return final
        return item

    def discard_pending(self):
        self.discarded += 1
        return 0


async def _eventually(predicate, timeout=2.0, interval=0.01):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def presence():
    return FakePresenceStore()


@pytest.fixture
def recognizer_factory():
    return ScriptedRecognizer


@pytest.fixture
def eventually():
    return _eventually
