import asyncio
import glob
import hashlib
import logging
import os
import time
from enum import Enum
from typing import Callable, Optional

import openai
from gtts import gTTS

import config

logger = logging.getLogger(__name__)


class RecognitionErrorKind(str, Enum):
    NO_MATCH = "NO_MATCH"
    SPEECH_TIMEOUT = "SPEECH_TIMEOUT"
    RECOGNIZER_BUSY = "RECOGNIZER_BUSY"
    NETWORK = "NETWORK"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CLIENT = "CLIENT"


_ERROR_MESSAGES = {
    RecognitionErrorKind.NO_MATCH: "No speech detected",
    RecognitionErrorKind.SPEECH_TIMEOUT: "No speech detected",
    RecognitionErrorKind.RECOGNIZER_BUSY: "Recognizer busy",
    RecognitionErrorKind.NETWORK: "Network error",
    RecognitionErrorKind.PERMISSION_DENIED: "Permission denied",
    RecognitionErrorKind.CLIENT: "Speech recognition failed",
}

_RECOVERABLE = {
    RecognitionErrorKind.NO_MATCH,
    RecognitionErrorKind.SPEECH_TIMEOUT,
    RecognitionErrorKind.RECOGNIZER_BUSY,
    RecognitionErrorKind.NETWORK,
}


class RecognitionError(Exception):
    def __init__(self, kind: RecognitionErrorKind, detail: str = ""):
        self.kind = RecognitionErrorKind(kind)
        self.detail = detail
        super().__init__(f"{self.message}: {detail}" if detail else self.message)

    @property
    def message(self) -> str:
        return _ERROR_MESSAGES[self.kind]

    @property
    def recoverable(self) -> bool:
        return self.kind in _RECOVERABLE


def transcribe_audio(client, audio_path: str, language: str = config.SPEECH_LANGUAGE, retries: int = 3) -> str:
    """
    Transcribe one audio clip with Whisper.
    Rate limits and server errors are retried with exponential backoff.
    Raises RecognitionError with the matching kind on failure.
    """
    attempt = 0
    while attempt < retries:
        try:
            logger.debug(f"Transcribing audio: {audio_path} (language: {language}, attempt: {attempt + 1})")
            audio_size = os.path.getsize(audio_path)
            logger.debug(f"Audio file size: {audio_size} bytes")
            if audio_size < 1024:
                logger.warning(f"Audio file too small: {audio_size} bytes")
                raise RecognitionError(RecognitionErrorKind.NO_MATCH, "audio file too small or corrupted")
            with open(audio_path, "rb") as audio_file:
                result = client.audio.transcriptions.create(
                    model=config.WHISPER_MODEL,
                    file=audio_file,
                    language=language,
                )
            transcribed_text = (result.text or "").strip()
            logger.debug(f"Transcribed text: {transcribed_text}")
            return transcribed_text
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            logger.error(f"Transcription rejected: {str(e)}")
            raise RecognitionError(RecognitionErrorKind.PERMISSION_DENIED, str(e)) from e
        except (openai.RateLimitError, openai.InternalServerError) as e:
            logger.error(f"Transcription HTTP error {e.status_code}: {str(e)}")
            attempt += 1
            if attempt < retries:
                time.sleep(2 ** attempt)
        except openai.APIConnectionError as e:
            logger.error(f"Transcription connection error: {str(e)}")
            raise RecognitionError(RecognitionErrorKind.NETWORK, str(e)) from e
        except openai.APIStatusError as e:
            logger.error(f"Transcription failed: HTTP {e.status_code} - {str(e)}")
            raise RecognitionError(RecognitionErrorKind.CLIENT, str(e)) from e
    raise RecognitionError(RecognitionErrorKind.NETWORK, "transcription failed after multiple attempts")


class WhisperRecognizer:
    """
    Speech recognizer fed by uploaded audio clips. Each recognize() pass
    consumes the next clip from the queue; interim hypotheses pushed by the
    client are forwarded to the active pass.
    """

    def __init__(self, client, audio_queue: Optional[asyncio.Queue] = None,
                 language: str = config.SPEECH_LANGUAGE,
                 listen_timeout: float = config.LISTEN_TIMEOUT_SECONDS):
        self.client = client
        self.audio_queue = audio_queue if audio_queue is not None else asyncio.Queue()
        self.language = language
        self.listen_timeout = listen_timeout
        self._busy = False
        self._on_partial: Optional[Callable[[str], None]] = None

    def submit_clip(self, audio_path: str) -> None:
        self.audio_queue.put_nowait(audio_path)

    def submit_partial(self, text: str) -> None:
        if self._on_partial is not None and text:
            self._on_partial(text)

    def discard_pending(self) -> int:
        """Drop and delete every queued clip; returns how many were discarded."""
        discarded = 0
        while True:
            try:
                audio_path = self.audio_queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            _remove_quietly(audio_path)
            discarded += 1
        if discarded:
            logger.info(f"Discarded {discarded} queued audio clip(s)")
        return discarded

    async def recognize(self, on_partial: Optional[Callable[[str], None]] = None) -> str:
        if self._busy:
            raise RecognitionError(RecognitionErrorKind.RECOGNIZER_BUSY)
        self._busy = True
        self._on_partial = on_partial
        try:
            try:
                audio_path = await asyncio.wait_for(self.audio_queue.get(), timeout=self.listen_timeout)
            except asyncio.TimeoutError:
                raise RecognitionError(RecognitionErrorKind.SPEECH_TIMEOUT)
            try:
                text = await asyncio.to_thread(transcribe_audio, self.client, audio_path, self.language)
            finally:
                _remove_quietly(audio_path)
            if not text.strip():
                raise RecognitionError(RecognitionErrorKind.NO_MATCH)
            return text.strip()
        finally:
            self._busy = False
            self._on_partial = None


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
        logger.debug(f"Cleaned up temporary audio file: {path}")
    except OSError as e:
        logger.warning(f"Failed to clean up temp file {path}: {str(e)}")


def cleanup_old_tts_files(static_dir: str = config.STATIC_DIR, max_age: int = 3600) -> None:
    try:
        now = time.time()
        for mp3_file in glob.glob(os.path.join(static_dir, "tts", "temp_tts_*.mp3")):
            file_age = now - os.path.getmtime(mp3_file)
            if file_age > max_age:
                os.remove(mp3_file)
                logger.debug(f"Deleted old temp TTS file: {mp3_file} (age: {file_age}s)")
    except Exception as e:
        logger.warning(f"Failed to clean up old TTS files: {str(e)}")


class TextToSpeech:
    """gTTS synthesis into the static directory, cached by text and language."""

    def __init__(self, static_dir: str = config.STATIC_DIR, language: str = config.SPEECH_LANGUAGE):
        self.output_dir = os.path.join(static_dir, "tts")
        self.language = language

    def synthesize(self, text: str) -> Optional[str]:
        """Returns the static URL path of the mp3, or None when synthesis fails."""
        if not text or not text.strip():
            logger.warning("TTS input is empty")
            return None
        cache_key = hashlib.md5((text + self.language).encode()).hexdigest()
        filename = f"temp_tts_{cache_key}.mp3"
        path = os.path.join(self.output_dir, filename)
        url = f"/static/tts/{filename}"
        if os.path.exists(path):
            logger.info(f"Retrieved cached TTS for: {text[:50]}")
            return url
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            gTTS(text=text, lang=self.language, slow=False).save(path)
            audio_size = os.path.getsize(path)
            if audio_size < 1024:
                os.remove(path)
                raise ValueError(f"Generated audio file is too small: {audio_size} bytes")
            logger.debug(f"Synthesized TTS audio: {path}")
            return url
        except Exception as e:
            logger.error(f"Audio synthesis error: {str(e)}")
            return None

    def speak(self, text: str) -> asyncio.Task:
        """Fire-and-forget synthesis on the running loop."""
        return asyncio.get_running_loop().create_task(asyncio.to_thread(self.synthesize, text))
