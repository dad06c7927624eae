import asyncio
import logging
from typing import Awaitable, Callable, Optional

import config
from models import Role
from observable import LiveValue
from speech import RecognitionError, RecognitionErrorKind

logger = logging.getLogger(__name__)


class VoiceCaptureLoop:
    """
    Continuous speech capture for one party. Each finished utterance is added
    to the local running transcript, handed to on_utterance, and may trigger
    an insight refresh. The loop restarts itself until muted or a terminal
    error occurs.
    """

    def __init__(self, recognizer, role, on_utterance: Optional[Callable[[str], Awaitable]] = None,
                 insights=None,
                 result_restart_delay: float = config.RESULT_RESTART_DELAY_SECONDS,
                 error_restart_delay: float = config.ERROR_RESTART_DELAY_SECONDS,
                 max_network_errors: int = config.MAX_CONSECUTIVE_NETWORK_ERRORS):
        self.recognizer = recognizer
        self.role = Role.parse(role)
        self.on_utterance = on_utterance
        self.insights = insights
        self.result_restart_delay = result_restart_delay
        self.error_restart_delay = error_restart_delay
        self.max_network_errors = max_network_errors

        self.partial = LiveValue("", "partial")
        self.last_error = LiveValue(None, "last_error")
        self.transcript = LiveValue("", "local_transcript")
        self.listening = LiveValue(False, "listening")

        self._task: Optional[asyncio.Task] = None
        self._network_errors = 0

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start_capture(self) -> asyncio.Task:
        if self.is_active:
            return self._task
        self._network_errors = 0
        self.last_error.set(None)
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.listening.set(True)
        logger.info(f"Voice capture started for {self.role.value}")
        return self._task

    def stop_capture(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self.listening.set(False)
        self.partial.set("")
        logger.info(f"Voice capture stopped for {self.role.value}")

    def toggle(self) -> bool:
        """Mute or unmute; returns True when capture is now running."""
        if self.is_active:
            self.stop_capture()
            return False
        self.start_capture()
        return True

    async def _run(self):
        try:
            while True:
                try:
                    text = await self.recognizer.recognize(on_partial=self.partial.set)
                except RecognitionError as e:
                    if not await self._recover(e):
                        return
                    continue
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Unexpected recognizer failure: {str(e)}")
                    await self._recover(RecognitionError(RecognitionErrorKind.CLIENT, str(e)))
                    return

                self._network_errors = 0
                await self._commit(text)
                await asyncio.sleep(self.result_restart_delay)
        finally:
            if self._task is asyncio.current_task():
                self._task = None
                self.listening.set(False)

    async def _recover(self, error: RecognitionError) -> bool:
        """Returns True when the loop should restart after the error."""
        self.partial.set("")
        if error.kind is RecognitionErrorKind.NETWORK:
            self._network_errors += 1
            terminal = self._network_errors >= self.max_network_errors
        else:
            terminal = not error.recoverable

        if terminal:
            logger.error(f"Voice capture stopped on {error.kind.value}: {str(error)}")
            self.last_error.set(error.message)
            return False

        if error.kind in (RecognitionErrorKind.NO_MATCH, RecognitionErrorKind.SPEECH_TIMEOUT):
            logger.debug(f"Restarting recognition after {error.kind.value}")
        else:
            logger.warning(f"Restarting recognition after {error.kind.value}: {str(error)}")
        await asyncio.sleep(self.error_restart_delay)
        return True

    async def _commit(self, text: str):
        self.partial.set("")
        text = (text or "").strip()
        if not text:
            return
        line = f"{self.role.transcript_prefix}{text}"
        current = self.transcript.value
        self.transcript.set(f"{current}\n{line}" if current else line)

        if self.on_utterance is not None:
            try:
                await self.on_utterance(text)
            except Exception as e:
                logger.error(f"Failed to publish utterance: {str(e)}")

        if self.insights is not None:
            self.insights.maybe_refresh(self.transcript.value)

    async def listen_once(self) -> str:
        """
        Single recognition pass for the voice assistant. Falls back to the last
        interim hypothesis when no final result arrives.
        """
        hypotheses = []

        def on_partial(text):
            hypotheses.append(text)
            self.partial.set(text)

        try:
            return (await self.recognizer.recognize(on_partial=on_partial)).strip()
        except RecognitionError as e:
            if e.kind in (RecognitionErrorKind.NO_MATCH, RecognitionErrorKind.SPEECH_TIMEOUT) and hypotheses:
                return hypotheses[-1].strip()
            raise
        finally:
            self.partial.set("")
