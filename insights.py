import asyncio
import logging
from typing import Callable, Optional

import config
from gemini_processor import get_live_insights
from models import InsightSnapshot
from observable import LiveValue

logger = logging.getLogger(__name__)


class InsightRefresher:
    """
    Keeps the latest AI insight snapshot for a consultation. A failed refresh
    keeps the previous snapshot; the refresh control is re-enabled either way.
    """

    def __init__(self, assistant: Optional[Callable[[str], InsightSnapshot]] = None,
                 min_chars: int = config.INSIGHT_MIN_TRANSCRIPT_CHARS,
                 growth_threshold: int = config.INSIGHT_GROWTH_THRESHOLD_CHARS):
        self.assistant = assistant or get_live_insights
        self.min_chars = min_chars
        self.growth_threshold = growth_threshold
        self.snapshot = LiveValue(None, "insights")
        self.refresh_enabled = LiveValue(True, "refresh_enabled")
        self.watermark = 0
        self._in_flight = False
        self._tasks = set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def refresh(self, transcript: str) -> bool:
        """Returns True when a new snapshot was published."""
        transcript = transcript or ""
        if len(transcript) < self.min_chars:
            logger.debug(f"Transcript too short for insights ({len(transcript)} chars)")
            return False
        if self._in_flight:
            logger.debug("Insight refresh already in flight")
            return False

        self._in_flight = True
        self.refresh_enabled.set(False)
        try:
            snapshot = await asyncio.to_thread(self.assistant, transcript)
            self.snapshot.set(snapshot)
            self.watermark = len(transcript)
            logger.info(f"AI insights refreshed (severity: {snapshot.severity.value})")
            return True
        except Exception as e:
            logger.error(f"AI insight refresh failed: {str(e)}")
            return False
        finally:
            self._in_flight = False
            self.refresh_enabled.set(True)

    def maybe_refresh(self, transcript: str) -> Optional[asyncio.Task]:
        """Spawn a refresh when the transcript grew past the threshold since the last one."""
        if self._in_flight or len(transcript or "") - self.watermark <= self.growth_threshold:
            return None
        task = asyncio.get_running_loop().create_task(self.refresh(transcript))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
