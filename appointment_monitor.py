import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import config
from models import Appointment, AppointmentStatus, Role

logger = logging.getLogger(__name__)


@dataclass
class MonitorHandle:
    """Owned by the caller of start_monitoring; pass it back to stop_monitoring."""
    user_id: str
    role: Role
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    running: bool = True
    task: Optional[asyncio.Task] = None


def find_live_appointment(appointments: List[Appointment], now_ms: int, tolerance_ms: int = config.MONITOR_TOLERANCE_MS) -> Optional[Appointment]:
    """Return the first scheduled appointment whose start time is within the tolerance window."""
    for appointment in appointments:
        if appointment.status == AppointmentStatus.SCHEDULED and abs(appointment.date_time - now_ms) < tolerance_ms:
            return appointment
    return None


class AppointmentMonitor:
    """
    Polls a user's appointments and fires a meeting notification when one is
    starting now. One loop per monitor instance.
    """

    def __init__(self, store, notifications, clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.notifications = notifications
        self.clock = clock
        self.sleep = sleep
        self._handle: Optional[MonitorHandle] = None

    @property
    def active_handle(self) -> Optional[MonitorHandle]:
        return self._handle if self._handle is not None and self._handle.running else None

    def start_monitoring(self, user_id: str, role) -> MonitorHandle:
        """Start the monitoring loop; returns the already-active handle if one is running."""
        if self.active_handle is not None:
            logger.debug(f"Monitor already running for {self._handle.role.value} : {self._handle.user_id}")
            return self._handle

        handle = MonitorHandle(user_id=user_id, role=Role.parse(role))
        handle.task = asyncio.get_running_loop().create_task(self._run(handle))
        self._handle = handle
        logger.info(f"Started monitoring for {handle.role.value} : {user_id}")
        return handle

    def stop_monitoring(self, handle: MonitorHandle) -> None:
        handle.running = False
        if self._handle is handle:
            self._handle = None
        logger.info(f"Stopped monitoring for {handle.role.value} : {handle.user_id}")

    async def _run(self, handle: MonitorHandle):
        while handle.running:
            try:
                appointments = await asyncio.to_thread(self.store.list_for_user, handle.user_id, handle.role)
                live = find_live_appointment(appointments, int(self.clock() * 1000))
                if not handle.running:
                    break

                if live is not None:
                    self._dispatch(live, handle)
                    # Cooldown so the same meeting is not announced again
                    await self.sleep(config.MONITOR_COOLDOWN_SECONDS)
                else:
                    await self.sleep(config.MONITOR_POLL_SECONDS)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error checking appointments for {handle.user_id}: {str(e)}")
                await self.sleep(config.MONITOR_ERROR_RETRY_SECONDS)
        logger.debug(f"Monitor loop {handle.handle_id} exited")

    def _dispatch(self, appointment: Appointment, handle: MonitorHandle):
        try:
            self.notifications.trigger_meeting_notification(appointment.id, handle.user_id, handle.role)
        except Exception as e:
            logger.error(f"Failed to trigger notification for appointment {appointment.id}: {str(e)}")
