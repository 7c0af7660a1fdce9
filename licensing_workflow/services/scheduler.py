# SPDX-License-Identifier: Apache-2.0

"""
Periodic driver for the deadline duties.

One DeadlineScheduler is built at process start and handed to whatever needs
to trigger manual runs. It owns its lifecycle state and a stop signal; stopping
halts future ticks while a tick already running is allowed to finish.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..domain.deadlines import ScanResult, detect_overdue, dispatch_reminders
from ..models.enums import SchedulerState

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Scheduler cadence settings."""
    overdue_interval: float = 24 * 60 * 60
    reminder_interval: float = 60 * 60
    enabled: bool = True
    stop_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            overdue_interval=float(os.getenv('SCHEDULER_OVERDUE_INTERVAL', str(24 * 60 * 60))),
            reminder_interval=float(os.getenv('SCHEDULER_REMINDER_INTERVAL', str(60 * 60))),
            enabled=os.getenv('SCHEDULER_ENABLED', 'true').lower() == 'true',
            stop_timeout=float(os.getenv('SCHEDULER_STOP_TIMEOUT', '30')),
        )


class DeadlineScheduler:
    """
    Runs overdue detection and reminder dispatch on independent timers.

    run_once() executes the same scan logic synchronously and may be called
    whether or not the timers are running.
    """

    def __init__(self, store, dispatcher, clock, config: Optional[SchedulerConfig] = None):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.config = config or SchedulerConfig()
        self._state = SchedulerState.STOPPED
        self._state_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._stats: Dict[str, Any] = {
            "ticks": 0,
            "flagged_overdue": 0,
            "reminders_fired": 0,
            "failures": 0,
            "last_overdue_run": None,
            "last_reminder_run": None,
        }

    @property
    def state(self) -> SchedulerState:
        return self._state

    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    def start(self) -> bool:
        """Start both timer loops. Returns False if already running."""
        with self._state_lock:
            if self._state == SchedulerState.RUNNING:
                logger.warning("Deadline scheduler already running")
                return False
            self._stop_event.clear()
            self._threads = [
                threading.Thread(
                    target=self._loop,
                    args=("overdue", self.config.overdue_interval, self.check_overdue),
                    name="deadline-overdue",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._loop,
                    args=("reminders", self.config.reminder_interval, self.send_reminders),
                    name="deadline-reminders",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()
            self._state = SchedulerState.RUNNING

        logger.info(
            "Deadline scheduler started",
            extra={"extra_fields": {
                "overdue_interval": self.config.overdue_interval,
                "reminder_interval": self.config.reminder_interval,
            }}
        )
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Signal the loops to stop and wait for an in-flight tick to finish."""
        with self._state_lock:
            if self._state == SchedulerState.STOPPED:
                return False
            self._stop_event.set()
            threads, self._threads = self._threads, []
            timeout = self.config.stop_timeout if timeout is None else timeout
            for thread in threads:
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning(f"Scheduler thread {thread.name} did not stop within {timeout}s")
            self._state = SchedulerState.STOPPED

        logger.info("Deadline scheduler stopped")
        return True

    def run_once(self) -> Dict[str, ScanResult]:
        """Run both duties now, outside the timers."""
        logger.info("Manual deadline scan triggered")
        return {
            "overdue": self.check_overdue(),
            "reminders": self.send_reminders(),
        }

    def check_overdue(self) -> ScanResult:
        result = detect_overdue(self.store, self.dispatcher, self.clock)
        self._record(result, "flagged_overdue", "last_overdue_run")
        return result

    def send_reminders(self) -> ScanResult:
        result = dispatch_reminders(self.store, self.dispatcher, self.clock)
        self._record(result, "reminders_fired", "last_reminder_run")
        return result

    def statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["state"] = self._state.value
        stats["overdue_interval"] = self.config.overdue_interval
        stats["reminder_interval"] = self.config.reminder_interval
        stats["notifications"] = self.dispatcher.statistics()
        return stats

    def _record(self, result: ScanResult, counter: str, last_run: str) -> None:
        with self._stats_lock:
            self._stats["ticks"] += 1
            self._stats[counter] += result.acted
            self._stats["failures"] += result.failed
            self._stats[last_run] = result.to_dict()

    def _loop(self, name: str, interval: float, tick: Callable[[], ScanResult]) -> None:
        # First tick runs immediately; the wait doubles as the stop signal
        while not self._stop_event.is_set():
            try:
                tick()
            except Exception as e:
                with self._stats_lock:
                    self._stats["failures"] += 1
                logger.error(
                    f"Deadline scheduler {name} tick failed",
                    extra={"extra_fields": {"duty": name, "error": str(e)}},
                    exc_info=True
                )
            if self._stop_event.wait(interval):
                break
