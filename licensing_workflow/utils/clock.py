# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Clock abstractions. Workflow code never calls datetime.now() directly.
"""

import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


DEFAULT_TIMEZONE = os.getenv('WORKFLOW_TIMEZONE', 'Asia/Bangkok')


class Clock:
    """Supplies the current time."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock in the configured timezone."""

    def __init__(self, tz_name: Optional[str] = None):
        self.tz = ZoneInfo(tz_name or DEFAULT_TIMEZONE)

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock(Clock):
    """Deterministic clock for tests and replays."""

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = moment

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from kwargs."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
