# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Services package - Storage, notification delivery and scheduling.
"""

from .store import EntityStore, InMemoryEntityStore
from .notifications import NotificationSink, NotificationDispatcher, NotificationEvent, LoggingNotificationSink
from .scheduler import DeadlineScheduler, SchedulerConfig

__all__ = [
    "EntityStore",
    "InMemoryEntityStore",
    "NotificationSink",
    "NotificationDispatcher",
    "NotificationEvent",
    "LoggingNotificationSink",
    "DeadlineScheduler",
    "SchedulerConfig"
]
