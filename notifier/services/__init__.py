"""
Core services for the notifier.

This package contains the bootstrap gate, routing rules, reminder scheduler
and push delivery, plus the service that wires them together.
"""

from .bootstrap_gate import BootstrapGate, WatchedNode
from .dispatcher import NotificationDispatcher
from .mutation_feed import InMemoryMutationFeed, MutationFeed
from .notification_service import NotificationService
from .recipients import RecipientResolver
from .reminders import DEFAULT_THRESHOLDS, ReminderScheduler
from .routers import DomainRouters
from .runtime import Result, TaskSupervisor

__all__ = [
    "BootstrapGate",
    "WatchedNode",
    "NotificationDispatcher",
    "InMemoryMutationFeed",
    "MutationFeed",
    "NotificationService",
    "RecipientResolver",
    "DEFAULT_THRESHOLDS",
    "ReminderScheduler",
    "DomainRouters",
    "Result",
    "TaskSupervisor",
]
