# tasks/__init__.py
from tasks.scheduled_sync import ScheduledSync

__all__ = ["ScheduledSync"]
