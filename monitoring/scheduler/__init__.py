"""Scheduler module driving periodic provider checks."""

from .poller import Poller, PollerService

__all__ = ["Poller", "PollerService"]
