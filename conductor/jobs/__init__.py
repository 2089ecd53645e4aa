"""작업 구현."""

from .base import BaseJob
from .commands import CommandJob, DispatchLatch
from .firmware import FirmwareUpdateJob

__all__ = ["BaseJob", "CommandJob", "DispatchLatch", "FirmwareUpdateJob"]
