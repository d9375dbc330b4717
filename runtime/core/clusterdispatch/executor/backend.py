"""Seam to the external execution layer.

The scheduler is told when a driver starts or ends; the only thing it asks of
the execution layer is to kill a launched driver.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class ExecutionBackend(ABC):
    @abstractmethod
    def kill_driver(self, submission_id: str, launch_handle: dict[str, str] | None) -> None:
        """Ask the execution layer to stop a launched driver.

        Completion is reported back through `on_terminated`.
        """


class LoggingExecutionBackend(ExecutionBackend):
    """Default backend when no execution layer is attached: records the request."""

    def kill_driver(self, submission_id: str, launch_handle: dict[str, str] | None) -> None:
        logger.info("driver_kill_requested", extra={"event": "driver_kill_requested", "submission_id": submission_id})
