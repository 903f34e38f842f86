"""Job executor contract for tapfarm.

This module defines the abstract :class:`JobExecutor` that the dispatcher
calls once per attempt, and the :class:`ExecutionFailure` exception executors
raise for domain failures.

An executor owns whatever heavyweight resource it needs for one attempt
(typically a full browser) and must release it before returning.  The
dispatcher only counts concurrent executions; it never sees the resource.
"""

import logging
from typing import Optional

from core.models import Outcome

logger = logging.getLogger(__name__)


class ExecutionFailure(Exception):
    """Domain failure during an attempt (missing element, bad page, timeout).

    Attributes:
        reason: Short human-readable reason, reported in the outcome.
        metric: Partial metric gathered before the failure, if any.
    """

    def __init__(self, reason: str, metric: Optional[float] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.metric = metric


class JobExecutor:
    """Abstract base class for all job executors.

    Subclasses **must** implement ``async execute(key, context, deadline)``
    and may override ``close()`` to release shared state at shutdown.

    ``execute`` either returns an :class:`Outcome` (success or a reported
    failure) or raises.  Enforcing *deadline* (a Unix timestamp) is the
    executor's responsibility; the dispatcher only adds a safety net.
    """

    name = "base"

    async def execute(self, key: str, context: str, deadline: float) -> Outcome:
        raise NotImplementedError

    async def close(self) -> None:
        """Release shared resources.  Default: nothing to do."""
        return None
