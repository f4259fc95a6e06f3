"""Drive backend operations to a terminal status.

Issues a backend call, then polls with bounded exponential backoff until
the operation succeeds, fails, or exceeds its deadline. Failures the backend
flags as transient are retried by re-issuing the call, up to a fixed number
of attempts, before they surface.
"""

import logging
import time
from typing import Callable, Optional

from common import backoff_intervals
from errors import ProvisioningError, ProvisioningTimeoutError
from stack_opr.backend import Operation, OperationStatus, ProvisioningBackend

logger = logging.getLogger(__name__)


class OperationPoller:
    """Runs one backend operation to completion.

    Attributes:
        backend: Backend whose operations are polled
        interval: First poll delay in seconds
        max_interval: Cap for the poll delay
        timeout: Deadline per attempt in seconds
        transient_retries: Extra attempts for transient failures
    """

    def __init__(
        self,
        backend: ProvisioningBackend,
        interval: float = 1.0,
        max_interval: float = 30.0,
        timeout: float = 1800.0,
        transient_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.interval = interval
        self.max_interval = max_interval
        self.timeout = timeout
        self.transient_retries = transient_retries
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, backend: ProvisioningBackend, config, **kwargs) -> 'OperationPoller':
        return cls(
            backend,
            interval=config.poll_interval,
            max_interval=config.poll_max_interval,
            timeout=config.operation_timeout,
            transient_retries=config.transient_retries,
            **kwargs,
        )

    def run(self, issue: Callable[[], Operation], logical_id: Optional[str] = None) -> Operation:
        """Issue an operation and wait for it to succeed.

        Args:
            issue: Callable starting the backend operation
            logical_id: Resource name used in errors and logs

        Returns:
            The SUCCEEDED operation

        Raises:
            ProvisioningError: Permanent failure, or transient retries exhausted
            ProvisioningTimeoutError: No terminal status before the deadline
        """
        delays = backoff_intervals(self.interval, self.max_interval)
        attempt = 0
        while True:
            attempt += 1
            try:
                operation = self._wait(issue(), logical_id)
            except ProvisioningTimeoutError:
                raise
            except ProvisioningError as e:
                if e.logical_id is None:
                    e.logical_id = logical_id
                if not e.transient or attempt > self.transient_retries:
                    raise
                delay = next(delays)
                logger.warning(
                    f"Transient failure for '{logical_id}' (attempt {attempt}): {e.message}; "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                continue
            return operation

    def _wait(self, operation: Operation, logical_id: Optional[str]) -> Operation:
        deadline = self._clock() + self.timeout
        delays = backoff_intervals(self.interval, self.max_interval)
        while True:
            if operation.status is OperationStatus.SUCCEEDED:
                return operation
            if operation.status is OperationStatus.FAILED:
                raise ProvisioningError(
                    f"{operation.action} {operation.kind} failed: {operation.message or 'no detail'}",
                    logical_id=logical_id,
                    transient=operation.transient,
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ProvisioningTimeoutError(
                    f"{operation.action} {operation.kind} did not finish within {self.timeout:.0f}s "
                    f"(operation {operation.operation_id}, last status {operation.status.value})",
                    logical_id=logical_id,
                )
            delay = min(next(delays), remaining)
            logger.debug(f"Operation {operation.operation_id} {operation.status.value}, "
                         f"polling again in {delay:.2f}s")
            self._sleep(delay)

            try:
                operation = self.backend.poll(operation)
            except ProvisioningError as e:
                if not e.transient:
                    raise
                logger.debug(f"Transient poll error for {operation.operation_id}: {e.message}")
