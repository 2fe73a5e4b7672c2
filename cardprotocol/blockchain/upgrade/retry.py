# MIT License
# Copyright (c) 2025 Hashborn

"""
Bounded retry for remote operations.
"""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from ...protocol.config.params import MAX_ATTEMPTS
from ...protocol.types.common import TransientRPCError
from ..observability.metrics import rpc_retries_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryingExecutor:
    """
    Runs an operation, retrying only transient failures.

    Any error outside ``transient`` propagates on its first occurrence. When
    every attempt fails transiently the last error propagates unmodified.
    Between attempts the executor sleeps ``backoff * attempt`` seconds.
    """

    def __init__(self,
                 max_attempts: int = MAX_ATTEMPTS,
                 backoff: float = 0.0,
                 transient: Tuple[Type[BaseException], ...] = (TransientRPCError,),
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.transient = transient
        self.sleep = sleep

    def run(self, operation: Callable[[], T], max_attempts: Optional[int] = None,
            description: Optional[str] = None) -> T:
        """
        Execute ``operation`` with bounded retries.

        Args:
            operation: Zero-argument callable
            max_attempts: Overrides the executor default for this call
            description: Label used in logs and metrics

        Returns:
            Whatever ``operation`` returns

        Raises:
            The last transient error after ``max_attempts`` failures, or any
            non-transient error immediately
        """
        attempts_allowed = max_attempts or self.max_attempts
        label = description or getattr(operation, "__name__", "operation")

        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except self.transient as e:
                logger.warning(f"{label}: received {e}, attempt {attempt} of {attempts_allowed}")
                if attempt >= attempts_allowed:
                    logger.error(f"{label}: giving up after {attempt} attempts")
                    raise
                rpc_retries_total.labels(operation=label).inc()
                delay = self.backoff * attempt
                if delay > 0:
                    self.sleep(delay)

    def run_and_wait(self, operation: Callable[[], T], condition: Callable[[], bool],
                     max_attempts: Optional[int] = None, description: Optional[str] = None) -> T:
        """
        Run ``operation`` then poll until ``condition`` holds.

        Used after sending a transaction to wait until the sender's nonce has
        moved, so the next transaction is not built against a stale nonce.
        Polling shares the same bounded policy.
        """
        label = description or getattr(operation, "__name__", "operation")
        result = self.run(operation, max_attempts=max_attempts, description=label)

        def check():
            if not condition():
                raise TransientRPCError(f"{label}: post-condition not met yet")

        self.run(check, max_attempts=max_attempts, description=f"{label} (wait)")
        return result


def nonce_increased(chain, address: str) -> Callable[[], bool]:
    """Condition that holds once ``address`` has sent another transaction."""
    start = chain.get_nonce(address)
    return lambda: chain.get_nonce(address) > start
