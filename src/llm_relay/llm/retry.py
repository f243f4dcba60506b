"""Cold-start retry policy for streamed completions.

Local servers that are still loading a model can answer the first request
with a terminal record and no content.  The policy decides, on each
terminal chunk, whether the stream succeeded, should be re-issued, or has
failed.  It holds no I/O; the dispatcher drives it from a bounded loop.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from llm_relay.errors import StreamIntegrityError

_logger = logging.getLogger(__name__)

MAX_RETRIES = 2


class RetryState(enum.Enum):
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RetryDecision(enum.Enum):
    """What the dispatcher should do with a terminal chunk."""

    ACCEPT = "accept"
    RETRY = "retry"
    FAIL = "fail"


@dataclass
class RetryPolicy:
    """Bounded re-attempt state machine.

    Parameters
    ----------
    max_retries:
        Re-issues allowed after the first attempt.  ``0`` disables retries
        for backends without cold-start ambiguity.
    """

    max_retries: int = MAX_RETRIES
    attempt: int = 0
    state: RetryState = RetryState.ATTEMPTING

    @classmethod
    def for_backend(cls, cold_start_retry: bool) -> RetryPolicy:
        return cls(max_retries=MAX_RETRIES if cold_start_retry else 0)

    @property
    def total_attempts(self) -> int:
        return self.attempt + 1

    def on_terminal(self, content: str, chunk_count: int) -> RetryDecision:
        """Advance on a terminal chunk.

        *content* is what this attempt accumulated, *chunk_count* the number
        of non-terminal chunks it produced before the terminal one.
        """
        if self.state is not RetryState.ATTEMPTING:
            raise RuntimeError(f"Retry policy already {self.state.value}")

        if content:
            self.state = RetryState.SUCCEEDED
            return RetryDecision.ACCEPT

        if chunk_count == 0 and self.attempt < self.max_retries:
            self.attempt += 1
            _logger.info(
                "Stream ended empty, retry %d/%d", self.attempt, self.max_retries,
            )
            return RetryDecision.RETRY

        self.state = RetryState.FAILED
        return RetryDecision.FAIL

    def integrity_error(
        self, chunk_count: int, *, provider: str | None = None,
    ) -> StreamIntegrityError:
        return StreamIntegrityError(
            "Stream ended without content",
            attempts=self.total_attempts,
            chunk_count=chunk_count,
            provider=provider,
        )
