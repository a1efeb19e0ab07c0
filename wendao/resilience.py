# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Retry and backoff helpers for completion-endpoint calls.

Only transport-level failures are retried here. A failed game turn is
never replayed by the orchestrator; it is reported to the player instead.
When the provider answers 429 with a ``Retry-After`` header, that wait is
used in place of the computed backoff, still capped at ``max_delay``.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Type, TypeVar

from wendao.logging import StructuredLogger, redact_secrets

logger = StructuredLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """How many times to retry a call and how long to wait in between.

    Attributes:
        max_retries: Extra attempts after the first one (0 disables retries)
        base_delay: Delay in seconds before the first retry, doubled each time
        max_delay: Upper bound for any single delay in seconds
        retryable_exceptions: Exception types worth retrying; every
            exception is retried when left unset
    """
    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable_exceptions: Optional[tuple[Type[Exception], ...]] = None

    def __post_init__(self):
        if not self.retryable_exceptions:
            self.retryable_exceptions = (Exception,)

    def calculate_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-indexed)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def is_retryable(self, exception: Exception) -> bool:
        return isinstance(exception, self.retryable_exceptions)


def retry_after_seconds(exception: Exception) -> Optional[float]:
    """Seconds from a ``Retry-After`` header on the error's HTTP response.

    openai's ``APIStatusError`` carries the ``httpx.Response``; other
    exceptions, missing headers and HTTP-date values yield None.
    """
    response = getattr(exception, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        seconds = float(headers.get("retry-after", ""))
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


async def with_retry(
    config: RetryConfig,
    operation_name: str,
    func: Callable[[], Awaitable[T]]
) -> T:
    """Await ``func()`` until it succeeds or retries run out.

    ``func`` is a zero-argument coroutine factory so each attempt gets a
    fresh coroutine. Non-retryable exceptions propagate immediately; the
    last retryable one propagates once ``max_retries`` is exhausted.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if not config.is_retryable(e):
                raise
            attempt += 1
            if attempt > config.max_retries:
                if config.max_retries:
                    logger.error(
                        f"{operation_name} failed after {config.max_retries} retries",
                        error_type=type(e).__name__,
                        error=redact_secrets(str(e)),
                        total_attempts=attempt
                    )
                raise

            hinted = retry_after_seconds(e)
            delay = min(hinted, config.max_delay) if hinted is not None else config.calculate_delay(attempt)
            logger.warning(
                f"{operation_name} failed, retrying in {delay:.2f}s",
                error_type=type(e).__name__,
                error=redact_secrets(str(e)),
                attempt=attempt,
                max_retries=config.max_retries,
                retry_after_hint=hinted
            )
            await asyncio.sleep(delay)
