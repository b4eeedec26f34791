"""
Retry/backoff policy for research job attempts.
"""
from typing import Optional

MAX_RETRIES = 3
BASE_DELAY_SECONDS = 5


def backoff_delay(attempt: int) -> int:
    """Seconds to wait after failed attempt `attempt`: 10, 20, 40 for 1..3."""
    return (2 ** attempt) * BASE_DELAY_SECONDS


def next_retry_delay(attempt: int, limit: int = MAX_RETRIES) -> Optional[int]:
    """
    Delay before retrying after attempt number `attempt`, or None to give up.

    Failures raised while starting an attempt use the full limit; failures the
    provider reports afterwards retry only while attempts remain under the cap
    (limit=MAX_RETRIES - 1).
    """
    if 1 <= attempt <= limit:
        return backoff_delay(attempt)
    return None


def exhausted_message(error: str) -> str:
    return f"Failed after {MAX_RETRIES} attempts: {error}"
