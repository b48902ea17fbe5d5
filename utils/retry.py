import random
from datetime import timedelta


class RetryManager:
    """
    Manages retry logic with exponential backoff and optional jitter.
    Attempt 1 waits base_delay, attempt 2 waits 2x, attempt 3 waits 4x ...
    capped at max_delay.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 60.0,
        max_delay: float = 3600.0,
        jitter: float = 0.0,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @staticmethod
    def is_transient_error(exception: Exception) -> bool:
        """
        Determines if an error is transient and worth retrying.
        """
        if isinstance(exception, (TimeoutError, ConnectionError)):
            return True

        error_msg = str(exception).lower()
        transient_keywords = [
            "timeout",
            "timed out",
            "connection",
            "rate limit",
            "temporarily unavailable",
            "429",
            "500", "502", "503", "504"
        ]

        return any(keyword in error_msg for keyword in transient_keywords)

    def should_retry(self, attempts: int) -> bool:
        """`attempts` is the number of attempts already made, including the failed one."""
        return attempts < self.max_attempts

    def backoff(self, attempt: int) -> timedelta:
        """Delay before retry number `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** (max(attempt, 1) - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        return timedelta(seconds=delay)
