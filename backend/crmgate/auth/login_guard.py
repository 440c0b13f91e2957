import logging

from crmgate.core.errors import RateLimited

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
WINDOW_SECONDS = 60


def login_key(username: str) -> str:
    return f"ratelimit:login:{username}"


class RateLimiter:
    """Caps login attempts per username inside a fixed window.

    Every attempt counts, successful or not. The counter lives in the shared
    cache so the limit holds across workers.
    """

    def __init__(self, cache, max_attempts: int = MAX_ATTEMPTS, window_seconds: int = WINDOW_SECONDS):
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    def hit(self, username: str) -> int:
        attempts = self.cache.increment_and_expire(login_key(username), self.window_seconds)
        if attempts > self.max_attempts:
            logger.warning("Rate limit exceeded for %s (%s attempts)", username, attempts)
            raise RateLimited()
        return attempts
