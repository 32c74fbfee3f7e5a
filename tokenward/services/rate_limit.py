# tokenward/services/rate_limit.py
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from loguru import logger

from tokenward.core.config import settings
from tokenward.core.exceptions import RateLimited


class LoginRateLimiter:
    """Throttles authentication attempts per contact identifier (or provider uid)."""

    namespace = "login"

    def __init__(self, rate: str, enabled: bool = True):
        self.item = parse(rate)
        self.enabled = enabled
        self._limiter = MovingWindowRateLimiter(MemoryStorage())

    def check(self, identifier: str) -> None:
        if not self.enabled or not identifier:
            return
        key = identifier.strip().lower()
        if not self._limiter.hit(self.item, self.namespace, key):
            logger.warning(f"Login rate limit exceeded for identifier {key!r}")
            raise RateLimited()

    def reset(self) -> None:
        self._limiter.storage.reset()


login_rate_limiter = LoginRateLimiter(settings.LOGIN_RATE_LIMIT, enabled=settings.RATE_LIMIT_ENABLED)
