import redis.asyncio as redis

from config.constants import REDIS_RATE_LIMIT_PREFIX
from utils.exceptions import RateLimited
from utils.logger import app_logger


class RateLimiter:
    """
    Fixed-window request counter kept in Redis.

    Used to stop a single account from burning through provider numbers by
    hammering the rental endpoint.
    """

    def __init__(self, redis_client: redis.Redis, limit: int = 5, period: int = 60, scope: str = "rental"):
        """
        :param limit: The maximum number of requests allowed.
        :param period: The time period in seconds.
        """
        self.redis = redis_client
        self.limit = limit
        self.period = period
        self.scope = scope

    def _key(self, subject) -> str:
        return f"{REDIS_RATE_LIMIT_PREFIX}:{self.scope}:{subject}"

    async def hit(self, subject) -> int:
        """
        Count one request for ``subject``.

        :return: The number of requests in the current window.
        :raises RateLimited: If the limit for the window is exceeded.
        """
        key = self._key(subject)

        # INCR and EXPIRE go out as a single transaction.
        async with self.redis.pipeline() as pipe:
            pipe.incr(key)
            pipe.expire(key, self.period)
            requests_count, _ = await pipe.execute()

        if int(requests_count) > self.limit:
            app_logger.warning(
                f"Rate limit exceeded for {self.scope} {subject}. "
                f"Count: {requests_count} in {self.period}s."
            )
            raise RateLimited(f"At most {self.limit} {self.scope} requests per {self.period}s")

        app_logger.debug(f"{self.scope} {subject} request count: {requests_count}")
        return int(requests_count)
