import redis.asyncio as redis

from starraffle.core.config import settings

# connects lazily on first command
r = redis.from_url(settings.REDIS_URL, decode_responses=True)
