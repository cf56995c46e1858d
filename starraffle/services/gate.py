"""
AdmissionGate: per-identity throttle in front of the ledger.

Exceeding ``points`` attempts within ``duration`` seconds blocks the identity for
``block_duration`` seconds. The gate only protects throughput; correctness never
depends on it. One implementation is built at startup by ``build_admission_gate``
and injected into the controller.
"""
import abc
import logging
import math
import time
from typing import Callable, Dict, Tuple

from starraffle.constants import k_gate_points, k_gate_block
from starraffle.core.errors import RateLimited

logger = logging.getLogger(__name__)


class AdmissionGate(abc.ABC):
    def __init__(self, points: int = 5, duration: int = 60, block_duration: int = 300):
        if points < 1 or duration < 1:
            raise ValueError("points and duration must be positive")
        self.points = points
        self.duration = duration
        self.block_duration = block_duration

    @abc.abstractmethod
    async def hit(self, key) -> None:
        """Count one attempt for ``key``; raise ``RateLimited`` when over the limit."""

    @abc.abstractmethod
    async def reset(self, key) -> None:
        """Forget counters and blocks for ``key``."""


class MemoryAdmissionGate(AdmissionGate):
    """Fixed-window counter local to this process."""

    def __init__(self, points: int = 5, duration: int = 60, block_duration: int = 300,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(points, duration, block_duration)
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._blocked: Dict[str, float] = {}
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        # at most once per window, drop counters and blocks nobody will look at again
        if now - self._last_sweep < self.duration:
            return
        self._last_sweep = now
        self._windows = {k: w for k, w in self._windows.items() if now - w[0] < self.duration}
        self._blocked = {k: until for k, until in self._blocked.items() if until > now}

    async def hit(self, key) -> None:
        key = str(key)
        now = self._clock()
        self._sweep(now)

        until = self._blocked.get(key)
        if until is not None:
            if now < until:
                raise RateLimited(math.ceil(until - now))
            del self._blocked[key]

        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.duration:
            started, count = now, 0
        count += 1
        self._windows[key] = (started, count)

        if count > self.points:
            self._blocked[key] = now + self.block_duration
            self._windows.pop(key, None)
            logger.warning("Admission gate blocked %s for %ss", key, self.block_duration)
            raise RateLimited(self.block_duration)

    async def reset(self, key) -> None:
        key = str(key)
        self._windows.pop(key, None)
        self._blocked.pop(key, None)


class RedisAdmissionGate(AdmissionGate):
    """Counter shared by every worker through Redis."""

    def __init__(self, client, points: int = 5, duration: int = 60, block_duration: int = 300,
                 prefix: str = "bid_rl"):
        super().__init__(points, duration, block_duration)
        self.client = client
        self.prefix = prefix

    async def hit(self, key) -> None:
        key = str(key)
        block_key = k_gate_block(self.prefix, key)
        ttl = await self.client.ttl(block_key)
        if ttl is not None and ttl > 0:
            raise RateLimited(ttl)

        points_key = k_gate_points(self.prefix, key)
        pipe = self.client.pipeline()
        pipe.incr(points_key)
        pipe.ttl(points_key)
        count, points_ttl = await pipe.execute()
        if points_ttl is None or points_ttl < 0:
            await self.client.expire(points_key, self.duration)

        if int(count) > self.points:
            pipe = self.client.pipeline()
            pipe.set(block_key, "1", ex=self.block_duration)
            pipe.delete(points_key)
            await pipe.execute()
            logger.warning("Admission gate blocked %s for %ss", key, self.block_duration)
            raise RateLimited(self.block_duration)

    async def reset(self, key) -> None:
        key = str(key)
        await self.client.delete(k_gate_points(self.prefix, key), k_gate_block(self.prefix, key))


def build_admission_gate(config) -> AdmissionGate:
    backend = config.ADMISSION_GATE_BACKEND
    kwargs = dict(
        points=config.BID_RATE_POINTS,
        duration=config.BID_RATE_DURATION,
        block_duration=config.BID_RATE_BLOCK,
    )
    if backend == "redis":
        from starraffle.db.redis import r
        logger.info("Admission gate: redis (%s/%ss)", config.BID_RATE_POINTS, config.BID_RATE_DURATION)
        return RedisAdmissionGate(r, **kwargs)
    if backend == "memory":
        logger.info("Admission gate: memory (%s/%ss)", config.BID_RATE_POINTS, config.BID_RATE_DURATION)
        return MemoryAdmissionGate(**kwargs)
    raise ValueError(f"Unknown ADMISSION_GATE_BACKEND: {backend}")
