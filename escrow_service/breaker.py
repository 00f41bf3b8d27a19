import time

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker guarding payment gateway calls.

    State lives in Redis so every escrow-service replica sees the same view of
    the gateway:
      - CLOSED: calls go through; failures inside failure_window are counted
      - OPEN: calls are refused until reset_timeout_seconds have passed
      - HALF_OPEN: one probe call is let through; its outcome closes or reopens
    """

    def __init__(
        self,
        name: str,
        redis_client,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 30,
        failure_window_seconds: int = 60,
        clock=time.time,
    ):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds
        self.clock = clock

        prefix = f"escrow:breaker:{name}"
        self.state_key = f"{prefix}:state"
        self.failures_key = f"{prefix}:failures"
        self.opened_at_key = f"{prefix}:opened_at"

    async def state(self) -> str:
        return await self.redis.get(self.state_key) or CLOSED

    async def allow_request(self) -> None:
        state = await self.state()
        if state != OPEN:
            return

        opened_at = await self.redis.get(self.opened_at_key)
        if opened_at is None:
            await self.close()
            return

        if self.clock() - float(opened_at) < self.reset_timeout_seconds:
            raise CircuitBreakerOpen(f"Payment gateway circuit '{self.name}' is open")

        await self.redis.set(self.state_key, HALF_OPEN)

    async def record_success(self) -> None:
        if await self.state() != CLOSED or await self.redis.exists(self.failures_key):
            await self.close()

    async def record_failure(self) -> None:
        if await self.state() == HALF_OPEN:
            await self.open()
            return

        failures = await self.redis.incr(self.failures_key)
        if failures == 1:
            await self.redis.expire(self.failures_key, self.failure_window_seconds)
        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        pipe = self.redis.pipeline()
        pipe.set(self.state_key, OPEN, ex=ttl)
        pipe.set(self.opened_at_key, str(self.clock()), ex=ttl)
        pipe.delete(self.failures_key)
        await pipe.execute()

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.delete(self.state_key)
        pipe.delete(self.failures_key)
        pipe.delete(self.opened_at_key)
        await pipe.execute()

    async def status(self) -> dict:
        failures = await self.redis.get(self.failures_key)
        return {
            "name": self.name,
            "state": await self.state(),
            "failures": int(failures or 0),
        }
