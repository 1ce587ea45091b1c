"""Per-webhook circuit breaker backed by Redis.

State machine, independent per webhook id::

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(open_duration_seconds elapsed)--> HALF_OPEN
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN (opened_at reset)

Each circuit is a hash ``circuit:<webhook_id>`` holding ``failures`` and
``opened_at``. The state is derived from ``opened_at`` when the circuit is
consulted, so API and worker processes see the same circuit and there is
no background reset job. The single HALF_OPEN trial is claimed with
``SET NX`` on ``circuit:<webhook_id>:trial``.
"""
import enum
import math
import time
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from enrollment_webhooks.cache import cache_key
from enrollment_webhooks.metrics import webhook_circuit_opened_total

logger = structlog.get_logger(__name__)


class CircuitState(str, enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of one circuit."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None


class CircuitBreaker:
    """
    Tracks delivery failures per webhook and suspends delivery to failing endpoints.

    Timestamps come from ``clock`` (epoch seconds by default, shared by every
    process) so tests can move time forward without sleeping. Redis errors
    are logged and the circuit is treated as closed.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        failure_threshold: int = 5,
        open_duration_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "circuit",
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.open_duration_seconds = open_duration_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    async def is_open(self, webhook_id: object) -> bool:
        """
        Whether delivery to this webhook must be skipped.

        An elapsed OPEN circuit lets exactly one caller through as the
        HALF_OPEN trial; everyone else keeps seeing it open until the trial
        is recorded or the trial claim expires.
        """
        key = str(webhook_id)
        try:
            circuit = await self.snapshot(key)
            if circuit.state != CircuitState.HALF_OPEN:
                return circuit.state == CircuitState.OPEN

            claimed = await self.redis.set(
                self._trial_key(key),
                "1",
                nx=True,
                ex=max(1, math.ceil(self.open_duration_seconds)),
            )
        except RedisError as e:
            logger.error("circuit_check_failed", webhook_id=key, error=str(e))
            return False

        if claimed:
            logger.info("circuit_half_open", webhook_id=key)
        return not claimed

    async def record_success(self, webhook_id: object) -> None:
        """Close the circuit and reset the failure counter."""
        key = str(webhook_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hget(self._key(key), "opened_at")
                pipe.delete(self._key(key), self._trial_key(key))
                opened_at, _ = await pipe.execute()
        except RedisError as e:
            logger.error("circuit_update_failed", webhook_id=key, outcome="success", error=str(e))
            return

        if opened_at is not None:
            logger.info("circuit_closed", webhook_id=key)

    async def record_failure(self, webhook_id: object) -> None:
        """Count a failure, opening the circuit at the threshold or on a failed trial."""
        key = str(webhook_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hincrby(self._key(key), "failures", 1)
                pipe.hget(self._key(key), "opened_at")
                failures, opened_at = await pipe.execute()

            circuit = self._derive(failures, opened_at)
            opened = circuit.state == CircuitState.HALF_OPEN or (
                circuit.state == CircuitState.CLOSED and failures >= self.failure_threshold
            )
            if opened:
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._key(key), "opened_at", repr(self._clock()))
                    pipe.delete(self._trial_key(key))
                    await pipe.execute()
        except RedisError as e:
            logger.error("circuit_update_failed", webhook_id=key, outcome="failure", error=str(e))
            return

        if opened:
            webhook_circuit_opened_total.inc()
            logger.warning(
                "circuit_opened",
                webhook_id=key,
                consecutive_failures=failures,
                open_seconds=self.open_duration_seconds,
            )

    async def snapshot(self, webhook_id: object) -> CircuitSnapshot:
        """Current state, with an elapsed OPEN circuit reported as HALF_OPEN."""
        fields = await self.redis.hgetall(self._key(str(webhook_id)))
        return self._derive(fields.get("failures", 0), fields.get("opened_at"))

    async def reset(self, webhook_id: object) -> None:
        """Force the circuit back to CLOSED."""
        key = str(webhook_id)
        await self.redis.delete(self._key(key), self._trial_key(key))

    async def forget(self, webhook_id: object) -> None:
        """Drop all state for a webhook (used after deletion)."""
        await self.reset(webhook_id)

    def _derive(self, failures: int | str, opened_at: str | None) -> CircuitSnapshot:
        if opened_at is None:
            return CircuitSnapshot(CircuitState.CLOSED, int(failures))

        opened = float(opened_at)
        elapsed = self._clock() - opened
        state = CircuitState.HALF_OPEN if elapsed >= self.open_duration_seconds else CircuitState.OPEN
        return CircuitSnapshot(state, int(failures), opened)

    def _key(self, webhook_id: str) -> str:
        return cache_key(self.key_prefix, webhook_id)

    def _trial_key(self, webhook_id: str) -> str:
        return cache_key(self.key_prefix, webhook_id, "trial")
