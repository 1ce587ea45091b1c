"""Unit tests for the per-webhook circuit breaker."""
import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from enrollment_webhooks.services.circuit_breaker import CircuitBreaker, CircuitState


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def breaker(server: fakeredis.FakeServer, clock: Clock):
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    yield CircuitBreaker(client, failure_threshold=5, open_duration_seconds=300, clock=clock)
    await client.aclose()


@pytest.mark.asyncio
async def test_new_circuit_is_closed(breaker: CircuitBreaker) -> None:
    snapshot = await breaker.snapshot("wh-1")

    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.consecutive_failures == 0
    assert await breaker.is_open("wh-1") is False


@pytest.mark.asyncio
async def test_opens_after_exactly_threshold_failures(breaker: CircuitBreaker) -> None:
    """Four failures keep the circuit closed; the fifth opens it."""
    for _ in range(4):
        await breaker.record_failure("wh-1")
    assert await breaker.is_open("wh-1") is False
    assert (await breaker.snapshot("wh-1")).consecutive_failures == 4

    await breaker.record_failure("wh-1")

    assert await breaker.is_open("wh-1") is True
    assert (await breaker.snapshot("wh-1")).state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker: CircuitBreaker) -> None:
    for _ in range(4):
        await breaker.record_failure("wh-1")

    await breaker.record_success("wh-1")
    await breaker.record_failure("wh-1")

    assert (await breaker.snapshot("wh-1")).consecutive_failures == 1
    assert await breaker.is_open("wh-1") is False


@pytest.mark.asyncio
async def test_open_circuit_permits_one_trial_after_open_duration(breaker: CircuitBreaker, clock: Clock) -> None:
    for _ in range(5):
        await breaker.record_failure("wh-1")

    clock.now = 299.0
    assert await breaker.is_open("wh-1") is True

    clock.now = 300.0
    assert await breaker.is_open("wh-1") is False
    assert (await breaker.snapshot("wh-1")).state == CircuitState.HALF_OPEN

    # The trial is taken; other callers keep seeing the circuit open
    assert await breaker.is_open("wh-1") is True


@pytest.mark.asyncio
async def test_half_open_success_closes_with_zero_failures(breaker: CircuitBreaker, clock: Clock) -> None:
    for _ in range(5):
        await breaker.record_failure("wh-1")
    clock.now = 301.0
    assert await breaker.is_open("wh-1") is False

    await breaker.record_success("wh-1")

    snapshot = await breaker.snapshot("wh-1")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.consecutive_failures == 0
    assert snapshot.opened_at is None
    assert await breaker.is_open("wh-1") is False


@pytest.mark.asyncio
async def test_half_open_failure_reopens_with_fresh_timer(breaker: CircuitBreaker, clock: Clock) -> None:
    for _ in range(5):
        await breaker.record_failure("wh-1")
    clock.now = 300.0
    assert await breaker.is_open("wh-1") is False

    await breaker.record_failure("wh-1")

    snapshot = await breaker.snapshot("wh-1")
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.opened_at == 300.0

    clock.now = 599.0
    assert await breaker.is_open("wh-1") is True
    clock.now = 600.0
    assert await breaker.is_open("wh-1") is False


@pytest.mark.asyncio
async def test_circuits_are_independent_per_webhook(breaker: CircuitBreaker) -> None:
    for _ in range(5):
        await breaker.record_failure("wh-1")

    assert await breaker.is_open("wh-1") is True
    assert await breaker.is_open("wh-2") is False


@pytest.mark.asyncio
async def test_state_is_shared_between_clients(server: fakeredis.FakeServer, clock: Clock) -> None:
    """Two breakers on the same Redis (API and worker processes) see one circuit."""
    api_client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    worker_client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    api = CircuitBreaker(api_client, failure_threshold=5, open_duration_seconds=300, clock=clock)
    worker = CircuitBreaker(worker_client, failure_threshold=5, open_duration_seconds=300, clock=clock)

    for _ in range(5):
        await worker.record_failure("wh-1")

    assert await api.is_open("wh-1") is True
    assert (await api.snapshot("wh-1")).consecutive_failures == 5

    clock.now = 300.0
    assert await api.is_open("wh-1") is False
    assert await worker.is_open("wh-1") is True

    await api_client.aclose()
    await worker_client.aclose()


@pytest.mark.asyncio
async def test_forget_and_reset_close_the_circuit(breaker: CircuitBreaker) -> None:
    for _ in range(5):
        await breaker.record_failure("wh-1")
        await breaker.record_failure("wh-2")

    await breaker.reset("wh-1")
    await breaker.forget("wh-2")

    assert await breaker.is_open("wh-1") is False
    assert (await breaker.snapshot("wh-2")).consecutive_failures == 0


@pytest.mark.asyncio
async def test_redis_outage_keeps_circuit_closed(server: fakeredis.FakeServer, clock: Clock) -> None:
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    breaker = CircuitBreaker(client, clock=clock)
    server.connected = False

    await breaker.record_failure("wh-1")
    await breaker.record_success("wh-1")

    assert await breaker.is_open("wh-1") is False
    with pytest.raises(RedisConnectionError):
        await breaker.snapshot("wh-1")
    await client.aclose()


def test_threshold_must_be_positive() -> None:
    with pytest.raises(ValueError):
        CircuitBreaker(fakeredis.FakeAsyncRedis(), failure_threshold=0)
