"""
Failure Injection Tests.

Validates the circuit breaker guarding the route optimizer.
"""

import pytest
from tripmerge.app.core.reliability import CircuitBreaker, CircuitOpenError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def failing_func():
    raise ValueError("Boom")


async def working_func():
    return "ok"


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Test that circuit breaker opens after threshold failures."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=1)

    # Fail 1
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    # Fail 2 (Threshold reached)
    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"

    # Call 3 (Should be CircuitOpenError)
    with pytest.raises(CircuitOpenError):
        await cb.call(working_func)


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=1)

    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert await cb.call(working_func) == "ok"
    with pytest.raises(ValueError):
        await cb.call(failing_func)

    assert cb.state == "CLOSED"
    assert cb.failures == 1


@pytest.mark.asyncio
async def test_half_open_probe():
    """After the reset timeout one call goes through and decides the state."""
    clock = FakeClock()
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)

    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"

    # Probe fails: straight back to OPEN
    clock.now += 11
    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"

    # Probe succeeds: circuit closes
    clock.now += 11
    assert await cb.call(working_func) == "ok"
    assert cb.state == "CLOSED"
