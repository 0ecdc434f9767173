import asyncio


class HealthGauge:
    """
    A makeshift health check.

    The gauge is raised whenever a request fails with an unexpected error (an
    actual fault and not a user mistake such as an expired ticket) and decays
    by one on every tick of the health task. A burst of faults pushes it past
    the threshold and the readiness probe starts failing.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    async def womp(self, d=1) -> int:
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
