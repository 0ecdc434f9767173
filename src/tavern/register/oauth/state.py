"""OAuth state tokens.

A state token protects the redirect round trip from the OAuth start page to
the provider and back. Each token authorizes at most one callback and only
within its lifetime.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
import secrets
from time import time
from typing import Callable, Dict

import redis.asyncio as redis

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class StateTokenStore(ABC):
    """Single-use anti-forgery tokens for the OAuth redirect."""

    def __init__(self, ttl: int = 300, clock: Clock = time) -> None:
        self.ttl = ttl
        self._clock = clock

    @abstractmethod
    async def issue(self) -> str:
        pass

    @abstractmethod
    async def consume(self, token: str) -> bool:
        """Return True exactly once for a live token, False otherwise."""
        pass

    @abstractmethod
    async def sweep(self) -> int:
        """Drop abandoned tokens, returning how many were removed."""
        pass


class MemoryStateTokenStore(StateTokenStore):
    def __init__(self, ttl: int = 300, clock: Clock = time) -> None:
        super().__init__(ttl, clock)
        self._tokens: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def issue(self) -> str:
        token = secrets.token_urlsafe(32)
        async with self._lock:
            self._tokens[token] = self._clock()
        return token

    async def consume(self, token: str) -> bool:
        async with self._lock:
            issued_at = self._tokens.get(token)
            if issued_at is None:
                return False
            if self._clock() - issued_at > self.ttl:
                return False
            del self._tokens[token]
            return True

    async def sweep(self) -> int:
        cutoff = self._clock() - self.ttl
        async with self._lock:
            expired = [t for t, issued_at in self._tokens.items() if issued_at < cutoff]
            for token in expired:
                del self._tokens[token]
        return len(expired)

    def __len__(self) -> int:
        return len(self._tokens)


class RedisStateTokenStore(StateTokenStore):
    """State tokens shared between instances through Redis.

    Keys carry a Redis expiry equal to the lifetime, so there is nothing to
    sweep. GETDEL makes consumption atomic across instances.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int = 300,
        clock: Clock = time,
        prefix: str = "oauth:state:",
    ) -> None:
        super().__init__(ttl, clock)
        self._redis = redis_client
        self._prefix = prefix

    async def issue(self) -> str:
        token = secrets.token_urlsafe(32)
        await self._redis.set(
            f"{self._prefix}{token}", str(self._clock()), ex=self.ttl, nx=True
        )
        return token

    async def consume(self, token: str) -> bool:
        issued_at = await self._redis.getdel(f"{self._prefix}{token}")
        if issued_at is None:
            return False
        return self._clock() - float(issued_at) <= self.ttl

    async def sweep(self) -> int:
        return 0
