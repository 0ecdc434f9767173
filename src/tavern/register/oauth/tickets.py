"""Authorization tickets.

A ticket carries a verified third-party identity from the OAuth callback to
the registration form submission. The client only ever holds the opaque
ticket id; the identity itself stays on the server, so it cannot be forged
by editing request parameters.

A ticket is valid while it exists, is unused and has not expired. Every read
checks all three conditions together.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
import math
import secrets
from time import time
from typing import Callable, Dict, Optional

from pydantic import BaseModel
import redis.asyncio as redis

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TicketClaim(BaseModel):
    """The identity a ticket vouches for."""

    provider: str
    provider_id: str
    display_name: str = ""


class AuthorizationTicket(BaseModel):
    id: str
    provider: str
    provider_id: str
    display_name: str = ""
    created_at: float
    expires_at: float
    used: bool = False

    def is_live(self, now: float) -> bool:
        return not self.used and now <= self.expires_at

    def claim(self) -> TicketClaim:
        return TicketClaim(
            provider=self.provider,
            provider_id=self.provider_id,
            display_name=self.display_name,
        )


class AuthorizationTicketStore(ABC):
    def __init__(self, ttl: int = 300, clock: Clock = time) -> None:
        self.ttl = ttl
        self._clock = clock

    def _new_ticket(self, claim: TicketClaim) -> AuthorizationTicket:
        now = self._clock()
        return AuthorizationTicket(
            id=secrets.token_urlsafe(32),
            provider=claim.provider,
            provider_id=claim.provider_id,
            display_name=claim.display_name,
            created_at=now,
            expires_at=now + self.ttl,
        )

    @abstractmethod
    async def create(self, claim: TicketClaim) -> str:
        pass

    @abstractmethod
    async def peek(self, ticket_id: str) -> Optional[TicketClaim]:
        """Return the claim of a live ticket without changing it."""
        pass

    @abstractmethod
    async def reserve(self, ticket_id: str) -> Optional[TicketClaim]:
        """Take a live ticket out of circulation and return its claim.

        At most one caller gets the claim of a ticket. A reserved ticket is
        invisible to ``peek`` until it is released, and is removed for good
        by ``finalize``.
        """
        pass

    @abstractmethod
    async def release(self, ticket_id: str) -> None:
        """Return a reserved ticket to circulation if it has not expired."""
        pass

    @abstractmethod
    async def finalize(self, ticket_id: str) -> None:
        """Mark the ticket used and remove it. A second call does nothing."""
        pass

    @abstractmethod
    async def cancel(self, ticket_id: str) -> bool:
        """Invalidate a ticket, returning whether a live one was removed."""
        pass

    @abstractmethod
    async def sweep(self) -> int:
        pass


class MemoryAuthorizationTicketStore(AuthorizationTicketStore):
    def __init__(self, ttl: int = 300, clock: Clock = time) -> None:
        super().__init__(ttl, clock)
        self._tickets: Dict[str, AuthorizationTicket] = {}
        self._reserved: Dict[str, AuthorizationTicket] = {}
        self._lock = asyncio.Lock()

    async def create(self, claim: TicketClaim) -> str:
        ticket = self._new_ticket(claim)
        async with self._lock:
            self._tickets[ticket.id] = ticket
        return ticket.id

    async def peek(self, ticket_id: str) -> Optional[TicketClaim]:
        async with self._lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None or not ticket.is_live(self._clock()):
                return None
            return ticket.claim()

    async def reserve(self, ticket_id: str) -> Optional[TicketClaim]:
        async with self._lock:
            ticket = self._tickets.pop(ticket_id, None)
            if ticket is None or not ticket.is_live(self._clock()):
                return None
            self._reserved[ticket_id] = ticket
            return ticket.claim()

    async def release(self, ticket_id: str) -> None:
        async with self._lock:
            ticket = self._reserved.pop(ticket_id, None)
            if ticket is not None and ticket.is_live(self._clock()):
                self._tickets[ticket_id] = ticket

    async def finalize(self, ticket_id: str) -> None:
        async with self._lock:
            for tickets in (self._tickets, self._reserved):
                ticket = tickets.pop(ticket_id, None)
                if ticket is not None:
                    ticket.used = True

    async def cancel(self, ticket_id: str) -> bool:
        now = self._clock()
        async with self._lock:
            cancelled = False
            for tickets in (self._tickets, self._reserved):
                ticket = tickets.pop(ticket_id, None)
                if ticket is not None and ticket.is_live(now):
                    cancelled = True
            return cancelled

    async def sweep(self) -> int:
        now = self._clock()
        removed = 0
        async with self._lock:
            for tickets in (self._tickets, self._reserved):
                stale = [
                    ticket_id
                    for ticket_id, ticket in tickets.items()
                    if not ticket.is_live(now)
                ]
                for ticket_id in stale:
                    del tickets[ticket_id]
                removed += len(stale)
        return removed

    def __len__(self) -> int:
        return len(self._tickets)


class RedisAuthorizationTicketStore(AuthorizationTicketStore):
    """Tickets shared between instances through Redis.

    Finalized and cancelled tickets are deleted outright, and Redis expires
    the rest, so there is nothing to sweep. Reserving moves the ticket with
    GETDEL to a separate key, so only one instance can hold it.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int = 300,
        clock: Clock = time,
        prefix: str = "oauth:ticket:",
    ) -> None:
        super().__init__(ttl, clock)
        self._redis = redis_client
        self._prefix = prefix

    async def create(self, claim: TicketClaim) -> str:
        ticket = self._new_ticket(claim)
        await self._redis.set(
            f"{self._prefix}{ticket.id}", ticket.model_dump_json(), ex=self.ttl
        )
        return ticket.id

    async def peek(self, ticket_id: str) -> Optional[TicketClaim]:
        value = await self._redis.get(f"{self._prefix}{ticket_id}")
        if value is None:
            return None
        ticket = AuthorizationTicket.model_validate_json(value)
        if not ticket.is_live(self._clock()):
            return None
        return ticket.claim()

    def _remaining(self, ticket: AuthorizationTicket) -> int:
        return max(1, math.ceil(ticket.expires_at - self._clock()))

    async def reserve(self, ticket_id: str) -> Optional[TicketClaim]:
        value = await self._redis.getdel(f"{self._prefix}{ticket_id}")
        if value is None:
            return None
        ticket = AuthorizationTicket.model_validate_json(value)
        if not ticket.is_live(self._clock()):
            return None
        await self._redis.set(
            f"{self._prefix}reserved:{ticket_id}", value, ex=self._remaining(ticket)
        )
        return ticket.claim()

    async def release(self, ticket_id: str) -> None:
        value = await self._redis.getdel(f"{self._prefix}reserved:{ticket_id}")
        if value is None:
            return
        ticket = AuthorizationTicket.model_validate_json(value)
        if ticket.is_live(self._clock()):
            await self._redis.set(
                f"{self._prefix}{ticket_id}", value, ex=self._remaining(ticket)
            )

    async def finalize(self, ticket_id: str) -> None:
        await self._redis.delete(
            f"{self._prefix}{ticket_id}", f"{self._prefix}reserved:{ticket_id}"
        )

    async def cancel(self, ticket_id: str) -> bool:
        cancelled = False
        for key in (f"{self._prefix}{ticket_id}", f"{self._prefix}reserved:{ticket_id}"):
            value = await self._redis.getdel(key)
            if value is None:
                continue
            ticket = AuthorizationTicket.model_validate_json(value)
            if ticket.is_live(self._clock()):
                cancelled = True
        return cancelled

    async def sweep(self) -> int:
        return 0
