"""Identity binding store.

Maps a third-party identity (provider, provider_id) to the handle of the
account created for it on the remote account service. Uniqueness of both
sides is enforced by the database, not re-checked in application code.
"""

from datetime import datetime, timezone
import logging
from typing import Optional

from sqlalchemy import DateTime, Index, String, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from tavern.register.errors import BindingConflict
from tavern.register.model.base import Base, guidpk, str64, str512

logger = logging.getLogger(__name__)


class IdentityBinding(Base):
    """Durable binding between a third-party identity and a remote handle.

    A row is written when an account is successfully created for an
    identity. It is never deleted by the registration flow.
    """

    __tablename__ = "oauth_bindings"

    guid: Mapped[guidpk]
    provider: Mapped[str64]
    provider_id: Mapped[str512]
    remote_handle: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_oauth_bindings_identity", "provider", "provider_id", unique=True),
        Index("idx_oauth_bindings_remote_handle", "remote_handle", unique=True),
    )


def upsert_binding_stmt(
    dialect_name: str,
    provider: str,
    provider_id: str,
    remote_handle: str,
    created_at: datetime,
):
    """Create an insert-or-update statement for a binding.

    The update branch only fires while the existing row has no handle yet, or
    already carries the same handle. An identity bound to a different handle
    produces no returned row.
    """
    insert = postgresql.insert if dialect_name == "postgresql" else sqlite.insert

    stmt = insert(IdentityBinding).values(
        [
            {
                "guid": str(ULID()),
                "provider": provider,
                "provider_id": provider_id,
                "remote_handle": remote_handle,
                "created_at": created_at,
            }
        ]
    )
    return stmt.on_conflict_do_update(
        index_elements=["provider", "provider_id"],
        set_={"remote_handle": stmt.excluded.remote_handle},
        where=or_(
            IdentityBinding.remote_handle.is_(None),
            IdentityBinding.remote_handle == stmt.excluded.remote_handle,
        ),
    ).returning(IdentityBinding.guid)


async def find_binding(
    database_session_maker: async_sessionmaker[AsyncSession],
    provider: str,
    provider_id: str,
) -> Optional[IdentityBinding]:
    async with database_session_maker() as database_session:
        async with database_session.begin():
            stmt = select(IdentityBinding).where(
                IdentityBinding.provider == provider,
                IdentityBinding.provider_id == provider_id,
            )
            return (await database_session.scalars(stmt)).first()


async def upsert_binding(
    database_session_maker: async_sessionmaker[AsyncSession],
    provider: str,
    provider_id: str,
    remote_handle: str,
) -> str:
    """Bind an identity to a remote handle, returning the binding guid.

    Raises:
        BindingConflict: The identity is bound to another handle, or the
            handle is bound to another identity.
    """
    now = datetime.now(timezone.utc)
    async with database_session_maker() as database_session:
        dialect_name = database_session.get_bind().dialect.name
        stmt = upsert_binding_stmt(
            dialect_name, provider, provider_id, remote_handle, now
        )
        try:
            async with database_session.begin():
                guid = (await database_session.execute(stmt)).scalars().first()
        except IntegrityError as e:
            logger.warning(
                "Remote handle %s is already bound to another identity", remote_handle
            )
            raise BindingConflict(
                f"Remote handle {remote_handle} is already bound"
            ) from e

    if guid is None:
        logger.warning(
            "Identity %s:%s is already bound to a different handle",
            provider,
            provider_id,
        )
        raise BindingConflict(f"Identity {provider}:{provider_id} is already bound")

    return guid
