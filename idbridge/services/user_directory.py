from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from idbridge.models.user import User


class UserEmailConflictError(Exception):
    pass


class UserDirectory:
    """Read/write access to the local user projection."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_idp_identity_id(self, idp_identity_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.idp_identity_id == idp_identity_id)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        """Active users only."""
        result = await self.db.execute(
            select(User).where(User.email == email, User.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def create_after_registration(
        self, idp_identity_id: str, email: str
    ) -> tuple[User, bool]:
        """
        Create the local record for a freshly registered identity.
        Returns (user, created).

        Idempotent on idp_identity_id: a repeated notification returns the
        existing record with created=False. An email already owned by a
        different identity raises UserEmailConflictError.
        """
        existing = await self.get_by_idp_identity_id(idp_identity_id)
        if existing is not None:
            return existing, False

        user = User(
            idp_identity_id=idp_identity_id,
            email=email,
            is_active=True,
            last_login_at=None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(user)
                await self.db.flush()
        except IntegrityError:
            # Lost a race against a concurrent notification, or the email is taken
            existing = await self.get_by_idp_identity_id(idp_identity_id)
            if existing is not None:
                return existing, False
            raise UserEmailConflictError(
                f"Email {email} is already registered to another identity."
            ) from None

        await self.db.refresh(user)
        return user, True

    async def update_last_login(self, user_id: UUID, when: Optional[datetime] = None) -> None:
        """
        Written with an UPDATE statement inside a savepoint; a failure rolls
        back the savepoint only and leaves loaded objects untouched.
        """
        async with self.db.begin_nested():
            await self.db.execute(
                update(User)
                .where(User.id == user_id)
                .values(last_login_at=when or datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )

    async def set_active(self, user_id: UUID, is_active: bool) -> bool:
        """Returns False when no such user exists."""
        result = await self.db.execute(
            update(User).where(User.id == user_id).values(is_active=is_active)
        )
        await self.db.flush()
        return result.rowcount > 0

    async def activate(self, user_id: UUID) -> bool:
        return await self.set_active(user_id, True)

    async def deactivate(self, user_id: UUID) -> bool:
        return await self.set_active(user_id, False)
