"""User repository for data access operations."""

from typing import Any

from sqlalchemy import update
from sqlmodel import col, select

from src.users.core.errors import NotFound
from src.users.core.services.database.db_session import DbSessionService
from src.users.entities._base import utc_now
from src.users.entities.identity.entity import Identity
from src.users.entities.identity.table import IdentityTable
from src.users.entities.user.entity import User, normalize_email
from src.users.entities.user.table import UserTable

MUTABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "email_verified",
        "role",
        "first_name",
        "last_name",
        "phone",
        "last_login_at",
    }
)


class UserRepository:
    """Data-access layer for users.

    Every call is blocking and runs in its own transaction; callers on the event
    loop go through the worker pool. Updates only touch the columns they name,
    so concurrent writers to different columns never undo each other.
    """

    def __init__(self, db: DbSessionService) -> None:
        self._db = db

    @staticmethod
    def _to_entity(row: UserTable) -> User:
        return User.model_validate(row, from_attributes=True)

    def find_by_id(self, user_id: str) -> User:
        with self._db.session_scope() as session:
            row = session.get(UserTable, user_id)
            if row is None:
                raise NotFound(f"User {user_id} not found")
            return self._to_entity(row)

    def find_by_email(self, email: str) -> User:
        email = normalize_email(email)
        with self._db.session_scope() as session:
            row = session.exec(select(UserTable).where(UserTable.email == email)).first()
            if row is None:
                raise NotFound("User not found")
            return self._to_entity(row)

    def insert(self, user: User) -> User:
        """Insert a new user; a duplicate email raises ``Conflict``."""
        with self._db.session_scope() as session:
            row = UserTable(**user.model_dump())
            session.add(row)
            session.flush()
            return self._to_entity(row)

    def insert_with_identity(
        self, user: User, identity: Identity
    ) -> tuple[User, Identity]:
        """Insert a user together with its first identity in one transaction.

        A taken email or an already-linked provider pair raises ``Conflict`` and
        leaves neither row behind.
        """
        with self._db.session_scope() as session:
            user_row = UserTable(**user.model_dump())
            session.add(user_row)
            session.flush()
            identity_row = IdentityTable(
                **identity.model_dump(exclude={"user_id"}), user_id=user_row.id
            )
            session.add(identity_row)
            session.flush()
            return (
                self._to_entity(user_row),
                Identity.model_validate(identity_row, from_attributes=True),
            )

    def update(
        self,
        user_id: str,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> User:
        """Write ``changes`` to the named columns only and return the stored row.

        Args:
            user_id: User to update
            changes: Column values to set
            expect: Column values the row must still hold for the write to apply;
                when they no longer match, nothing is written

        Raises:
            NotFound: no user with this id
            Conflict: the new email belongs to another user
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Not updatable: {', '.join(sorted(unknown))}")

        values = dict(changes)
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        values["updated_at"] = utc_now()

        statement = update(UserTable).where(col(UserTable.id) == user_id)
        for name, value in (expect or {}).items():
            column = col(getattr(UserTable, name))
            statement = statement.where(
                column.is_(None) if value is None else column == value
            )

        with self._db.session_scope() as session:
            session.execute(statement.values(**values))
            row = session.get(UserTable, user_id)
            if row is None:
                raise NotFound(f"User {user_id} not found")
            return self._to_entity(row)

    def mark_email_verified(self, user_id: str) -> User:
        """Set ``email_verified``; a user that is already verified is left untouched."""
        return self.update(
            user_id, {"email_verified": True}, expect={"email_verified": False}
        )

    def mark_verified_by_trusted_identities(self, providers: list[str]) -> int:
        """Set ``email_verified`` for every user owning a trusted-provider identity.

        One-time migration helper; returns the number of users changed.
        """
        linked_users = select(IdentityTable.user_id).where(
            col(IdentityTable.provider).in_(providers)
        )
        statement = (
            update(UserTable)
            .where(col(UserTable.id).in_(linked_users))
            .where(col(UserTable.email_verified) == False)  # noqa: E712
            .values(email_verified=True, updated_at=utc_now())
        )
        with self._db.session_scope() as session:
            result = session.execute(statement)
            return result.rowcount or 0
