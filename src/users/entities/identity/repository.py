"""Identity repository for data access operations."""

from sqlmodel import select

from src.users.core.errors import NotFound
from src.users.core.services.database.db_session import DbSessionService
from src.users.entities._base import utc_now
from src.users.entities.identity.entity import Identity
from src.users.entities.identity.table import IdentityTable


class IdentityRepository:
    """Data-access layer for external identities."""

    def __init__(self, db: DbSessionService) -> None:
        self._db = db

    @staticmethod
    def _to_entity(row: IdentityTable) -> Identity:
        return Identity.model_validate(row, from_attributes=True)

    def find_by_id(self, identity_id: str) -> Identity:
        with self._db.session_scope() as session:
            row = session.get(IdentityTable, identity_id)
            if row is None:
                raise NotFound(f"Identity {identity_id} not found")
            return self._to_entity(row)

    def find_by_provider_pair(self, provider: str, provider_user_id: str) -> Identity:
        statement = select(IdentityTable).where(
            (IdentityTable.provider == provider.strip().lower())
            & (IdentityTable.provider_user_id == provider_user_id)
        )
        with self._db.session_scope() as session:
            row = session.exec(statement).first()
            if row is None:
                raise NotFound("Identity not found")
            return self._to_entity(row)

    def list_by_user(self, user_id: str) -> list[Identity]:
        statement = (
            select(IdentityTable)
            .where(IdentityTable.user_id == user_id)
            .order_by(IdentityTable.created_at)
        )
        with self._db.session_scope() as session:
            return [self._to_entity(row) for row in session.exec(statement).all()]

    def insert(self, identity: Identity) -> Identity:
        """Insert a new identity; an already-linked provider pair raises ``Conflict``."""
        with self._db.session_scope() as session:
            row = IdentityTable(**identity.model_dump())
            session.add(row)
            session.flush()
            return self._to_entity(row)

    def update(self, identity: Identity) -> Identity:
        with self._db.session_scope() as session:
            row = session.get(IdentityTable, identity.id)
            if row is None:
                raise NotFound(f"Identity {identity.id} not found")
            row.provider_email = identity.provider_email
            row.provider_verified = identity.provider_verified
            row.updated_at = utc_now()
            session.add(row)
            session.flush()
            return self._to_entity(row)

    def delete(self, identity_id: str) -> Identity:
        """Remove an identity and return what was removed."""
        with self._db.session_scope() as session:
            row = session.get(IdentityTable, identity_id)
            if row is None:
                raise NotFound(f"Identity {identity_id} not found")
            deleted = self._to_entity(row)
            session.delete(row)
            return deleted
