"""Database engine and session factory used across the application."""

from collections.abc import Iterator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import StaticPool, text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session, SQLModel, create_engine

from src.users.core.errors import Conflict, ResourceExhausted, StoreUnavailable, UsersError
from src.users.runtime.config.config_data import DatabaseConfig


class DbSessionService:
    def __init__(self, db_config: DatabaseConfig, environment: str = "development"):
        """Initialize the shared database engine and session factory."""

        logger.info("Setting up database engine and session factory")
        self._config = db_config

        engine_kwargs = {
            "pool_pre_ping": True,  # Validate connections before use
            "echo": False,
            "connect_args": self._get_connect_args(db_config, environment),
        }

        if db_config.is_sqlite:
            if ":memory:" in db_config.url or db_config.url in ("sqlite://", "sqlite:///"):
                # One shared connection, otherwise every checkout sees an empty database
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs.update(
                {
                    "pool_size": db_config.pool_size,
                    "max_overflow": db_config.max_overflow,
                    "pool_timeout": db_config.pool_timeout,
                    "pool_recycle": db_config.pool_recycle,
                }
            )

        self._engine = create_engine(db_config.connection_string, **engine_kwargs)

        if environment == "production":
            logger.info(
                "Database engine initialized",
                extra={
                    "pool_size": db_config.pool_size,
                    "max_overflow": db_config.max_overflow,
                    "pool_timeout": db_config.pool_timeout,
                    "pool_recycle": db_config.pool_recycle,
                },
            )

    @staticmethod
    def _get_connect_args(db_config: DatabaseConfig, environment: str) -> dict:
        """Get database-specific connection arguments."""
        connect_args = {}

        if "postgresql" in db_config.url:
            connect_args.update(
                {
                    "application_name": f"{environment}_users",
                    "connect_timeout": 30,
                }
            )
        elif db_config.is_sqlite:
            connect_args.update(
                {
                    "check_same_thread": False,  # Sessions are used from worker threads
                    "timeout": 20,  # Lock timeout
                }
            )
            if environment == "production":
                logger.warning(
                    "SQLite is not recommended for production use. "
                    "Consider PostgreSQL for better performance and reliability."
                )

        return connect_args

    @property
    def engine(self):
        return self._engine

    def create_all(self) -> None:
        """Create all database tables."""
        from src.users.entities.identity import IdentityTable  # noqa: F401
        from src.users.entities.user import UserTable  # noqa: F401

        SQLModel.metadata.create_all(self._engine)
        logger.info("Database initialized with tables.")

    def get_session(self) -> Session:
        """Return a new SQLModel session bound to the shared engine."""
        return Session(
            self._engine,
            expire_on_commit=False,  # Entities are converted after commit
            autoflush=True,
        )

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Run a unit of work in one transaction, translating store failures.

        Raises:
            Conflict: a unique constraint was violated
            ResourceExhausted: no pooled connection within ``pool_timeout``
            StoreUnavailable: any other driver or SQLAlchemy failure
        """
        db = self.get_session()
        try:
            yield db
            db.commit()
        except UsersError:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            logger.info(
                "Database uniqueness conflict",
                extra={"error_message": str(e.orig)},
            )
            raise Conflict(str(e.orig)) from e
        except PoolTimeoutError as e:
            db.rollback()
            logger.warning("Database pool checkout timed out")
            raise ResourceExhausted("No database connection available") from e
        except (DBAPIError, SQLAlchemyError) as e:
            db.rollback()
            logger.error(
                "Database transaction failed",
                extra={
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
            )
            raise StoreUnavailable("Database request failed") from e
        finally:
            db.close()

    def health_check(self) -> bool:
        """Perform a health check on the database connection."""
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
                return True
        except SQLAlchemyError as e:
            logger.error(
                "Database health check failed",
                extra={
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
            )
            return False

    def get_pool_status(self) -> dict:
        """Get current connection pool status for monitoring."""
        pool = self._engine.pool
        return {
            "size": getattr(pool, "size", lambda: 0)(),
            "checked_in": getattr(pool, "checkedin", lambda: 0)(),
            "checked_out": getattr(pool, "checkedout", lambda: 0)(),
            "overflow": getattr(pool, "overflow", lambda: 0)(),
        }

    def dispose(self) -> None:
        self._engine.dispose()
