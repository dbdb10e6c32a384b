from contextlib import contextmanager
import logging
import os

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from errors import StorageError

logger = logging.getLogger("command_relay.database")

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _storage_message(exc: SQLAlchemyError) -> str:
    """Driver message only; the SQL text and bound parameters stay in the logs."""
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else exc.__class__.__name__


class Database:
    """Owns the engine and session factory for one relay process.

    Built once by the entry point and handed to every component that needs
    storage; `dispose()` (or leaving the `with` block) releases the pool.
    """

    def __init__(self, url: str):
        self.url = make_url(url)
        connect_args = {}
        if self.url.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False
            if self.url.database and self.url.database != ":memory:":
                directory = os.path.dirname(self.url.database)
                if directory:
                    os.makedirs(directory, exist_ok=True)

        self.engine = create_engine(self.url, connect_args=connect_args)
        if self.dialect == "sqlite":
            # SQLite only enforces REFERENCES when asked to, per connection
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        # Rows returned by the stores are read after their session has closed.
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def init_db(self):
        """Create any missing tables. Safe to run on every start."""
        import models  # noqa: F401  (registers the tables on Base)
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            logger.error("Schema initialization failed: %s", exc)
            raise StorageError(f"Schema initialization failed: {_storage_message(exc)}") from exc
        logger.info("Database schema ready at %s", self.url.render_as_string(hide_password=True))

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    @contextmanager
    def session_scope(self):
        """Provide a transactional scope around a series of operations.

        Ensures commit on success and rollback on exception, and always closes
        the session. SQLAlchemy faults come out as StorageError. Usage:

            with database.session_scope() as db:
                db.add(obj)
        """
        db: Session = self.SessionLocal()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Storage operation failed: %s", exc)
            raise StorageError(_storage_message(exc)) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
        return False
