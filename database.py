import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class StorageUnavailable(RuntimeError):
    """The backing store could not be reached or refused the operation."""


@contextmanager
def storage_errors() -> Iterator[None]:
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise StorageUnavailable(str(exc.orig or exc)) from exc


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:", "sqlite+pysqlite:///:memory:")


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


class BudgetDatabase:
    """Handle on one budget database.

    The engine is created when the handle is constructed and disposed by
    ``close()``. Store and report services receive sessions from it.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        connect_args: dict[str, object] = {}
        engine_kwargs: dict[str, object] = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if _is_memory_url(database_url):
                # one shared connection, otherwise each checkout sees an empty db
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Optional[Engine] = create_engine(
            database_url, connect_args=connect_args, **engine_kwargs
        )
        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_pragmas)
        self._sessionmaker = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        logger.info(f"database_opened: url={database_url}")

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def create_schema(self, *, drop_existing: bool = False) -> None:
        import models  # noqa: F401  registers tables on Base.metadata

        engine = self._require_engine()
        with storage_errors():
            if drop_existing:
                Base.metadata.drop_all(engine)
            Base.metadata.create_all(engine)

    def session(self) -> Session:
        self._require_engine()
        return self._sessionmaker()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self.session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        logger.info(f"database_closed: url={self.database_url}")

    def _require_engine(self) -> Engine:
        if self.engine is None:
            raise StorageUnavailable("Database handle is closed")
        return self.engine

    def __enter__(self) -> "BudgetDatabase":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def open_database(database_url: str, *, new: bool = False) -> BudgetDatabase:
    """Open a budget database, creating its tables when missing.

    With ``new=True`` existing tables are dropped and the default categories
    are seeded, matching a freshly created budget file.
    """
    db = BudgetDatabase(database_url)
    try:
        db.create_schema(drop_existing=new)
        if new:
            from services import CategoryService

            with db.session_scope() as session:
                CategoryService(session).set_defaults()
    except Exception:
        db.close()
        raise
    return db
