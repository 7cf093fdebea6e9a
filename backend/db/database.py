import logging
import time

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from config import settings

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return str(url or "").startswith("sqlite")


def build_engine(url: str) -> Engine:
    """Create an engine with the pragmas and transaction hooks the schedule code relies on."""
    kwargs: dict = {"echo": False}
    if _is_sqlite(url):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
    eng = create_engine(url, **kwargs)

    if _is_sqlite(url):

        @event.listens_for(eng, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            # pysqlite opens transactions lazily and breaks SAVEPOINT; take over BEGIN ourselves.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(eng, "begin")
        def do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    @event.listens_for(eng, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("_query_start_time", []).append(time.perf_counter())

    @event.listens_for(eng, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_stack = conn.info.get("_query_start_time")
        if not start_stack:
            return
        duration_ms = max((time.perf_counter() - start_stack.pop()) * 1000.0, 0.0)
        if duration_ms > settings.DB_SLOW_QUERY_THRESHOLD_MS:
            logger.warning("Slow query (%.1fms): %s", duration_ms, statement[:200])

    return eng


def build_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=eng)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
