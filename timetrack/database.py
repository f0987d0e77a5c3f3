from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url


def _enable_sqlite_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN and autocommits DDL; take over so schema
    # bootstrap and savepoints run inside real transactions.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    url = make_url(database_url)

    connect_args = {}
    is_sqlite = url.drivername.startswith("sqlite")
    if is_sqlite:
        # Store routes run in the FastAPI threadpool.
        connect_args["check_same_thread"] = False

    engine = create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if is_sqlite:
        _enable_sqlite_transactions(engine)

    return engine


def dispose_engine(engine: Optional[Engine]) -> None:
    if engine is not None:
        engine.dispose()
