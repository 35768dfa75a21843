import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def configure_sqlite_engine(engine: Engine) -> Engine:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; take over transaction control.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def build_engine(db_url: str, **kwargs) -> Engine:
    engine = create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
        **kwargs,
    )
    if engine.dialect.name == "sqlite":
        configure_sqlite_engine(engine)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


ASSET_LIFECYCLE_DB_URL = _require_env("ASSET_LIFECYCLE_DB_URL")

engine_asset = build_engine(ASSET_LIFECYCLE_DB_URL)

SessionLocalAsset = build_session_factory(engine_asset)
