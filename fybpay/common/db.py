"""Database engine and session factory construction."""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from fybpay.common.config import settings


def build_engine(dsn: str, **kwargs) -> Engine:
    """Engine for `dsn`.

    SQLite connections are shared across worker threads and wait on the write
    lock instead of failing, so concurrent reservations queue up the same way
    they do behind a PostgreSQL row lock.
    """

    if dsn.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(dsn, **kwargs)


def session_factory_for(bind: Engine) -> sessionmaker:
    # Objects stay readable after commit; reconciliation reads them for receipts.
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine(settings.postgres_dsn)
SessionLocal = session_factory_for(engine)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
