import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


def _build_database_url() -> str:
    raw_url = os.getenv("DATABASE_URL", "") or "sqlite:///./credlife.db"
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def build_session_factory(bind) -> sessionmaker:
    return sessionmaker(
        bind=bind, autoflush=False, autocommit=False, expire_on_commit=False
    )


DATABASE_URL = _build_database_url()
engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)
Base = declarative_base()


def init_db(bind=None) -> None:
    from credlife.models import attempt as _attempt  # noqa: F401
    from credlife.models import audit as _audit  # noqa: F401
    from credlife.models import credential as _credential  # noqa: F401
    from credlife.models import session as _session  # noqa: F401
    from credlife.models import two_factor as _two_factor  # noqa: F401
    from credlife.models import user as _user  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(factory: sessionmaker | None = None):
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
