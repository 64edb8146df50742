from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False)

engine = None


def init_engine(db_url: str):
    """
    Create the engine for `db_url` and bind SessionLocal to it.
    For file-based SQLite the parent folder (e.g. data/) is created first.
    """
    global engine

    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_path = db_url.split("sqlite:///", 1)[-1]
        if db_path and db_path != db_url and db_path != ":memory:":
            Path(db_path).resolve().parent.mkdir(parents=True, exist_ok=True)

    if engine is not None:
        engine.dispose()

    engine = create_engine(db_url, echo=False, future=True, connect_args=connect_args)
    SessionLocal.configure(bind=engine)
    return engine


def init_db():
    # models must be imported so their tables are registered on Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
