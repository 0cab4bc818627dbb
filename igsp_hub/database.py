from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from igsp_hub.config import settings


def _connect_args(db_url: str) -> dict:
    # sqlite connections are handed between request threads
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def build_engine(db_url: str):
    return create_engine(db_url, connect_args=_connect_args(db_url), pool_pre_ping=True)


engine = build_engine(settings.db_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
