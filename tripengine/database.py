from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from tripengine.config import settings

def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Sessions are handed to fanout worker threads
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}

engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    """Yield a database session for the duration of a request"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
