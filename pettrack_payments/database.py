import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Importing config loads .env before DATABASE_URL is read
from pettrack_payments import config  # noqa: F401


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # FastAPI hands sessions across threads
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL must point at the payments database (see .env.example)")

engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    # Looked up at call time so tests can swap SessionLocal
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
