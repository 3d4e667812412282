"""Database engine and session management for the telemetry store."""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings


def _connect_args(url: str) -> dict:
    """Driver-specific connection arguments carrying the query timeout."""
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.query_timeout_seconds}
    if url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={settings.query_timeout_seconds * 1000}"}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
