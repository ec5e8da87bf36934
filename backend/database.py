# database.py
"""
SQLAlchemy wiring for the marketplace.

Reads DATABASE_URL (optionally from backend/.env), builds the engine with
per-dialect options, and exposes SessionLocal, Base and the per-request
`get_db` dependency.
"""

import os
import logging
from urllib.parse import urlparse # For safe URL logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

log = logging.getLogger(__name__)

# --- Environment ---
ENV_FILE = os.path.join(os.path.dirname(__file__), '.env')

if os.path.exists(ENV_FILE):
    load_dotenv(dotenv_path=ENV_FILE)
    log.info(f"Environment loaded from {ENV_FILE}")
else:
    log.warning(f"No .env at {ENV_FILE}; using process environment only.")

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    log.critical("DATABASE_URL is not set.")
    raise ValueError("DATABASE_URL environment variable is required.")


def mask_database_url(url: str) -> str:
    """Returns the URL with its password replaced by '***' for logging."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = f"{parsed.username}:***@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return parsed._replace(netloc=netloc).geturl()


try:
    log.info(f"Using database {mask_database_url(DATABASE_URL)}")
except ValueError as parse_error:
    log.error(f"DATABASE_URL could not be parsed for logging: {parse_error}")


# --- Engine ---
def _engine_options(url: str) -> dict:
    """SQLite needs a shared connection across threads (TestClient, WebSockets)."""
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True}


try:
    engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
    log.info(f"Engine ready ({engine.dialect.name}).")
except Exception as engine_error:
    log.critical(f"Engine creation failed: {engine_error}", exc_info=True)
    raise RuntimeError(f"Could not create database engine: {engine_error}") from engine_error


SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


# --- Request-scoped session ---
def get_db():
    """Yields one session per request and always closes it."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
