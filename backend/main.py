# backend/main.py
# Farm2Market API: produce marketplace for farmers and buyers

import logging
import os
from datetime import datetime, timezone

# --- Basic Logging Configuration ---
# Configured before project imports so their import-time messages are formatted too
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
log = logging.getLogger(__name__)

from fastapi import FastAPI, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text # Required for db health check

# --- Project Imports ---
from database import get_db, engine
import models
import auth_routes
import crops
import orders
import chat
import admin

# --- Tables ---
try:
    models.Base.metadata.create_all(bind=engine)
    log.info("Database tables ready.")
except SQLAlchemyError as e:
    log.critical(f"Could not create database tables: {e}", exc_info=True)
    raise SystemExit("Database table creation failed, cannot start.")

# --- FastAPI Application Setup ---
app = FastAPI(
    title="Farm2Market API",
    description="Produce marketplace: crop listings, Razorpay checkout, orders and buyer/farmer chat.",
    version="1.0.0"
)

# --- CORS ---
DEFAULT_ORIGINS = "http://localhost:5173,http://localhost:3000"


def _parse_origins(raw: str) -> list:
    return [origin.strip() for origin in raw.split(',') if origin.strip()]


allowed_origins = _parse_origins(os.getenv("ALLOWED_ORIGINS", "")) or _parse_origins(DEFAULT_ORIGINS)
log.info(f"CORS origins: {allowed_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True, # Auth cookie
    allow_methods=["*"],
    allow_headers=["*"],
)

for router_module in (auth_routes, crops, orders, chat, admin):
    app.include_router(router_module.router)


# --- System ---
@app.get("/health", tags=["System"], status_code=status.HTTP_200_OK)
async def health_check(db: Session = Depends(get_db)):
    """Reports whether the database answers a trivial query."""
    try:
        db.execute(text("SELECT 1"))
        db_connection = "ok"
    except SQLAlchemyError as e:
        log.error(f"Health check could not reach the database: {e}")
        db_connection = "failed"

    return {
        "status": "healthy" if db_connection == "ok" else "unhealthy",
        "db_connection": db_connection,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# `python main.py` runner for local development
if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload_flag = os.getenv("UVICORN_RELOAD", "false").lower() == "true"
    log_level = os.getenv("UVICORN_LOG_LEVEL", "info").lower()

    log.info(f"Starting Farm2Market API on http://{host}:{port} (reload={reload_flag}, log_level={log_level})")
    uvicorn.run("main:app", host=host, port=port, reload=reload_flag, log_level=log_level)
