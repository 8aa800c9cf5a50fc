# babylog/main.py
from __future__ import annotations

import logging
import os

from dotenv import find_dotenv, load_dotenv

# -------------------------------------------------
# LOAD .env ONCE (top of file, before any getenv use)
# -------------------------------------------------
load_dotenv(find_dotenv(usecwd=True))

from fastapi import FastAPI  # noqa: E402

from babylog.authz_errors import register_exception_handlers  # noqa: E402
from babylog.bootstrap import seed_defaults, seed_enabled  # noqa: E402
from babylog.database import Base, SessionLocal, engine  # noqa: E402
from babylog.feature_flags import deployment_mode  # noqa: E402
from babylog.routers import accounts, billing, notes  # noqa: E402
from babylog.routers import auth as auth_routes  # noqa: E402

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# -------------------------------------------------
# DB SETUP
# -------------------------------------------------
Base.metadata.create_all(bind=engine)


# -------------------------------------------------
# APP SETUP
# -------------------------------------------------
app = FastAPI(title="Babylog Backend", version="0.1.0")

register_exception_handlers(app)

app.include_router(auth_routes.router)
app.include_router(accounts.router)
app.include_router(billing.router)
app.include_router(notes.router)


@app.get("/health")
def health():
    return {"status": "ok", "mode": deployment_mode()}


# -------------------------------------------------
# STARTUP: DEFAULT FAMILY SEED
# -------------------------------------------------
@app.on_event("startup")
def bootstrap_startup():
    if not seed_enabled():
        return
    db = SessionLocal()
    try:
        seed_defaults(db)
    finally:
        db.close()
