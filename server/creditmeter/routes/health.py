from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import get_sessionmaker

router = APIRouter()


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.get("/readyz")
def readyz(request: Request):
    settings: Settings = request.app.state.settings

    if getattr(request.app.state, "pricing", None) is None:
        raise HTTPException(status_code=503, detail="Pricing table not loaded")
    if settings.invoicing_enabled and not settings.stripe_secret_key:
        raise HTTPException(status_code=503, detail="STRIPE_SECRET_KEY missing")

    SessionLocal = get_sessionmaker(settings)
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(status_code=503, detail="Database unavailable") from exc

    return {"ok": True}
