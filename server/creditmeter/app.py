from __future__ import annotations

import logging

from fastapi import FastAPI

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db
from server.creditmeter.ledger.pricing import load_pricing
from server.creditmeter.routes import health, ledger
from server.creditmeter.routes.errors import register_error_handlers


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    init_db(settings)

    app = FastAPI(title="creditmeter", version="0.1.0")
    app.state.settings = settings
    app.state.pricing = load_pricing(settings.pricing_file)
    # Collaborators resolve from settings when left unset.
    app.state.invoicer = None
    app.state.notifier = None

    register_error_handlers(app)
    app.include_router(health.router)
    app.include_router(ledger.router)
    return app
