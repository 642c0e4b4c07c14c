import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import click
from flask import Flask

from copilot.services.models import utcnow
from copilot.services.orchestrator import IntentInterpreter
from storage.sqlite import database

from .config.settings import load_config
from .container import build_container
from .controllers.api_controller import api_blueprint
from .controllers.auth_controller import auth_bp
from .services.maintenance import run_sweep


def create_app(
    config_name: str = "development",
    *,
    clock: Callable[[], datetime] = utcnow,
    interpreter: Optional[IntentInterpreter] = None,
) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(load_config(config_name))

    logging.basicConfig(
        level=getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if app.config.get("DATABASE_PATH"):
        database.DB_PATH = Path(app.config["DATABASE_PATH"])

    app.extensions["copilot"] = build_container(app.config, clock=clock, interpreter=interpreter)

    app.register_blueprint(api_blueprint, url_prefix="/api")
    app.register_blueprint(auth_bp)

    @app.cli.command("sweep-expired")
    def sweep_expired():
        """Expire stale plans and purge expired idempotency records."""
        container = app.extensions["copilot"]
        summary = run_sweep(container.plans, container.idempotency)
        click.echo(
            f"Expired {summary['expired_plans']} plan(s); "
            f"removed {summary['removed_idempotency_records']} idempotency record(s)"
        )

    return app
