"""
Flask host for the Stashvault store.

The HTTP routes for stashes live outside this package; the factory only owns
the store lifecycle, the opportunistic session sweep and the health probes.
"""

import logging
import threading
import time

from flask import Flask, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from auth_utils import clean_expired_sessions, is_auth_enabled
from config import get_config
from errors import VaultError
from store import Store

logger = logging.getLogger(__name__)

EXTENSION_KEY = "stashvault"


class SessionSweeper:
    """Runs ``clean_expired_sessions`` at most once per interval."""

    def __init__(self, store: Store, interval: int) -> None:
        self.store = store
        self.interval = interval
        self._last_run = time.monotonic()
        self._lock = threading.Lock()

    def maybe_run(self) -> int:
        if self.interval <= 0:
            return 0
        with self._lock:
            now = time.monotonic()
            if now - self._last_run < self.interval:
                return 0
            self._last_run = now
        return clean_expired_sessions(self.store)


def get_store() -> Store:
    """Return the store attached to the current app."""
    return current_app.extensions[EXTENSION_KEY]


def create_app(config_name: str = None, store: Store = None) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config_name: Environment name (development, production, testing)
        store: Optional pre-built store; one is created from the config otherwise

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    config = get_config(config_name)
    app.config.from_object(config)

    # Opening the store also sweeps expired sessions once
    if store is None:
        store = Store(config)
    store.init()
    app.extensions[EXTENSION_KEY] = store
    sweeper = SessionSweeper(store, app.config.get("SESSION_CLEANUP_INTERVAL", 3600))
    app.extensions[f"{EXTENSION_KEY}.sweeper"] = sweeper

    @app.before_request
    def sweep_sessions():
        try:
            sweeper.maybe_run()
        except SQLAlchemyError as exc:
            # The sweep is maintenance only; a failure must not fail the request
            logger.warning("Session sweep failed: %s", exc)

    @app.errorhandler(VaultError)
    def handle_vault_error(error: VaultError):
        return jsonify(error.to_dict()), error.status_code

    @app.route("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    @app.route("/readyz")
    def readyz():
        current = get_store()
        if not current.is_open:
            return jsonify({"status": "unavailable"}), 503
        try:
            with current.session() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("Readiness check failed: %s", exc)
            return jsonify({"status": "unavailable"}), 503
        return jsonify({"status": "ready", "auth_required": is_auth_enabled(current)})

    logger.info("Stashvault app created (%s)", config_name or "default")
    return app
