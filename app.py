from __future__ import annotations

import os
import signal
import logging

from capcs.api import create_app
from capcs.config import load_settings
from capcs.manager import build_manager

logger = logging.getLogger(__name__)


def configure_logging() -> None:
	logging.basicConfig(
		level=os.getenv("CAPCS_LOG_LEVEL", "INFO").upper(),
		format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
	)


def build_app():
	"""Build the Flask app around a controller manager wired from settings."""
	configure_logging()
	# Raises ConfigError before anything starts when no auth method is configured
	settings = load_settings()
	manager = build_manager(settings)
	app = create_app(manager)
	app.config['capcs_settings'] = settings
	return app


# Build app at module level (for gunicorn); controllers start in post_worker_init
app = build_app()


def _terminate(signum, frame):
	raise SystemExit(0)


if __name__ == "__main__":
	manager = app.config['capcs_manager']
	settings = app.config['capcs_settings']
	signal.signal(signal.SIGTERM, _terminate)
	manager.start()
	try:
		app.run(host="0.0.0.0", port=settings.api_port)
	finally:
		logger.info("Shutting down controllers")
		manager.stop()
