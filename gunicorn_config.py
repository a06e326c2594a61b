"""Gunicorn configuration: one worker owns the control loops."""
import os

bind = f"0.0.0.0:{os.getenv('CAPCS_API_PORT', '8080')}"
# Controllers assume a single writer per cluster, so never run more than one worker
workers = 1
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False
graceful_timeout = int(float(os.getenv("CAPCS_SHUTDOWN_GRACE_S", "30"))) + 15


def post_worker_init(worker):
    """Start the controllers once the worker has loaded the application."""
    manager = worker.wsgi.config.get('capcs_manager')
    if manager is None:
        worker.log.error("No controller manager found in app.config")
        return
    manager.start()
    worker.log.info(f"[Worker {worker.pid}] controllers started")


def worker_exit(server, worker):
    """Drain the controllers, including load-balancer untagging, before the worker exits."""
    wsgi = getattr(worker, "wsgi", None)
    manager = wsgi.config.get('capcs_manager') if wsgi is not None else None
    if manager is not None:
        manager.stop()
        server.log.info(f"[Worker {worker.pid}] controllers stopped")
