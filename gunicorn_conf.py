"""
Gunicorn Configuration for the Treasury Fulfillment Engine
Uvicorn workers serving webhook_server:app
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"

# Each worker boots its own fulfillment scheduler
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
graceful_timeout = 30
keepalive = 30
max_requests = 5000
max_requests_jitter = 500

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "treasury_fulfillment"
preload_app = False


def when_ready(server):
    server.log.info(f"✅ Treasury fulfillment API ready with {workers} worker(s) on {bind}")
    scheduler_on = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    if workers > 1 and scheduler_on:
        server.log.warning(
            "⚠️ MULTI_WORKER_SCHEDULER: every worker runs the fulfillment jobs; "
            "set SCHEDULER_ENABLED=false on all but one deployment or run a single worker"
        )


def worker_exit(server, worker):
    server.log.info(f"👋 Worker {worker.pid} exited")
