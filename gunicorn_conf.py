"""
Gunicorn Configuration for the campus credit ledger API
Production worker management with uvicorn workers

Run with: gunicorn -c gunicorn_conf.py api_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Worker processes. Every worker has its own pool and rate limiter state;
# balance and nonce guarantees come from the database, not from process memory.
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000  # Restart workers after 10k requests to bound memory growth
max_requests_jitter = 1000  # Stagger restarts
timeout = 60
keepalive = 30

# Logging
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "campus_credit_ledger"

# Each worker builds its own engine after fork
preload_app = False


# Worker lifecycle hooks
def on_starting(server):
    print(f"🚀 Ledger API master starting (env={os.getenv('ENVIRONMENT', 'development')})")


def when_ready(server):
    print(f"✅ Ledger API listening on {bind} with {workers} workers")


def post_fork(server, worker):
    """The app is imported after the fork, so each worker owns its engine"""
    print(f"🔧 Ledger worker {worker.pid} forked")


def worker_int(worker):
    print(f"⚠️ Ledger worker {worker.pid} interrupted")


def worker_exit(server, worker):
    print(f"👋 Ledger worker {worker.pid} exited")
