import os

# Gunicorn config variables
bind = os.getenv("BIND", "127.0.0.1:8000")
# Each worker opens its own SQLite handle and runs its own cleanup loop
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 120
keepalive = 5
max_requests = 1000
max_requests_jitter = 50
_log_dir = os.getenv("LOG_DIR")
accesslog = os.path.join(_log_dir, "access.log") if _log_dir else "-"
errorlog = os.path.join(_log_dir, "error.log") if _log_dir else "-"
loglevel = os.getenv("LOG_LEVEL", "info")
daemon = False
