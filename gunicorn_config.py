#!/usr/bin/env python3
# Gunicorn configuration for the resi sync dashboard
# Jalankan: gunicorn -c gunicorn_config.py "app:create_app()"

import os

# Server socket
bind = os.environ.get("BIND", "0.0.0.0:5000")
backlog = 2048

# Satu worker saja: antrian pending dan thread sinkronisasi hanya boleh ada satu per proses
workers = 1
worker_class = "gthread"
threads = int(os.environ.get("GUNICORN_THREADS", "8"))
timeout = 120
keepalive = 5

# Thread sinkronisasi dibuat di dalam worker, bukan di master
preload_app = False
reload = False

# Logging
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
accesslog = "-"
errorlog = "-"

# Process naming
proc_name = "resi-sync-dashboard"

worker_tmp_dir = "/tmp"


def worker_exit(server, worker):
    """Stop the background sync loop when the worker shuts down"""
    app = getattr(worker, "wsgi", None)
    context = getattr(app, "extensions", {}).get("resi_sync") if app is not None else None
    if context is not None:
        context.stop(timeout=5)
