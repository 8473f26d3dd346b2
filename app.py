# app.py

import os
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from werkzeug.middleware.proxy_fix import ProxyFix
from sqlalchemy.orm import DeclarativeBase

# Konfigurasi logging
logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(threadName)s] %(message)s",
)

# Base class SQLAlchemy
class Base(DeclarativeBase):
    pass

db = SQLAlchemy(model_class=Base)


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env():
    """Read application settings from environment variables"""
    known = os.environ.get("KNOWN_EXPEDITIONS")
    return {
        "SECRET_KEY": os.environ.get("SESSION_SECRET", "dev-secret-key"),
        # Database lokal untuk antrian operasi pending
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL", "sqlite:///pending_operations.db"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SUPABASE_URL": os.environ.get("SUPABASE_URL", ""),
        "SUPABASE_KEY": os.environ.get("SUPABASE_KEY", ""),
        "GATEWAY_PAGE_SIZE": int(os.environ.get("GATEWAY_PAGE_SIZE", "1000")),
        "SYNC_INTERVAL_SECONDS": float(os.environ.get("SYNC_INTERVAL_SECONDS", "60")),
        "SYNC_MAX_RETRIES": int(os.environ.get("SYNC_MAX_RETRIES", "5")),
        "SYNC_AUTOSTART": _env_bool("SYNC_AUTOSTART", True),
        "APP_TIMEZONE": os.environ.get("APP_TIMEZONE", "Asia/Jakarta"),
        "EXPEDISI_WINDOW_DAYS": int(os.environ.get("EXPEDISI_WINDOW_DAYS", "3")),
        "KNOWN_EXPEDITIONS": [name.strip().upper() for name in known.split(",") if name.strip()] if known else None,
        "CHANGE_FEED_DEBOUNCE_SECONDS": float(os.environ.get("CHANGE_FEED_DEBOUNCE_SECONDS", "0.15")),
    }


def create_app(config=None, gateway=None):
    """Build the Flask app plus its single SyncEngineContext"""
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)
    app.config.update(load_config_from_env())
    if config:
        app.config.update(config)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        # Thread sinkronisasi memakai koneksi sendiri
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {"connect_args": {"check_same_thread": False}})

    db.init_app(app)

    from models import KNOWN_EXPEDITIONS
    from pending_store import PendingOperationStore
    from query_cache import QueryCache
    from cache_invalidation import CacheInvalidationCoordinator
    from notifications import NotificationCenter
    from sync_engine import SyncEngineContext
    from resi_service import ResiService
    from change_feed import ChangeFeed, watch_dashboard_tables
    from routes import init_resi_routes

    with app.app_context():
        import database_models  # noqa: F401  (registrasi tabel)
        db.create_all()

    if gateway is None:
        from supabase_gateway import SupabaseGateway
        gateway = SupabaseGateway(
            app.config["SUPABASE_URL"],
            app.config["SUPABASE_KEY"],
            page_size=app.config["GATEWAY_PAGE_SIZE"],
        )

    known_expeditions = app.config["KNOWN_EXPEDITIONS"] or list(KNOWN_EXPEDITIONS)
    timezone_name = app.config["APP_TIMEZONE"]

    cache = QueryCache()
    coordinator = CacheInvalidationCoordinator(cache, timezone_name=timezone_name)
    notifier = NotificationCenter()
    store = PendingOperationStore(app)
    context = SyncEngineContext(
        store=store,
        gateway=gateway,
        coordinator=coordinator,
        notifier=notifier,
        interval_seconds=app.config["SYNC_INTERVAL_SECONDS"],
        max_retries=app.config["SYNC_MAX_RETRIES"],
        timezone_name=timezone_name,
    )
    service = ResiService(
        context,
        cache,
        known_expeditions=known_expeditions,
        window_days=app.config["EXPEDISI_WINDOW_DAYS"],
    )

    feed = ChangeFeed()
    watcher = watch_dashboard_tables(feed, coordinator, delay=app.config["CHANGE_FEED_DEBOUNCE_SECONDS"])

    app.extensions["resi_sync"] = context
    app.extensions["resi_service"] = service
    app.extensions["change_feed"] = feed
    app.extensions["change_feed_watcher"] = watcher

    init_resi_routes(app, service, feed)

    if app.config["SYNC_AUTOSTART"]:
        try:
            context.start()
        except Exception as e:
            logging.error(f"Gagal menjalankan sinkronisasi latar belakang: {e}")

    return app


# START POINT: gunicorn -c gunicorn_config.py "app:create_app()"
if __name__ == "__main__":
    # Impor ulang sebagai modul 'app' supaya model terdaftar pada instance db yang sama
    from app import create_app as _create_app
    _create_app().run(debug=False)
