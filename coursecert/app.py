import logging
import os
from typing import Mapping, Optional

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from .shared.conversion import (
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_STRATEGY_ORDER,
    DEFAULT_TIMEOUT,
)
from .shared.photos import FETCH_TIMEOUT, MAX_BYTES as PHOTO_MAX_BYTES


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if not value:
        return default
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


def create_app(overrides: Optional[Mapping] = None):
    app = Flask(__name__, template_folder="templates")
    app.secret_key = os.getenv("SECRET_KEY", "dev")

    DB_USER = os.getenv("DB_USER", "coursecert")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_NAME = os.getenv("DB_NAME", "coursecert")
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )

    app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024
    app.config["SITE_ROOT"] = os.getenv("SITE_ROOT", "/srv")

    app.config["CERT_NUMBER_PREFIX"] = os.getenv("CERT_NUMBER_PREFIX", "CERT")
    app.config["CERT_LOCALE"] = os.getenv("CERT_LOCALE", "id")
    app.config["CERT_CONVERSION_STRATEGIES"] = _env_list(
        "CERT_CONVERSION_STRATEGIES", DEFAULT_STRATEGY_ORDER
    )
    app.config["CERT_CONVERSION_TIMEOUT"] = float(
        os.getenv("CERT_CONVERSION_TIMEOUT", DEFAULT_TIMEOUT)
    )
    app.config["CERT_ALLOW_DOCX_OUTPUT"] = _env_bool("CERT_ALLOW_DOCX_OUTPUT", True)
    app.config["CERT_ISOLATE_RENDER"] = _env_bool("CERT_ISOLATE_RENDER", True)
    app.config["CERT_MAX_OUTPUT_BYTES"] = int(
        os.getenv("CERT_MAX_OUTPUT_BYTES", DEFAULT_MAX_OUTPUT_BYTES)
    )
    app.config["CERT_PHOTO_MAX_BYTES"] = int(
        os.getenv("CERT_PHOTO_MAX_BYTES", PHOTO_MAX_BYTES)
    )
    app.config["CERT_PHOTO_TIMEOUT"] = float(
        os.getenv("CERT_PHOTO_TIMEOUT", FETCH_TIMEOUT)
    )
    app.config["CERT_BATCH_MAX"] = int(os.getenv("CERT_BATCH_MAX", 100))
    app.config["CERT_BATCH_WORKERS"] = int(os.getenv("CERT_BATCH_WORKERS", 1))
    app.config["SOFFICE_PATH"] = os.getenv("SOFFICE_PATH")
    app.config["WEASYPRINT_PATH"] = os.getenv("WEASYPRINT_PATH")

    if overrides:
        app.config.update(overrides)
    if isinstance(app.config["CERT_CONVERSION_STRATEGIES"], str):
        app.config["CERT_CONVERSION_STRATEGIES"] = tuple(
            part.strip().lower()
            for part in app.config["CERT_CONVERSION_STRATEGIES"].split(",")
            if part.strip()
        )

    if not app.debug and not app.testing:
        app.logger.setLevel(logging.INFO)
    logging.getLogger("coursecert.certgen").setLevel(
        os.getenv("CERTGEN_LOG_LEVEL", "INFO").upper()
    )

    db.init_app(app)

    from . import models  # noqa: F401  registers tables on db.metadata

    from .routes.certificates import bp as certificates_bp

    app.register_blueprint(certificates_bp)

    @app.get("/healthz")
    def healthz():
        return jsonify({"ok": True})

    return app
