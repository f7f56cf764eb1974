"""
TAPS — Transcript Automation and Processing Service
Configuration classes for the Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Workflow settings (alerts, reminders, SLA thresholds, department mailboxes)
are plain config keys.  Services never read them directly: they receive the
``NotificationConfig`` / ``SlaConfig`` / ``ReminderConfig`` values built by
``from_app_config`` so tests can inject deterministic settings.
"""

import os
from dataclasses import dataclass

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when no DATABASE_URL is set
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'taps_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Notifications
    TAPS_ENABLE_ALERTS = _env_bool("TAPS_ENABLE_ALERTS")
    TAPS_LIBRARY_EMAIL = os.getenv("TAPS_LIBRARY_EMAIL")
    TAPS_BURSAR_EMAIL = os.getenv("TAPS_BURSAR_EMAIL")
    TAPS_ACADEMIC_EMAIL = os.getenv("TAPS_ACADEMIC_EMAIL")
    TAPS_PROCESSOR_EMAIL = os.getenv("TAPS_PROCESSOR_EMAIL")
    TAPS_OPERATIONS_EMAIL = os.getenv("TAPS_OPERATIONS_EMAIL")

    # SLA
    TAPS_SLA_TARGET_HOURS = float(os.getenv("TAPS_SLA_TARGET_HOURS", "48"))
    TAPS_SLA_WARNING_RATIO = float(os.getenv("TAPS_SLA_WARNING_RATIO", "0.75"))

    # Reminders
    TAPS_ENABLE_REMINDERS = _env_bool("TAPS_ENABLE_REMINDERS")
    TAPS_REMINDER_LIBRARY = _env_bool("TAPS_REMINDER_LIBRARY")
    TAPS_REMINDER_BURSAR = _env_bool("TAPS_REMINDER_BURSAR")
    TAPS_REMINDER_ACADEMIC = _env_bool("TAPS_REMINDER_ACADEMIC")
    TAPS_REMINDER_HOURS_LIBRARY = float(os.getenv("TAPS_REMINDER_HOURS_LIBRARY", "48"))
    TAPS_REMINDER_HOURS_BURSAR = float(os.getenv("TAPS_REMINDER_HOURS_BURSAR", "48"))
    TAPS_REMINDER_HOURS_ACADEMIC = float(os.getenv("TAPS_REMINDER_HOURS_ACADEMIC", "48"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a StaticPool, which rejects sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {}

    TAPS_ENABLE_ALERTS = True
    TAPS_LIBRARY_EMAIL = "library@taps.test"
    TAPS_BURSAR_EMAIL = "bursar@taps.test"
    TAPS_ACADEMIC_EMAIL = "academic@taps.test"
    TAPS_PROCESSOR_EMAIL = "processor@taps.test"
    TAPS_OPERATIONS_EMAIL = "ops@taps.test"

    TAPS_SLA_TARGET_HOURS = 48.0
    TAPS_SLA_WARNING_RATIO = 0.75

    TAPS_ENABLE_REMINDERS = True
    TAPS_REMINDER_LIBRARY = True
    TAPS_REMINDER_BURSAR = True
    TAPS_REMINDER_ACADEMIC = True
    TAPS_REMINDER_HOURS_LIBRARY = 48.0
    TAPS_REMINDER_HOURS_BURSAR = 48.0
    TAPS_REMINDER_HOURS_ACADEMIC = 48.0


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Heroku-style URLs use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


# ── Service settings ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NotificationConfig:
    """Recipients and toggle for the notification rule dispatcher."""

    alerts_enabled: bool = True
    library_email: str | None = None
    bursar_email: str | None = None
    academic_email: str | None = None
    processor_email: str | None = None
    operations_email: str | None = None

    @classmethod
    def from_app_config(cls, cfg) -> "NotificationConfig":
        return cls(
            alerts_enabled=bool(cfg.get("TAPS_ENABLE_ALERTS", True)),
            library_email=cfg.get("TAPS_LIBRARY_EMAIL"),
            bursar_email=cfg.get("TAPS_BURSAR_EMAIL"),
            academic_email=cfg.get("TAPS_ACADEMIC_EMAIL"),
            processor_email=cfg.get("TAPS_PROCESSOR_EMAIL"),
            operations_email=cfg.get("TAPS_OPERATIONS_EMAIL"),
        )


@dataclass(frozen=True)
class SlaConfig:
    """Default target and warning threshold for SLA timers."""

    target_hours: float = 48.0
    warning_ratio: float = 0.75

    @classmethod
    def from_app_config(cls, cfg) -> "SlaConfig":
        return cls(
            target_hours=float(cfg.get("TAPS_SLA_TARGET_HOURS", 48.0)),
            warning_ratio=float(cfg.get("TAPS_SLA_WARNING_RATIO", 0.75)),
        )


@dataclass(frozen=True)
class ReminderConfig:
    """Per-department reminder toggles and thresholds (hours)."""

    enabled: bool = True
    library: bool = True
    bursar: bool = True
    academic: bool = True
    library_hours: float = 48.0
    bursar_hours: float = 48.0
    academic_hours: float = 48.0

    @classmethod
    def from_app_config(cls, cfg) -> "ReminderConfig":
        return cls(
            enabled=bool(cfg.get("TAPS_ENABLE_REMINDERS", True)),
            library=bool(cfg.get("TAPS_REMINDER_LIBRARY", True)),
            bursar=bool(cfg.get("TAPS_REMINDER_BURSAR", True)),
            academic=bool(cfg.get("TAPS_REMINDER_ACADEMIC", True)),
            library_hours=float(cfg.get("TAPS_REMINDER_HOURS_LIBRARY", 48.0)),
            bursar_hours=float(cfg.get("TAPS_REMINDER_HOURS_BURSAR", 48.0)),
            academic_hours=float(cfg.get("TAPS_REMINDER_HOURS_ACADEMIC", 48.0)),
        )
