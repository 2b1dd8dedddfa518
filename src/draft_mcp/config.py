"""
Configuration
=============

Settings loaded via python-decouple: environment variables win over an
optional .env file. Credentials are NOT configured here (INV-GLOBAL-03);
they come from biosecret, see credentials.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import Config as DecoupleConfig
from decouple import RepositoryEmpty, RepositoryEnv

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        # No .env: only os.environ and defaults
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """JSON-RPC gateway settings."""

    host: str
    port: int
    path: str


@dataclass(slots=True, frozen=True)
class MailSettings:
    """Backend selection and draft identity settings."""

    backend: str  # "imap" | "memory"
    account_id: str
    drafts_folder: str
    draft_domain: str
    pending_wait_seconds: float
    inbox_folder: str = "INBOX"


@dataclass(slots=True, frozen=True)
class DetectionSettings:
    """
    Completion detector budgets and scoring calibration.

    The ratios and weights are host-specific calibration; nothing depends on
    their exact values.
    """

    total_budget_seconds: float = 30.0
    submit_timeout_seconds: float = 20.0
    event_grace_seconds: float = 5.0
    scan_attempts: int = 10
    scan_interval_seconds: float = 2.0
    snapshot_limit: int = 25
    fetch_budget: int = 8
    marker_ratio: float = 0.5
    plain_ratio: float = 0.6
    min_fragment_matches: int = 2
    short_line_length: int = 12
    short_line_weight: float = 0.5


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    log_level: str
    http: HttpSettings
    mail: MailSettings
    detection: DetectionSettings


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8765"), default=8765),
        path=_decouple_config("HTTP_PATH", default="/"),
    )

    mail_settings = MailSettings(
        backend=_decouple_config("DRAFT_MCP_BACKEND", default="imap").lower(),
        account_id=_decouple_config("DRAFT_MCP_ACCOUNT", default="default"),
        drafts_folder=_decouple_config("DRAFT_MCP_DRAFTS_FOLDER", default="Drafts"),
        draft_domain=_decouple_config("DRAFT_MCP_DRAFT_DOMAIN", default=""),
        pending_wait_seconds=_float(
            _decouple_config("DRAFT_MCP_PENDING_WAIT_SECONDS", default="10"), default=10.0
        ),
        inbox_folder=_decouple_config("DRAFT_MCP_INBOX_FOLDER", default="INBOX"),
    )

    detection_settings = DetectionSettings(
        total_budget_seconds=_float(_decouple_config("DETECT_TOTAL_BUDGET_SECONDS", default="30"), default=30.0),
        submit_timeout_seconds=_float(_decouple_config("DETECT_SUBMIT_TIMEOUT_SECONDS", default="20"), default=20.0),
        event_grace_seconds=_float(_decouple_config("DETECT_EVENT_GRACE_SECONDS", default="5"), default=5.0),
        scan_attempts=_int(_decouple_config("DETECT_SCAN_ATTEMPTS", default="10"), default=10),
        scan_interval_seconds=_float(_decouple_config("DETECT_SCAN_INTERVAL_SECONDS", default="2"), default=2.0),
        snapshot_limit=_int(_decouple_config("DETECT_SNAPSHOT_LIMIT", default="25"), default=25),
        fetch_budget=_int(_decouple_config("DETECT_FETCH_BUDGET", default="8"), default=8),
        marker_ratio=_float(_decouple_config("DETECT_MARKER_RATIO", default="0.5"), default=0.5),
        plain_ratio=_float(_decouple_config("DETECT_PLAIN_RATIO", default="0.6"), default=0.6),
        min_fragment_matches=_int(_decouple_config("DETECT_MIN_FRAGMENT_MATCHES", default="2"), default=2),
        short_line_length=_int(_decouple_config("DETECT_SHORT_LINE_LENGTH", default="12"), default=12),
        short_line_weight=_float(_decouple_config("DETECT_SHORT_LINE_WEIGHT", default="0.5"), default=0.5),
    )

    return Settings(
        environment=environment,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        http=http_settings,
        mail=mail_settings,
        detection=detection_settings,
    )


def clear_settings_cache() -> None:
    """Drop cached settings so tests can change the environment."""
    get_settings.cache_clear()
