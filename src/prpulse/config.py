from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from prpulse.models import ActivityKind


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


_SOURCE_TYPES = {"github", "json_file"}
_DELIVERY_TYPES = {"log", "command", "webhook"}
_DEFAULT_COMMAND = ["notify-send", "--app-name=prpulse", "{title}", "{body}"]


@dataclass(slots=True, frozen=True)
class NotificationPreferences:
    """Per-category toggles threaded through every poll cycle.

    Both default to off: notifications are opt-in.
    """

    notify_comments: bool = False
    notify_reviews: bool = False

    def is_enabled(self, kind: ActivityKind) -> bool:
        if kind is ActivityKind.COMMENT:
            return self.notify_comments
        return self.notify_reviews


@dataclass(slots=True)
class GitHubSettings:
    api_url: str = "https://api.github.com"
    token_env_var: str = "GITHUB_TOKEN"
    timeout_seconds: int = 30
    max_comments: int = 20
    max_reviews: int = 20


@dataclass(slots=True)
class SourceSettings:
    type: str = "github"
    path: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DeliverySettings:
    type: str = "log"
    command: list[str] = field(default_factory=lambda: list(_DEFAULT_COMMAND))
    webhook_env_var: str = "PRPULSE_WEBHOOK_URL"
    timeout_seconds: int = 15


@dataclass(slots=True)
class PollingSettings:
    interval_seconds: int = 300
    max_workers: int = 1


@dataclass(slots=True)
class StorageSettings:
    type: str = "sqlite"
    path: str = "data/prpulse.sqlite"


@dataclass(slots=True)
class AppConfig:
    github: GitHubSettings = field(default_factory=GitHubSettings)
    source: SourceSettings = field(default_factory=SourceSettings)
    notifications: NotificationPreferences = field(default_factory=NotificationPreferences)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    log_level: str = "INFO"


def _as_string_list(value: Any, *, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings, got: {type(value)!r}")
    return [str(item) for item in value if str(item).strip()]


def _as_bool(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value

    if isinstance(value, int) and value in {0, 1}:
        return bool(value)

    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False

    raise ConfigError(f"{field_name} must be a boolean")


def _as_int(value: Any, *, field_name: str, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return parsed


def _as_mapping(parsed: dict[str, Any], key: str) -> dict[str, Any]:
    raw = parsed.get(key, {}) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{key} must be a mapping")
    return raw


def _as_choice(value: Any, *, field_name: str, choices: set[str], default: str) -> str:
    normalized = str(value if value is not None else default).strip().lower() or default
    if normalized not in choices:
        available = ", ".join(sorted(choices))
        raise ConfigError(f"{field_name} must be one of: {available}")
    return normalized


def _resolve_relative_path(config_path: Path, raw_path: str) -> str:
    candidate = Path(raw_path).expanduser()
    if candidate.is_absolute():
        return str(candidate)
    return str((config_path.parent / candidate).resolve())


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        parsed = yaml.safe_load(handle) or {}

    if not isinstance(parsed, dict):
        raise ConfigError("Config root must be a mapping")

    raw_github = _as_mapping(parsed, "github")
    github_settings = GitHubSettings(
        api_url=str(raw_github.get("api_url", "https://api.github.com")).strip().rstrip("/")
        or "https://api.github.com",
        token_env_var=str(raw_github.get("token_env_var", "GITHUB_TOKEN")).strip()
        or "GITHUB_TOKEN",
        timeout_seconds=_as_int(
            raw_github.get("timeout_seconds", 30),
            field_name="github.timeout_seconds",
            minimum=1,
        ),
        max_comments=_as_int(
            raw_github.get("max_comments", 20),
            field_name="github.max_comments",
            minimum=1,
        ),
        max_reviews=_as_int(
            raw_github.get("max_reviews", 20),
            field_name="github.max_reviews",
            minimum=1,
        ),
    )

    raw_source = _as_mapping(parsed, "source")
    source_type = _as_choice(
        raw_source.get("type"),
        field_name="source.type",
        choices=_SOURCE_TYPES,
        default="github",
    )
    source_path_raw = str(raw_source.get("path", "") or "").strip()
    if source_type == "json_file" and not source_path_raw:
        raise ConfigError("source.path is required for json_file sources")
    source_settings = SourceSettings(
        type=source_type,
        path=_resolve_relative_path(config_path, source_path_raw) if source_path_raw else None,
        options={key: value for key, value in raw_source.items() if key not in {"type", "path"}},
    )

    raw_notifications = _as_mapping(parsed, "notifications")
    preferences = NotificationPreferences(
        notify_comments=_as_bool(
            raw_notifications.get("comments", False),
            field_name="notifications.comments",
        ),
        notify_reviews=_as_bool(
            raw_notifications.get("reviews", False),
            field_name="notifications.reviews",
        ),
    )

    raw_delivery = _as_mapping(parsed, "delivery")
    command = _as_string_list(raw_delivery.get("command"), field_name="delivery.command")
    delivery_settings = DeliverySettings(
        type=_as_choice(
            raw_delivery.get("type"),
            field_name="delivery.type",
            choices=_DELIVERY_TYPES,
            default="log",
        ),
        command=command or list(_DEFAULT_COMMAND),
        webhook_env_var=str(raw_delivery.get("webhook_env_var", "PRPULSE_WEBHOOK_URL")).strip()
        or "PRPULSE_WEBHOOK_URL",
        timeout_seconds=_as_int(
            raw_delivery.get("timeout_seconds", 15),
            field_name="delivery.timeout_seconds",
            minimum=1,
        ),
    )

    raw_polling = _as_mapping(parsed, "polling")
    polling_settings = PollingSettings(
        interval_seconds=_as_int(
            raw_polling.get("interval_seconds", 300),
            field_name="polling.interval_seconds",
            minimum=10,
        ),
        max_workers=_as_int(
            raw_polling.get("max_workers", 1),
            field_name="polling.max_workers",
            minimum=1,
        ),
    )

    raw_storage = _as_mapping(parsed, "storage")
    storage_path = (
        str(raw_storage.get("path", "data/prpulse.sqlite")).strip() or "data/prpulse.sqlite"
    )
    storage_settings = StorageSettings(
        type=str(raw_storage.get("type", "sqlite")).strip() or "sqlite",
        path=_resolve_relative_path(config_path, storage_path),
    )

    return AppConfig(
        github=github_settings,
        source=source_settings,
        notifications=preferences,
        delivery=delivery_settings,
        polling=polling_settings,
        storage=storage_settings,
        log_level=str(parsed.get("log_level", "INFO")).upper(),
    )
