"""Global configuration for OpenReserve."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "events_per_page": 10,
    "admin_events_per_page": 25,
    "database_url": "",
    "jwt_secret": "",
    "jwt_algorithm": "HS256",
    "token_lifetime_minutes": 60,
    "session_max_age_hours": 168,
    "bcrypt_rounds": 12,
    "ticket_retention_hours": 72,
    "ticket_purge_interval_hours": 6,
    "sqlite_vacuum_hours": 12,
    "enable_scheduler": True,
    "admin_email": "admin@event.com",
    "admin_password": "Admin123!",
    "admin_name": "Admin",
    "seed_events": 5,
    "seed_participants": 10,
    "seed_reservations_per_event": 5,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "events_per_page": int,
    "admin_events_per_page": int,
    "database_url": str,
    "jwt_secret": str,
    "jwt_algorithm": str,
    "token_lifetime_minutes": int,
    "session_max_age_hours": int,
    "bcrypt_rounds": int,
    "ticket_retention_hours": int,
    "ticket_purge_interval_hours": int,
    "sqlite_vacuum_hours": int,
    "enable_scheduler": bool,
    "admin_email": str,
    "admin_password": str,
    "admin_name": str,
    "seed_events": int,
    "seed_participants": int,
    "seed_reservations_per_event": int,
    "app_host": str,
    "app_port": int,
}

# Settings that are written to disk by `config` but never echoed back.
SECRET_KEYS = {"jwt_secret", "admin_password"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    tickets_dir: Path
    ticket_background: Path | None
    events_per_page: int
    admin_events_per_page: int
    database_url: str
    jwt_secret: str
    jwt_algorithm: str
    token_lifetime_minutes: int
    session_max_age_hours: int
    bcrypt_rounds: int
    ticket_retention_hours: int
    ticket_purge_interval_hours: int
    sqlite_vacuum_hours: int
    enable_scheduler: bool
    admin_email: str
    admin_password: str
    admin_name: str
    seed_events: int
    seed_participants: int
    seed_reservations_per_event: int
    app_host: str
    app_port: int
    signing_key_meta_key: str
    config_path: Path

    @property
    def token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.token_lifetime_minutes)

    @property
    def session_max_age(self) -> timedelta:
        return timedelta(hours=self.session_max_age_hours)

    @property
    def ticket_retention(self) -> timedelta:
        return timedelta(hours=self.ticket_retention_hours)

    @property
    def sqlalchemy_url(self) -> str:
        return self.database_url or f"sqlite:///{self.database_path}"


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"OPENRESERVE_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_under(base: Path, raw: str | Path | None, default: Path) -> Path:
    resolved = Path(raw) if raw else default
    if not resolved.is_absolute():
        resolved = base / resolved
    return resolved


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
    tickets_dir: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = _resolve_under(resolved_base, data_dir, resolved_base / "data")
    resolved_db = _resolve_under(
        resolved_base, database_path, resolved_data / "openreserve.db"
    )
    resolved_tickets = _resolve_under(
        resolved_base, tickets_dir, resolved_data / "tickets"
    )
    return resolved_base, resolved_data, resolved_db, resolved_tickets


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("OPENRESERVE_BASE_DIR", Path.cwd()))
    env_config = os.getenv("OPENRESERVE_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "openreserve.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value, tickets_dir_value = (
        _resolve_paths(
            base_dir=base_dir,
            data_dir=os.getenv("OPENRESERVE_DATA_DIR", toml_config.get("data_dir")),
            database_path=os.getenv("OPENRESERVE_DB", toml_config.get("database_path")),
            tickets_dir=os.getenv(
                "OPENRESERVE_TICKETS_DIR", toml_config.get("tickets_dir")
            ),
        )
    )
    raw_background = os.getenv(
        "OPENRESERVE_TICKET_BACKGROUND", toml_config.get("ticket_background")
    )
    ticket_background = (
        _resolve_under(base_dir_value, raw_background, base_dir_value)
        if raw_background
        else None
    )

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        tickets_dir=tickets_dir_value,
        ticket_background=ticket_background,
        signing_key_meta_key="token_signing_key",
        config_path=config_path,
        **{
            key: _config_layered_value(key, toml_config=toml_config)
            for key in DEFAULTS
        },
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings, *, include_secrets: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for field in fields(settings):
        if field.name in SECRET_KEYS and not include_secrets:
            continue
        value = getattr(settings, field.name)
        payload[field.name] = str(value) if isinstance(value, Path) else value
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# OpenReserve configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
