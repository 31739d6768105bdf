from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import os
import yaml

from .errors import ConfigurationError


class ConfigError(ConfigurationError):
    """Raised when the configuration file is invalid."""


@dataclass(slots=True)
class LoggingConfig:
    level: str
    logger_channel_id: Optional[int]


@dataclass(slots=True)
class ClanConfig:
    key: str
    name: str
    display_name: str
    role_id: Optional[int]

    @property
    def is_server_wide(self) -> bool:
        return self.role_id is None


@dataclass(slots=True)
class LotteryConfig:
    data_file: Path
    blocked_role_id: Optional[int]
    clans: Dict[str, ClanConfig]
    history_limit: int = 50
    final_warning_minutes: int = 90
    closing_warning_minutes: int = 30
    member_fetch_timeout_seconds: float = 30.0
    member_fetch_attempts: int = 2
    warning_channels: Dict[int, int] = field(default_factory=dict)

    @property
    def clan_role_ids(self) -> List[int]:
        return [clan.role_id for clan in self.clans.values() if clan.role_id is not None]


@dataclass(slots=True)
class PermissionsConfig:
    admin_roles: List[int]
    development_guild_id: Optional[int] = None


@dataclass(slots=True)
class Config:
    token: str
    application_id: int
    guild_id: int
    timezone: str
    logging: LoggingConfig
    lottery: LotteryConfig
    permissions: PermissionsConfig

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _require(data: Dict[str, Any], key: str) -> Any:
    if key not in data:
        raise ConfigError(f"Missing required config key: {key}")
    return data[key]

def _resolve_env_value(value: str, key: str) -> str:
    trimmed = value.strip()
    if trimmed.startswith("${") and trimmed.endswith("}"):
        env_name = trimmed[2:-1].strip()
        if not env_name:
            raise ConfigError(f"Environment reference for '{key}' is empty.")
        env_value = os.getenv(env_name)
        if env_value is None:
            raise ConfigError(
                f"Environment variable '{env_name}' referenced by '{key}' is not set."
            )
        return env_value
    return value

def _positive_int(data: Dict[str, Any], key: str, default: int, *, section: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{section}.{key} must be a positive integer.")
    return value


def _optional_id(value: Any, key: str) -> Optional[int]:
    if value in (None, "", 0):
        return None
    try:
        parsed = int(_resolve_env_value(value, key) if isinstance(value, str) else value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer ID or null.") from exc
    if parsed <= 0:
        raise ConfigError(f"{key} must be a positive integer.")
    return parsed


def _parse_logging(data: Dict[str, Any]) -> LoggingConfig:
    level = data.get("level", "INFO")
    logger_channel_id = data.get("logger_channel_id")
    if logger_channel_id is not None and not isinstance(logger_channel_id, int):
        raise ConfigError(
            "logging.logger_channel_id must be an integer channel ID or null."
        )
    return LoggingConfig(level=level, logger_channel_id=logger_channel_id)


def _parse_clans(data: Any) -> Dict[str, ClanConfig]:
    if not isinstance(data, dict) or not data:
        raise ConfigError("lottery.clans must be a non-empty mapping of clan keys.")
    clans: Dict[str, ClanConfig] = {}
    for raw_key, entry in data.items():
        key = str(raw_key)
        if not isinstance(entry, dict):
            raise ConfigError(f"lottery.clans.{key} must be an object.")
        name = str(entry.get("name") or key)
        clans[key] = ClanConfig(
            key=key,
            name=name,
            display_name=str(entry.get("display_name") or name),
            role_id=_optional_id(entry.get("role_id"), f"lottery.clans.{key}.role_id"),
        )
    return clans


def _parse_warning_channels(data: Any) -> Dict[int, int]:
    if data in (None, ""):
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            "lottery.warning_channels must map target role IDs to channel IDs."
        )
    channels: Dict[int, int] = {}
    for role_id, channel_id in data.items():
        try:
            channels[int(role_id)] = int(channel_id)
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"lottery.warning_channels contains an invalid entry: {role_id!r}"
            ) from exc
    return channels


def _parse_lottery(data: Dict[str, Any]) -> LotteryConfig:
    if not isinstance(data, dict):
        raise ConfigError("lottery must be a mapping.")
    final_minutes = _positive_int(data, "final_warning_minutes", 90, section="lottery")
    closing_minutes = _positive_int(
        data, "closing_warning_minutes", 30, section="lottery"
    )
    if closing_minutes >= final_minutes:
        raise ConfigError(
            "lottery.closing_warning_minutes must be smaller than lottery.final_warning_minutes."
        )
    if final_minutes >= 7 * 24 * 60:
        raise ConfigError("lottery.final_warning_minutes must be shorter than a week.")

    timeout_raw = data.get("member_fetch_timeout_seconds", 30)
    try:
        timeout = float(timeout_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            "lottery.member_fetch_timeout_seconds must be a number."
        ) from exc
    if timeout <= 0:
        raise ConfigError("lottery.member_fetch_timeout_seconds must be positive.")

    return LotteryConfig(
        data_file=Path(str(data.get("data_file", "data/lottery_history.json"))),
        blocked_role_id=_optional_id(data.get("blocked_role_id"), "lottery.blocked_role_id"),
        clans=_parse_clans(data.get("clans")),
        history_limit=_positive_int(data, "history_limit", 50, section="lottery"),
        final_warning_minutes=final_minutes,
        closing_warning_minutes=closing_minutes,
        member_fetch_timeout_seconds=timeout,
        member_fetch_attempts=_positive_int(
            data, "member_fetch_attempts", 2, section="lottery"
        ),
        warning_channels=_parse_warning_channels(data.get("warning_channels")),
    )


def _parse_permissions(data: Dict[str, Any]) -> PermissionsConfig:
    admin_roles_raw = data.get("admin_roles", [])
    if not isinstance(admin_roles_raw, list):
        raise ConfigError("permissions.admin_roles must be a list of role IDs.")
    admin_roles: List[int] = []
    for role_id in admin_roles_raw:
        try:
            admin_roles.append(int(role_id))
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"permissions.admin_roles contains invalid role id: {role_id!r}"
            ) from exc
    return PermissionsConfig(
        admin_roles=admin_roles,
        development_guild_id=_optional_id(
            data.get("development_guild_id"), "permissions.development_guild_id"
        ),
    )


def load_config(path: Path) -> Config:
    if not path.exists():
        raise ConfigError(f"Config file {path} does not exist.")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping at the root.")

    token_raw = str(_require(data, "token"))
    token = _resolve_env_value(token_raw, "token").strip()
    if not token:
        raise ConfigError("token must not be empty.")
    application_id = int(_require(data, "application_id"))
    guild_id = _optional_id(_require(data, "guild_id"), "guild_id")
    if guild_id is None:
        raise ConfigError("guild_id must be set.")

    timezone = str(data.get("timezone", "Europe/Warsaw"))
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid timezone configured: {timezone}") from exc

    return Config(
        token=token,
        application_id=application_id,
        guild_id=guild_id,
        timezone=timezone,
        logging=_parse_logging(data.get("logging", {})),
        lottery=_parse_lottery(_require(data, "lottery")),
        permissions=_parse_permissions(data.get("permissions", {})),
    )
