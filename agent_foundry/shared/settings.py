"""Shared runtime settings for the local-first SQLite store and lease policy."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _load_config_file(path: str) -> dict[str, Any]:
    if not path.strip():
        return {}
    loaded = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError("config_file_must_be_a_mapping")
    return loaded


def _parse_int(value: Any, name: str, *, minimum: int) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"invalid_integer:{name}") from exc
    if parsed < minimum:
        raise ValueError(f"value_below_minimum:{name}")
    return parsed


def _parse_bool(value: Any, name: str) -> bool:
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid_boolean:{name}")


@dataclass(frozen=True)
class FoundrySettings:
    """Filesystem locations and lease defaults used by workers and the CLI."""

    data_dir: Path
    sqlite_path: Path
    log_dir: Path
    lease_seconds: int
    max_attempts: int
    bump_attempt_on_reclaim: bool

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "FoundrySettings":
        source = os.environ if env is None else env
        file_values = _load_config_file(source.get("AGENT_FOUNDRY_CONFIG", ""))

        def pick(key: str, default: Any) -> Any:
            env_name = f"AGENT_FOUNDRY_{key.upper()}"
            if env_name in source:
                return source[env_name]
            return file_values.get(key, default)

        data_dir = Path(pick("data_dir", "./data"))
        sqlite_path = Path(pick("sqlite_path", str(data_dir / "agent_foundry.sqlite")))
        log_dir = Path(pick("log_dir", str(data_dir / "logs")))
        return cls(
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            log_dir=log_dir,
            lease_seconds=_parse_int(
                pick("lease_seconds", 600), "AGENT_FOUNDRY_LEASE_SECONDS", minimum=1
            ),
            max_attempts=_parse_int(
                pick("max_attempts", 3), "AGENT_FOUNDRY_MAX_ATTEMPTS", minimum=1
            ),
            bump_attempt_on_reclaim=_parse_bool(
                pick("bump_attempt_on_reclaim", True), "AGENT_FOUNDRY_BUMP_ATTEMPT_ON_RECLAIM"
            ),
        )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)


def get_settings(env: dict[str, str] | None = None) -> FoundrySettings:
    """Build settings from the environment (and optional YAML file) and create directories."""

    settings = FoundrySettings.from_env(env)
    settings.ensure_directories()
    return settings
