from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


@dataclass(frozen=True)
class Settings:
    # Directory
    directory_url: str | None = None
    directory_token: str | None = None
    realms: dict[str, str] = field(default_factory=dict)

    # Local keyring
    keyring_db: str = "./data/keyring.sqlite3"

    # Paths / logging
    log_dir: str = "./logs"
    report_dir: str = "./reports"
    log_level: str = "INFO"

    # HTTP
    timeout_seconds: float = 10.0
    retries: int = 2
    retry_backoff_seconds: float = 0.5
    tls_skip_verify: bool = False
    ca_file: str | None = None


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    sources_used: list[str]


def _read_yaml_config(path: Path) -> dict:
    if not path.exists() or not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def _env_get(name: str) -> str | None:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def parse_bool(v: str) -> bool:
    vv = v.lower()
    if vv in ("1", "true", "yes", "y"):
        return True
    if vv in ("0", "false", "no", "n"):
        return False
    raise ValueError(f"Invalid boolean env value: {v}")


def parse_realms(value: Any) -> dict[str, str]:
    """
    Назначение:
        Нормализует список realm из config/env/CLI в словарь domain -> realm.

    Входные данные:
        value:
            dict {domain: realm} | list ["domain", "domain=realm"] |
            str "domain,domain=realm" | None.
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k).strip().lower(): str(v).strip() for k, v in value.items() if str(k).strip()}
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"Invalid realms value: {value!r}")
    realms: dict[str, str] = {}
    for item in value:
        domain, sep, realm = str(item).strip().partition("=")
        domain = domain.strip().lower()
        if not domain:
            continue
        realms[domain] = realm.strip() if sep and realm.strip() else domain
    return realms


ENV_VARS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "directory_url": ("KEYSYNC_DIRECTORY_URL", str),
    "directory_token": ("KEYSYNC_DIRECTORY_TOKEN", str),
    "realms": ("KEYSYNC_REALMS", parse_realms),
    "keyring_db": ("KEYSYNC_KEYRING_DB", str),
    "log_dir": ("KEYSYNC_LOG_DIR", str),
    "report_dir": ("KEYSYNC_REPORT_DIR", str),
    "log_level": ("KEYSYNC_LOG_LEVEL", str),
    "timeout_seconds": ("KEYSYNC_TIMEOUT_SECONDS", float),
    "retries": ("KEYSYNC_RETRIES", int),
    "retry_backoff_seconds": ("KEYSYNC_RETRY_BACKOFF_SECONDS", float),
    "tls_skip_verify": ("KEYSYNC_TLS_SKIP_VERIFY", parse_bool),
    "ca_file": ("KEYSYNC_CA_FILE", str),
}


def load_settings(
    config_path: str | None,
    cli_overrides: dict,
) -> LoadedSettings:
    """
    Priority: CLI > ENV > config > defaults
    """
    sources: list[str] = []
    defaults = Settings()
    merged: dict[str, Any] = {name: getattr(defaults, name) for name in ENV_VARS}

    # 1) config file
    if config_path:
        cfg = _read_yaml_config(Path(config_path))
        if cfg:
            sources.append("config")
        for name in ENV_VARS:
            if name in cfg and cfg[name] is not None:
                merged[name] = cfg[name]

    # 2) env
    env_used = False
    for name, (env_name, parser) in ENV_VARS.items():
        raw = _env_get(env_name)
        if raw is None:
            continue
        merged[name] = parser(raw)
        env_used = True
    if env_used:
        sources.append("env")

    # 3) CLI overrides (only those explicitly passed)
    if any(v is not None for v in cli_overrides.values()):
        sources.append("cli")
    for k, v in cli_overrides.items():
        if v is None:
            continue
        merged[k] = v

    settings = Settings(
        directory_url=merged["directory_url"],
        directory_token=merged["directory_token"],
        realms=parse_realms(merged["realms"]),
        keyring_db=str(merged["keyring_db"]),
        log_dir=str(merged["log_dir"]),
        report_dir=str(merged["report_dir"]),
        log_level=str(merged["log_level"]),
        timeout_seconds=float(merged["timeout_seconds"]),
        retries=int(merged["retries"]),
        retry_backoff_seconds=float(merged["retry_backoff_seconds"]),
        tls_skip_verify=bool(merged["tls_skip_verify"]),
        ca_file=merged["ca_file"],
    )

    return LoadedSettings(settings=settings, sources_used=sources)
