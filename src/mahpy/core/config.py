from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from .exceptions import ConfigError

logger = logging.getLogger("mahpy.core.config")

CONFIG_FILENAME = "mahpy.yml"
DEFAULT_VERIFY_KEY_ENV = "MAHPY_VERIFY_KEY"
DEFAULT_SHARED_SECRET_ENV = "MAHPY_WEBHOOK_SECRET"
ADAPTER_KINDS = ("poll", "webhook")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _parse_int(
    cfg: Mapping[str, Any],
    key: str,
    default: Optional[int],
    *,
    section: str,
    minimum: int = 0,
) -> Optional[int]:
    value = cfg.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{section}.{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be an integer") from None
    if parsed < minimum:
        raise ConfigError(f"{section}.{key} must be >= {minimum}")
    return parsed


def _parse_optional_str(cfg: Mapping[str, Any], key: str) -> Optional[str]:
    value = cfg.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _secret_from_env(
    cfg: Mapping[str, Any],
    key: str,
    env_key: str,
    default_env: str,
    env: Mapping[str, str],
) -> tuple[Optional[str], str]:
    env_name = str(cfg.get(env_key, default_env)).strip()
    if not env_name:
        raise ConfigError(f"{env_key} must be non-empty")
    value = _parse_optional_str(cfg, key)
    if value is None:
        value = (env.get(env_name) or "").strip() or None
    return value, env_name


@dataclass(frozen=True)
class ServerConfig:
    base_url: str = "http://localhost:8080"
    account_id: Optional[int] = None
    verify_key: Optional[str] = None
    verify_key_env: str = DEFAULT_VERIFY_KEY_ENV
    timeout_seconds: float = 10.0
    ack_action: Optional[str] = None

    @classmethod
    def from_raw(
        cls, raw: Mapping[str, Any], *, env: Mapping[str, str]
    ) -> "ServerConfig":
        base_url = str(raw.get("base_url", cls.base_url)).strip()
        if not base_url.startswith(("http://", "https://")):
            raise ConfigError("server.base_url must be an http(s) URL")
        verify_key, verify_key_env = _secret_from_env(
            raw, "verify_key", "verify_key_env", DEFAULT_VERIFY_KEY_ENV, env
        )
        try:
            timeout = float(raw.get("timeout_seconds", cls.timeout_seconds))
        except (TypeError, ValueError):
            raise ConfigError("server.timeout_seconds must be a number") from None
        if timeout <= 0:
            raise ConfigError("server.timeout_seconds must be > 0")
        return cls(
            base_url=base_url,
            account_id=_parse_int(raw, "account_id", None, section="server", minimum=1),
            verify_key=verify_key,
            verify_key_env=verify_key_env,
            timeout_seconds=timeout,
            ack_action=_parse_optional_str(raw, "ack_action"),
        )


@dataclass(frozen=True)
class PollingConfig:
    poll_interval_ms: int = 50
    max_batch_size: Optional[int] = 10
    backoff_initial_ms: int = 500
    backoff_max_ms: int = 30_000
    drain_timeout_ms: Optional[int] = 0

    def __post_init__(self) -> None:
        if self.poll_interval_ms < 0:
            raise ConfigError("polling.poll_interval_ms must be >= 0")
        if self.max_batch_size is not None and self.max_batch_size < 1:
            raise ConfigError("polling.max_batch_size must be >= 1")
        if self.backoff_initial_ms < 0:
            raise ConfigError("polling.backoff_initial_ms must be >= 0")
        if self.backoff_max_ms < self.backoff_initial_ms:
            raise ConfigError("polling.backoff_max_ms must be >= backoff_initial_ms")

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "PollingConfig":
        return cls(
            poll_interval_ms=_parse_int(
                raw, "poll_interval_ms", cls.poll_interval_ms, section="polling"
            )
            or 0,
            max_batch_size=_parse_int(
                raw, "max_batch_size", cls.max_batch_size, section="polling", minimum=1
            ),
            backoff_initial_ms=_parse_int(
                raw, "backoff_initial_ms", cls.backoff_initial_ms, section="polling"
            )
            or 0,
            backoff_max_ms=_parse_int(
                raw, "backoff_max_ms", cls.backoff_max_ms, section="polling"
            )
            or 0,
            drain_timeout_ms=_parse_int(
                raw, "drain_timeout_ms", cls.drain_timeout_ms, section="polling"
            ),
        )


@dataclass(frozen=True)
class WebhookConfig:
    bind_address: str = "127.0.0.1"
    bind_port: int = 8081
    path: str = "/"
    shared_secret: Optional[str] = None
    drain_timeout_ms: Optional[int] = 0
    max_body_bytes: int = 0x10000

    def __post_init__(self) -> None:
        if not self.path.startswith("/"):
            raise ConfigError("webhook.path must start with '/'")
        if not 0 <= self.bind_port <= 65535:
            raise ConfigError("webhook.bind_port must be between 0 and 65535")

    @classmethod
    def from_raw(
        cls, raw: Mapping[str, Any], *, env: Mapping[str, str]
    ) -> "WebhookConfig":
        shared_secret, _env_name = _secret_from_env(
            raw, "shared_secret", "shared_secret_env", DEFAULT_SHARED_SECRET_ENV, env
        )
        bind_address = str(raw.get("bind_address", cls.bind_address)).strip()
        if not bind_address:
            raise ConfigError("webhook.bind_address must be non-empty")
        return cls(
            bind_address=bind_address,
            bind_port=_parse_int(raw, "bind_port", cls.bind_port, section="webhook")
            or 0,
            path=str(raw.get("path", cls.path)).strip() or "/",
            shared_secret=shared_secret,
            drain_timeout_ms=_parse_int(
                raw, "drain_timeout_ms", cls.drain_timeout_ms, section="webhook"
            ),
            max_body_bytes=_parse_int(
                raw, "max_body_bytes", cls.max_body_bytes, section="webhook", minimum=1
            )
            or cls.max_body_bytes,
        )


@dataclass(frozen=True)
class DispatcherConfig:
    queue_capacity: int = 64
    dedupe_window: int = 0

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "DispatcherConfig":
        return cls(
            queue_capacity=_parse_int(
                raw, "queue_capacity", cls.queue_capacity, section="dispatcher", minimum=1
            )
            or cls.queue_capacity,
            dedupe_window=_parse_int(
                raw, "dedupe_window", cls.dedupe_window, section="dispatcher"
            )
            or 0,
        )


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 3

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, root: Path) -> "LogConfig":
        level = str(raw.get("level", cls.level)).strip().upper()
        if level not in LOG_LEVELS:
            raise ConfigError(f"log.level must be one of {', '.join(LOG_LEVELS)}")
        raw_path = _parse_optional_str(raw, "path")
        path = None
        if raw_path is not None:
            path = Path(raw_path).expanduser()
            if not path.is_absolute():
                path = root / path
        return cls(
            level=level,
            path=path,
            max_bytes=_parse_int(raw, "max_bytes", cls.max_bytes, section="log", minimum=1)
            or cls.max_bytes,
            backup_count=_parse_int(raw, "backup_count", cls.backup_count, section="log")
            or 0,
        )


@dataclass(frozen=True)
class MahConfig:
    root: Path
    adapter: str = "poll"
    server: ServerConfig = field(default_factory=ServerConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_raw(
        cls,
        raw: Mapping[str, Any],
        *,
        root: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> "MahConfig":
        env = os.environ if env is None else env
        adapter = str(raw.get("adapter", "poll")).strip().lower()
        if adapter not in ADAPTER_KINDS:
            raise ConfigError(f"adapter must be one of {', '.join(ADAPTER_KINDS)}")
        return cls(
            root=root,
            adapter=adapter,
            server=ServerConfig.from_raw(_section(raw, "server"), env=env),
            polling=PollingConfig.from_raw(_section(raw, "polling")),
            webhook=WebhookConfig.from_raw(_section(raw, "webhook"), env=env),
            dispatcher=DispatcherConfig.from_raw(_section(raw, "dispatcher")),
            log=LogConfig.from_raw(_section(raw, "log"), root=root),
        )


def _load_yaml_dict(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def load_config(
    path: Union[str, Path, None] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> MahConfig:
    """Load `mahpy.yml` (or `path`); a missing file yields the defaults."""

    config_path = Path(path) if path is not None else Path.cwd() / CONFIG_FILENAME
    raw = _load_yaml_dict(config_path)
    if not raw:
        logger.debug("No config found at %s; using defaults", config_path)
    return MahConfig.from_raw(raw, root=config_path.resolve().parent, env=env)
