"""
Configuration loader for the delayer service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "sqs" for production
    queue_url: str = ""
    region: str = ""
    endpoint_url: str = ""              # e.g. a local SQS emulator


@dataclass
class PollingConfig:
    wait_time_seconds: int = 20         # long-poll wait per receive
    visibility_timeout: int = 10        # seconds a received message stays hidden
    max_messages: int = 5               # batch size per receive
    max_queue_delay: int = 900          # native delay ceiling of the queue
    autostart: bool = True              # start polling with the API process


@dataclass
class DeliveryConfig:
    type: str = "log"                   # "log" | "webhook"
    webhook_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 3.0        # per attempt
    max_attempts: int = 2               # attempts plus backoff must fit in polling.visibility_timeout


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "SQS Delayer"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    # Env substitution leaves booleans as strings
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DELAYER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))

        if "queue" in raw:
            q = raw["queue"] or {}
            settings.queue = QueueConfig(
                backend=q.get("backend", "memory"),
                queue_url=q.get("queue_url", ""),
                region=q.get("region", ""),
                endpoint_url=q.get("endpoint_url", ""),
            )

        if "polling" in raw:
            p = raw["polling"] or {}
            settings.polling = PollingConfig(
                wait_time_seconds=int(p.get("wait_time_seconds", 20)),
                visibility_timeout=int(p.get("visibility_timeout", 10)),
                max_messages=int(p.get("max_messages", 5)),
                max_queue_delay=int(p.get("max_queue_delay", 900)),
                autostart=_as_bool(p.get("autostart", True)),
            )

        if "delivery" in raw:
            d = raw["delivery"] or {}
            settings.delivery = DeliveryConfig(
                type=d.get("type", "log"),
                webhook_url=d.get("webhook_url", ""),
                headers=d.get("headers", {}) or {},
                timeout_seconds=float(d.get("timeout_seconds", 3.0)),
                max_attempts=int(d.get("max_attempts", 2)),
            )

        if "logging" in raw:
            lg = raw["logging"] or {}
            settings.logging = LoggingConfig(
                level=str(lg.get("level", "INFO")).upper(),
                json=_as_bool(lg.get("json", False)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
