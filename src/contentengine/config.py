from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    output_dir: str


@dataclass(frozen=True)
class WorkerConfig:
    max_execution_time_seconds: int
    time_budget_seconds: int
    batch_size: int
    max_attempts: int
    lock_timeout_minutes: int
    retry_base_minutes: int
    retry_max_minutes: int


@dataclass(frozen=True)
class PublishingConfig:
    auto_publish: bool
    min_auto_publish_score: int
    base_url: str
    section: str


@dataclass(frozen=True)
class LanguagesConfig:
    supported: list[str]
    default_languages: list[str]
    site_locale: str


@dataclass(frozen=True)
class PlannerConfig:
    event_horizon_days: int
    nationalities: list[str]


@dataclass(frozen=True)
class RetentionConfig:
    done_days: int
    failed_days: int


@dataclass(frozen=True)
class LlmConfig:
    enabled: bool
    base_url: str
    model: str
    api_key_env: str
    timeout_seconds: int
    max_tokens: int
    temperature: float
    cost_per_1k_tokens: float


@dataclass(frozen=True)
class WebhookChannelConfig:
    enabled: bool
    url: str
    secret_env: str
    delay_minutes: int


@dataclass(frozen=True)
class ChannelsConfig:
    webhook: WebhookChannelConfig
    notify_webhook_url: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    worker: WorkerConfig
    publishing: PublishingConfig
    languages: LanguagesConfig
    planner: PlannerConfig
    retention: RetentionConfig
    llm: LlmConfig
    channels: ChannelsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "Content Engine",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "output_dir": "/site/content",
    },
    "worker": {
        "max_execution_time_seconds": 55,
        "time_budget_seconds": 25,
        "batch_size": 3,
        "max_attempts": 5,
        "lock_timeout_minutes": 10,
        "retry_base_minutes": 15,
        "retry_max_minutes": 240,
    },
    "publishing": {
        "auto_publish": False,
        "min_auto_publish_score": 75,
        "base_url": "",
        "section": "guides",
    },
    "languages": {
        "supported": ["fr", "en", "it", "es"],
        "default_languages": ["fr", "en", "it", "es"],
        "site_locale": "",
    },
    "planner": {
        "event_horizon_days": 7,
        "nationalities": [
            "france",
            "italy",
            "germany",
            "usa",
            "uk",
            "spain",
            "canada",
            "japan",
            "china",
        ],
    },
    "retention": {
        "done_days": 30,
        "failed_days": 60,
    },
    "llm": {
        "enabled": False,
        "base_url": "https://api.openai.com/v1",
        "model": "",
        "api_key_env": "CE_LLM_API_KEY",
        "timeout_seconds": 60,
        "max_tokens": 2000,
        "temperature": 0.7,
        "cost_per_1k_tokens": 0.0,
    },
    "channels": {
        "webhook": {
            "enabled": False,
            "url": "",
            "secret_env": "CE_WEBHOOK_SECRET",
            "delay_minutes": 10,
        },
        "notify_webhook_url": "",
    },
}

CONFIG_KEY = "config.runtime"

# default_languages may also be written as "fr, en" by operators.
_LIST_OR_STRING_PATHS = {"config.runtime.languages.default_languages"}


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def load_config_file(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    _validate_timezone(cfg, errors)
    return errors


def _validate_timezone(cfg: dict[str, Any], errors: list[str]) -> None:
    app_cfg = cfg.get("app") if isinstance(cfg, dict) else None
    if not isinstance(app_cfg, dict):
        return
    name = app_cfg.get("timezone")
    if not isinstance(name, str) or not name:
        return
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        errors.append(f"config.runtime.app.timezone is not a known timezone: {name}")


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if path in _LIST_OR_STRING_PATHS and isinstance(value, str):
        return
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        elif value < 0:
            errors.append(f"{path} must not be negative")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def normalize_language_code(code: str) -> str:
    """Reduce ``fr_FR`` / ``fr-FR`` / ``FR`` to ``fr``."""
    cleaned = str(code or "").strip().lower().replace("_", "-")
    return cleaned.split("-", 1)[0]


def normalize_language_list(value: Any) -> list[str]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        return []
    languages: list[str] = []
    for item in items:
        code = normalize_language_code(str(item))
        if code and code not in languages:
            languages.append(code)
    return languages


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    worker_cfg = cfg.get("worker") or {}
    publishing_cfg = cfg.get("publishing") or {}
    languages_cfg = cfg.get("languages") or {}
    planner_cfg = cfg.get("planner") or {}
    retention_cfg = cfg.get("retention") or {}
    llm_cfg = cfg.get("llm") or {}
    channels_cfg = cfg.get("channels") or {}
    webhook_cfg = channels_cfg.get("webhook") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone") or "UTC"),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        output_dir=str(paths_cfg.get("output_dir")),
    )

    worker = WorkerConfig(
        max_execution_time_seconds=int(worker_cfg.get("max_execution_time_seconds")),
        time_budget_seconds=int(worker_cfg.get("time_budget_seconds")),
        batch_size=max(1, int(worker_cfg.get("batch_size"))),
        max_attempts=max(1, int(worker_cfg.get("max_attempts"))),
        lock_timeout_minutes=int(worker_cfg.get("lock_timeout_minutes")),
        retry_base_minutes=int(worker_cfg.get("retry_base_minutes")),
        retry_max_minutes=int(worker_cfg.get("retry_max_minutes")),
    )

    publishing = PublishingConfig(
        auto_publish=bool(publishing_cfg.get("auto_publish")),
        min_auto_publish_score=int(publishing_cfg.get("min_auto_publish_score")),
        base_url=str(publishing_cfg.get("base_url") or ""),
        section=str(publishing_cfg.get("section") or ""),
    )

    languages = LanguagesConfig(
        supported=normalize_language_list(languages_cfg.get("supported")),
        default_languages=normalize_language_list(languages_cfg.get("default_languages")),
        site_locale=str(languages_cfg.get("site_locale") or ""),
    )

    planner = PlannerConfig(
        event_horizon_days=int(planner_cfg.get("event_horizon_days")),
        nationalities=list(planner_cfg.get("nationalities") or []),
    )

    retention = RetentionConfig(
        done_days=int(retention_cfg.get("done_days")),
        failed_days=int(retention_cfg.get("failed_days")),
    )

    llm = LlmConfig(
        enabled=bool(llm_cfg.get("enabled")),
        base_url=str(llm_cfg.get("base_url") or ""),
        model=str(llm_cfg.get("model") or ""),
        api_key_env=str(llm_cfg.get("api_key_env") or ""),
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        max_tokens=int(llm_cfg.get("max_tokens")),
        temperature=float(llm_cfg.get("temperature")),
        cost_per_1k_tokens=float(llm_cfg.get("cost_per_1k_tokens")),
    )

    channels = ChannelsConfig(
        webhook=WebhookChannelConfig(
            enabled=bool(webhook_cfg.get("enabled")),
            url=str(webhook_cfg.get("url") or ""),
            secret_env=str(webhook_cfg.get("secret_env") or ""),
            delay_minutes=int(webhook_cfg.get("delay_minutes")),
        ),
        notify_webhook_url=str(channels_cfg.get("notify_webhook_url") or ""),
    )

    return Config(
        app=app,
        paths=paths,
        worker=worker,
        publishing=publishing,
        languages=languages,
        planner=planner,
        retention=retention,
        llm=llm,
        channels=channels,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
