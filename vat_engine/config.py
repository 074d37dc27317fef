"""
Engine configuration and startup validation.

Settings come from a dict (e.g. a JSON file) or from VAT_ENGINE_*
environment variables. validate_config() reports problems as a list of
ConfigIssue entries rather than failing on the first one.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from vat_engine.exceptions import ConfigError


class Environment(Enum):
    TEST = "test"
    PRODUCTION = "production"


AUTHORITY_URLS: dict[Environment, str] = {
    Environment.TEST: "https://bramka-v3.t.mf.gov.pl",
    Environment.PRODUCTION: "https://bramka-v3.mf.gov.pl",
}

DEFAULT_RETRY_SCHEDULE: tuple[int, ...] = (1, 60, 300, 900, 3600)

_ENV_PREFIX = "VAT_ENGINE_"


@dataclass
class EngineConfig:
    """Runtime settings for the gateway, orchestrator and batch runner."""

    environment: Environment = Environment.TEST
    base_url: Optional[str] = None
    request_timeout: float = 30.0
    retry_schedule: tuple[int, ...] = DEFAULT_RETRY_SCHEDULE
    max_retries: int = 5
    poll_interval: int = 30
    webhook_poll_interval: int = 120
    max_polling_duration: int = 7200
    webhook_secret: Optional[str] = None
    batch_workers: int = 5
    system_name: str = "vat-settlement-engine"
    extra: dict = field(default_factory=dict)

    @property
    def authority_url(self) -> str:
        return (self.base_url or AUTHORITY_URLS[self.environment]).rstrip("/")

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.webhook_secret)

    @property
    def effective_poll_interval(self) -> int:
        """Polling stays on with a webhook channel, just less often."""
        if self.webhook_enabled:
            return max(self.poll_interval, self.webhook_poll_interval)
        return self.poll_interval

    @classmethod
    def from_dict(cls, data: Mapping) -> "EngineConfig":
        known = {
            "environment", "base_url", "request_timeout", "retry_schedule",
            "max_retries", "poll_interval", "webhook_poll_interval",
            "max_polling_duration", "webhook_secret", "batch_workers", "system_name",
        }
        try:
            schedule = data.get("retry_schedule", DEFAULT_RETRY_SCHEDULE)
            if isinstance(schedule, str):
                schedule = [part for part in schedule.split(",") if part.strip()]
            return cls(
                environment=Environment(
                    str(data.get("environment", Environment.TEST.value)).lower()
                ),
                base_url=data.get("base_url") or None,
                request_timeout=float(data.get("request_timeout", 30.0)),
                retry_schedule=tuple(int(s) for s in schedule),
                max_retries=int(data.get("max_retries", 5)),
                poll_interval=int(data.get("poll_interval", 30)),
                webhook_poll_interval=int(data.get("webhook_poll_interval", 120)),
                max_polling_duration=int(data.get("max_polling_duration", 7200)),
                webhook_secret=data.get("webhook_secret") or None,
                batch_workers=int(data.get("batch_workers", 5)),
                system_name=str(data.get("system_name", "vat-settlement-engine")),
                extra={k: v for k, v in data.items() if k not in known},
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid engine configuration: {exc}") from exc

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build from VAT_ENGINE_* variables; unset ones keep their defaults."""
        environ = os.environ if environ is None else environ
        data = {
            key[len(_ENV_PREFIX):].lower(): value
            for key, value in environ.items()
            if key.startswith(_ENV_PREFIX)
        }
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return {
            "environment": self.environment.value,
            "authority_url": self.authority_url,
            "request_timeout": self.request_timeout,
            "retry_schedule": list(self.retry_schedule),
            "max_retries": self.max_retries,
            "poll_interval": self.poll_interval,
            "webhook_poll_interval": self.webhook_poll_interval,
            "max_polling_duration": self.max_polling_duration,
            "webhook_enabled": self.webhook_enabled,
            "batch_workers": self.batch_workers,
            "system_name": self.system_name,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class ConfigIssue:
    """Configuration issue"""
    field: str
    message: str
    severity: str = "error"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation"""
    is_valid: bool
    issues: list[ConfigIssue]

    def get_errors(self) -> list[ConfigIssue]:
        return [i for i in self.issues if i.severity == "error"]

    def get_warnings(self) -> list[ConfigIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    def raise_for_errors(self) -> None:
        errors = self.get_errors()
        if errors:
            raise ConfigError(
                "Engine configuration is invalid",
                issues=[f"{i.field}: {i.message}" for i in errors],
            )


def _validate_authority(config: EngineConfig) -> list[ConfigIssue]:
    issues = []
    url = config.authority_url
    if not url.startswith(("http://", "https://")):
        issues.append(ConfigIssue("base_url", f"Not an HTTP URL: {url}"))
    elif not url.startswith("https://"):
        issues.append(ConfigIssue(
            "base_url", "Authority URL should use HTTPS", severity="warning"
        ))
    if config.environment == Environment.PRODUCTION and config.base_url and (
        config.base_url.rstrip("/") != AUTHORITY_URLS[Environment.PRODUCTION]
    ):
        issues.append(ConfigIssue(
            "base_url",
            "Production environment points at a non-production authority URL",
            severity="warning",
        ))
    if config.request_timeout <= 0:
        issues.append(ConfigIssue("request_timeout", "Request timeout must be positive"))
    return issues


def _validate_retries(config: EngineConfig) -> list[ConfigIssue]:
    issues = []
    schedule = config.retry_schedule
    if not schedule:
        issues.append(ConfigIssue("retry_schedule", "Retry schedule is empty"))
    elif any(s <= 0 for s in schedule):
        issues.append(ConfigIssue("retry_schedule", "Retry delays must be positive"))
    elif any(b < a for a, b in zip(schedule, schedule[1:])):
        issues.append(ConfigIssue("retry_schedule", "Retry delays must not decrease"))
    if config.max_retries < 1:
        issues.append(ConfigIssue("max_retries", "At least one retry is required"))
    elif schedule and config.max_retries > len(schedule):
        issues.append(ConfigIssue(
            "max_retries",
            f"Retries beyond {len(schedule)} reuse the last delay",
            severity="info",
        ))
    return issues


def _validate_polling(config: EngineConfig) -> list[ConfigIssue]:
    issues = []
    if config.poll_interval <= 0:
        issues.append(ConfigIssue("poll_interval", "Poll interval must be positive"))
    if config.webhook_poll_interval < config.poll_interval:
        issues.append(ConfigIssue(
            "webhook_poll_interval",
            "Webhook poll interval is shorter than the plain poll interval",
            severity="warning",
        ))
    if config.max_polling_duration <= config.poll_interval:
        issues.append(ConfigIssue(
            "max_polling_duration", "Maximum polling duration must exceed the poll interval"
        ))
    if config.max_polling_duration <= config.request_timeout:
        issues.append(ConfigIssue(
            "max_polling_duration",
            "Maximum polling duration must exceed the per-call timeout",
        ))
    if not config.webhook_secret:
        issues.append(ConfigIssue(
            "webhook_secret",
            "No webhook secret; status updates rely on polling only",
            severity="warning",
        ))
    return issues


def _validate_batch(config: EngineConfig) -> list[ConfigIssue]:
    if not 1 <= config.batch_workers <= 32:
        return [ConfigIssue("batch_workers", "Batch workers must be between 1 and 32")]
    return []


def validate_config(config: EngineConfig) -> ConfigValidationResult:
    issues: list[ConfigIssue] = []
    issues.extend(_validate_authority(config))
    issues.extend(_validate_retries(config))
    issues.extend(_validate_polling(config))
    issues.extend(_validate_batch(config))
    is_valid = len([i for i in issues if i.severity == "error"]) == 0
    return ConfigValidationResult(is_valid=is_valid, issues=issues)
