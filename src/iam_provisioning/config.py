"""iam_provisioning.config

YAML settings for the provisioning engine (config/provisioning.yml).

Usage:
    from pathlib import Path
    from iam_provisioning.config import load_settings

    settings = load_settings(Path("config/provisioning.yml"))
    policy = settings.retry_policy()

Every key is optional; missing keys fall back to the dataclass defaults.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from iam_provisioning.executor import RetryPolicy
from iam_provisioning.parser import MAX_ROWS

# key -> (type, minimum)
_KEY_SPECS: dict[str, tuple[type, float]] = {
    "max_rows": (int, 1),
    "max_write_attempts": (int, 1),
    "retry_backoff_seconds": (float, 0.0),
    "max_consecutive_store_failures": (int, 1),
    "store_timeout_seconds": (float, 0.001),
    "progress_flush_every": (int, 1),
}


class SettingsValidationError(ValueError):
    """Raised when a YAML settings file fails schema validation."""


@dataclass(frozen=True)
class ProvisioningSettings:
    max_rows: int = MAX_ROWS
    max_write_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    max_consecutive_store_failures: int = 25
    store_timeout_seconds: float = 10.0
    progress_flush_every: int = 100
    yaml_hash: str | None = field(default=None, compare=False)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_write_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            max_consecutive_failures=self.max_consecutive_store_failures,
        )

    def with_overrides(self, **overrides: Any) -> ProvisioningSettings:
        """Return a copy with the non-None overrides applied (CLI flags win)."""
        given = {k: v for k, v in overrides.items() if v is not None}
        validate_settings(given)
        return replace(self, **given)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def validate_settings(data: Any) -> None:
    """Raise SettingsValidationError if data does not match the settings schema."""
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    unknown = set(data) - set(_KEY_SPECS)
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    for key, value in data.items():
        typ, minimum = _KEY_SPECS[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SettingsValidationError(f"Setting '{key}' value '{value}' is not numeric.")
        if typ is int and not isinstance(value, int):
            raise SettingsValidationError(f"Setting '{key}' value {value} must be an integer.")
        if value < minimum:
            raise SettingsValidationError(f"Setting '{key}' value {value} must be >= {minimum}.")


def load_settings(yaml_path: Path | None = None) -> ProvisioningSettings:
    """Load and validate settings; defaults when yaml_path is None.

    Raises:
        SettingsValidationError: If a key is unknown or a value is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return ProvisioningSettings()
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    validate_settings(data)
    return ProvisioningSettings(
        **{k: _KEY_SPECS[k][0](v) for k, v in data.items()},
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )
