"""Configuration models using Pydantic.

Settings for a fetch run can come from ``nvdsync.yaml`` (preferred) or
``nvdsync.json``; command-line flags override them.
"""

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .api import DEFAULT_ENDPOINT, DEFAULT_RESULTS_PER_PAGE, MAX_RESULTS_PER_PAGE

API_KEY_ENV = "NVD_API_KEY"


class FetchSettings(BaseModel):
    """Validated settings for one fetch run.

    Example YAML::

        api_key: $NVD_API_KEY
        delay_ms: 700
        results_per_page: 2000
        retry_attempts: 5
        filters:
          noRejected: null
          cvssV3Severity: CRITICAL

    Attributes:
        api_key: NVD API key.  Falls back to ``NVD_API_KEY``.
        endpoint: CVE API URL.
        delay_ms: Minimum delay between requests; ``None`` picks the
            default for the key / no-key quota.
        results_per_page: Page size (1-2000).
        max_retries: Transport-level attempts on throttling responses.
        retry_attempts: How many times a stalled page is re-requested via
            ``reset_last_call`` before the run gives up.
        retry_wait_seconds: Base wait before re-requesting; multiplied by
            the attempt number.
        filters: Extra query filters; ``null`` values are bare flags.
    """

    api_key: str | None = Field(default=None, validate_default=True)
    endpoint: str = DEFAULT_ENDPOINT
    delay_ms: int | None = Field(default=None, ge=0)
    results_per_page: int = Field(default=DEFAULT_RESULTS_PER_PAGE, ge=1, le=MAX_RESULTS_PER_PAGE)
    max_retries: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=5, ge=0)
    retry_wait_seconds: float = Field(default=30.0, ge=0.0)
    filters: dict[str, str | None] = Field(default_factory=dict)

    @field_validator("api_key", mode="before")
    @classmethod
    def _expand_env(cls, v: Any) -> str | None:
        """Resolve ``$VAR`` references and fall back to ``NVD_API_KEY``."""
        if isinstance(v, str) and v.startswith("$"):
            v = os.environ.get(v[1:])
        if not v:
            v = os.environ.get(API_KEY_ENV)
        return v or None

    @field_validator("filters", mode="before")
    @classmethod
    def _stringify_filters(cls, v: Any) -> dict[str, str | None]:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("filters must be a mapping of parameter name to value")
        out: dict[str, str | None] = {}
        for name, value in v.items():
            if isinstance(value, bool):
                value = str(value).lower()
            out[str(name)] = None if value is None else str(value)
        return out


def load_settings(path: Path) -> FetchSettings:
    """Load settings from a YAML or JSON file.

    Args:
        path: Path to the settings file.

    Returns:
        Validated ``FetchSettings`` instance.

    Raises:
        FileNotFoundError: if the file doesn't exist.
        pydantic.ValidationError: if content fails validation.
    """
    suffix = path.suffix.lower()
    content = path.read_text(encoding="utf-8")

    if suffix in (".yaml", ".yml"):
        raw = yaml.safe_load(content) or {}
    elif suffix == ".json":
        raw = json.loads(content)
    else:
        try:
            raw = yaml.safe_load(content) or {}
        except yaml.YAMLError:
            raw = json.loads(content)

    return FetchSettings.model_validate(raw)


def find_settings() -> Path | None:
    """Find a settings file in the working directory, preferring YAML.

    Returns:
        Path of the first existing settings file, or ``None``.
    """
    for name in ("nvdsync.yaml", "nvdsync.yml", "nvdsync.json"):
        if Path(name).exists():
            return Path(name)
    return None
