"""Configuration for browser-mode web chat runs."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --- Targets ---
CHATGPT_URL = "https://chatgpt.com/"

# --- Directories ---
WEBCHAT_HOME = Path.home() / ".webchat"
PROFILES_DIR = WEBCHAT_HOME / "profiles"
LOGS_DIR = WEBCHAT_HOME / "logs"
RUN_LOG_PATH = LOGS_DIR / "runs.jsonl"
SELECTORS_PATH = WEBCHAT_HOME / "selectors.json"
PROFILE_DIR_PREFIX = "webchat-browser-"

# --- Timeouts (ms) ---
DEFAULT_INPUT_TIMEOUT_MS = 30_000
DEFAULT_TIMEOUT_MS = 600_000  # thinking models can stream for several minutes
NAVIGATION_TIMEOUT_MS = 45_000

# Set to 1 to log the resolved config and full error stacks.
TRACE_ENV = "WEBCHAT_DEVTOOLS_TRACE"

LOG_REDACT_PATTERNS = [
    r"sk-ant-[\w-]+",
    r"sk-proj-[\w-]+",
    r"__Secure-next-auth\.session-token[\"'=:\s]+[\w.\-]+",
    r"session[_-]?token[\"'=:\s]+[\w.\-]+",
]


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class PollingConfig(BaseModel):
    """Poll intervals and stability thresholds for the page state machine."""

    model_config = ConfigDict(frozen=True)

    interval_ms: int = Field(default=1_000, gt=0, description="Response poll interval")
    input_interval_ms: int = Field(default=250, gt=0, description="Input readiness poll interval")
    stable_polls: int = Field(
        default=2, ge=2,
        description="Identical non-empty snapshots required before the answer counts as final",
    )
    flap_tolerance: int = Field(
        default=3, ge=0,
        description="Shrinking snapshots tolerated before the response is treated as unstable",
    )
    block_grace_ms: int = Field(default=15_000, gt=0, description="Wait for a block wall to clear (headful only)")
    launch_attempts: int = Field(default=30, ge=1, le=600)
    launch_backoff_ms: int = Field(default=500, gt=0)
    copy_wait_ms: int = Field(default=1_500, gt=0, description="Wait for the copy-as-markdown payload")


class VisionConfig(BaseModel):
    """Optional screenshot classifier used as an extra completion signal."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=False)
    model: str = Field(default="claude-haiku-4-5-20251001")
    max_tokens: int = Field(default=200, ge=50, le=1000)
    every_n_polls: int = Field(default=5, ge=1)
    jpeg_quality: int = Field(default=60, ge=30, le=90)


class RunConfig(BaseModel):
    """Immutable configuration resolved once per browser-mode call."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(default=CHATGPT_URL)
    desired_model: Optional[str] = Field(
        default=None,
        description="Model label to pick in the UI; None keeps whatever is selected",
    )
    chrome_profile: Optional[str] = Field(default=None, description="Local profile to import cookies from")
    chrome_path: Optional[str] = Field(default=None)
    debug_port: Optional[int] = Field(default=None, ge=1, le=65535)
    input_timeout_ms: int = Field(default=DEFAULT_INPUT_TIMEOUT_MS, gt=0)
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    navigation_timeout_ms: int = Field(default=NAVIGATION_TIMEOUT_MS, gt=0)
    headless: bool = Field(default=False)
    hide_window: bool = Field(default=False)
    keep_browser: bool = Field(default=False)
    cookie_sync: bool = Field(default=True)
    debug: bool = Field(default=False)
    selectors_path: Optional[str] = Field(default=None)
    run_log: bool = Field(default=False, description="Append a line to runs.jsonl per call")
    polling: PollingConfig = Field(default_factory=PollingConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        # A bare host such as "chat.example" means https.
        if value and "://" not in value:
            value = f"https://{value}"
        if not re.match(r"^https?://[^/\s]+", value):
            raise ValueError(f"url must start with http:// or https:// (got {value!r})")
        return value

    @field_validator("desired_model", "chrome_profile")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


DEFAULT_BROWSER_CONFIG = RunConfig()


def resolve_browser_config(
    overrides: Union[RunConfig, Mapping[str, Any], None] = None,
) -> RunConfig:
    """Merge caller overrides onto the defaults.

    Keys set to None are ignored so partially-filled CLI namespaces can be
    passed straight through.
    """
    if overrides is None:
        return DEFAULT_BROWSER_CONFIG
    if isinstance(overrides, RunConfig):
        return overrides
    merged = DEFAULT_BROWSER_CONFIG.model_dump()
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfig.model_validate(merged)


def load_config(config_path: str | Path) -> Result[RunConfig]:
    """Load and validate a run config from a JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(DEFAULT_BROWSER_CONFIG)

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return Result.ok(resolve_browser_config(raw))
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 1, "s": 1_000, "m": 60_000, "h": 3_600_000}


def parse_duration(value: str | int | float, default_unit: str = "ms") -> int:
    """Parse '1500', '1500ms', '90s', '2m' or '1h' into milliseconds."""
    if isinstance(value, (int, float)):
        return int(value * _DURATION_UNITS[default_unit])
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return int(float(amount) * _DURATION_UNITS[(unit or default_unit).lower()])


def trace_enabled(config: RunConfig) -> bool:
    return config.debug or os.environ.get(TRACE_ENV) == "1"
