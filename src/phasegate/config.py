"""Load optional runner configuration from `.phasegate/config.yaml`.

Example::

    execution:
      max_retries: 2
      parallel: true
      max_parallel: 3
      stop_on_failure: true
      timeout_seconds: 900
      command: "my-agent --task {task_id} -"
    git:
      enabled: true
      auto_commit: true
      branch_prefix: impl
    logging:
      level: INFO
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_MAX_PARALLEL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PARALLEL,
    DEFAULT_STOP_ON_FAILURE,
    DEFAULT_TASK_COMMAND,
    DEFAULT_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .git_workflow import GitConfig
from .io_utils import read_document

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], Optional[str]]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = Path(project_dir).resolve() / STATE_DIR_NAME / CONFIG_FILE
    data, err = read_document(path)
    if data is None:
        return {}, err
    return data, None


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    raw = config.get(name)
    return raw if isinstance(raw, dict) else {}


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"{key} must be a boolean (got {value!r})", {"key": key, "value": value})


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer (got {value!r})", {"key": key, "value": value})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer (got {value!r})", {"key": key, "value": value}) from exc


@dataclass
class OrchestratorConfig:
    """Scheduling options shared by the orchestrator and the phase executor."""

    max_retries: int = DEFAULT_MAX_RETRIES
    stop_on_failure: bool = DEFAULT_STOP_ON_FAILURE
    parallel: bool = DEFAULT_PARALLEL
    max_parallel: int = DEFAULT_MAX_PARALLEL
    dry_run: bool = False
    start_phase: Optional[int] = None
    end_phase: Optional[int] = None
    confirm_before_phase: bool = False
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    command: str = DEFAULT_TASK_COMMAND

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise `ConfigError` for values the scheduler cannot honour."""
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0", {"key": "max_retries", "value": self.max_retries})
        if self.max_parallel < 1:
            raise ConfigError("max_parallel must be >= 1", {"key": "max_parallel", "value": self.max_parallel})
        if self.timeout_seconds <= 0:
            raise ConfigError(
                "timeout_seconds must be positive", {"key": "timeout_seconds", "value": self.timeout_seconds}
            )
        for key in ("start_phase", "end_phase"):
            value = getattr(self, key)
            if value is not None and value < 1:
                raise ConfigError(f"{key} must be >= 1", {"key": key, "value": value})
        if self.start_phase is not None and self.end_phase is not None and self.start_phase > self.end_phase:
            raise ConfigError(
                f"start_phase ({self.start_phase}) is after end_phase ({self.end_phase})",
                {"key": "start_phase", "value": self.start_phase},
            )

    @classmethod
    def from_config(cls, config: Optional[dict[str, Any]] = None, **overrides: Any) -> "OrchestratorConfig":
        """Build from the `execution` section, then apply non-None overrides.

        Raises:
            ConfigError: On unknown override keys or invalid values.
        """
        execution = _section(config or {}, "execution")
        values: dict[str, Any] = {}
        if "max_retries" in execution:
            values["max_retries"] = _as_int(execution["max_retries"], "execution.max_retries")
        if "max_parallel" in execution:
            values["max_parallel"] = _as_int(execution["max_parallel"], "execution.max_parallel")
        if "parallel" in execution:
            values["parallel"] = _as_bool(execution["parallel"], "execution.parallel")
        if "stop_on_failure" in execution:
            values["stop_on_failure"] = _as_bool(execution["stop_on_failure"], "execution.stop_on_failure")
        if "timeout_seconds" in execution:
            values["timeout_seconds"] = _as_int(execution["timeout_seconds"], "execution.timeout_seconds")
        if execution.get("command"):
            values["command"] = str(execution["command"])

        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"Unknown option {key}", {"key": key})
            if value is not None:
                values[key] = value
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "OrchestratorConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def git_config_from(config: dict[str, Any]) -> GitConfig:
    git = _section(config, "git")
    result = GitConfig()
    if "enabled" in git:
        result.enabled = _as_bool(git["enabled"], "git.enabled")
    if "auto_commit" in git:
        result.auto_commit = _as_bool(git["auto_commit"], "git.auto_commit")
    if git.get("branch_prefix"):
        result.branch_prefix = str(git["branch_prefix"]).strip("/")
    return result


def log_level_from(config: dict[str, Any], default: str = "INFO") -> str:
    level = str(_section(config, "logging").get("level") or default).upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(f"Unknown log level {level}", {"key": "logging.level", "value": level})
    return level
