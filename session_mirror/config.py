"""
Configuration for the session mirror.

Configuration can be provided directly, loaded from a YAML file, or read from
environment variables:

```yaml
remote:
  url: "http://127.0.0.1:4096"
  timeout: 30
storage:
  file_path: "mirror-state.json"
logging:
  level: "info"
  output: "mirror.log"
  format: "text"   # or "json"
```

Environment Variables:
    SESSION_MIRROR_REMOTE_URL: Base URL of the remote assistant service
    SESSION_MIRROR_TIMEOUT: Per-request timeout in seconds
    SESSION_MIRROR_STATE_FILE: Path of the JSON state file
    SESSION_MIRROR_LOG_LEVEL: Log level name
    SESSION_MIRROR_LOG_OUTPUT: Log file path, or "stdout"
    SESSION_MIRROR_LOG_FORMAT: "text" or "json"
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

DEFAULT_REMOTE_URL = "http://127.0.0.1:4096"
DEFAULT_TIMEOUT = 30.0
DEFAULT_STATE_FILE = "mirror-state.json"
LOG_FORMATS = ("text", "json")

ENV_PREFIX = "SESSION_MIRROR_"


def default_config_path() -> Path:
    """Locate the configuration file.

    Tries ``config.yaml`` in the working directory, then ``config/config.yaml``,
    and falls back to ``config.yaml`` when neither exists.
    """
    for candidate in (Path("config.yaml"), Path("config") / "config.yaml"):
        if candidate.exists():
            return candidate
    return Path("config.yaml")


@dataclass
class MirrorConfig:
    """Settings for the remote client, the state file and logging.

    Attributes:
        remote_url: Base URL of the remote assistant service
        request_timeout: Seconds before a single remote request is abandoned
        state_file: Path of the JSON document holding the four tables
        log_level: Log level name
        log_output: Log file path, or "stdout" for console only
        log_format: "text" for bracketed lines, "json" for structured lines
    """

    remote_url: str = DEFAULT_REMOTE_URL
    request_timeout: float = DEFAULT_TIMEOUT
    state_file: str = DEFAULT_STATE_FILE
    log_level: str = "info"
    log_output: str = "stdout"
    log_format: str = "text"

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> MirrorConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML file. Defaults to ``default_config_path()``

        Returns:
            Validated MirrorConfig

        Raises:
            ConfigError: If the file is missing, unparseable or invalid
        """
        config_path = Path(path) if path is not None else default_config_path()
        try:
            content = config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError("path", f"cannot read {config_path}: {e}") from e

        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigError("path", f"cannot parse {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError("path", f"{config_path} must contain a mapping")

        config = cls.from_dict(data)
        config.validate()
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MirrorConfig:
        """Build configuration from the sectioned mapping used in YAML files.

        Missing values keep their defaults.
        """
        remote = data.get("remote") or {}
        storage = data.get("storage") or {}
        logging_section = data.get("logging") or {}

        timeout = remote.get("timeout")
        return cls(
            remote_url=str(remote.get("url") or DEFAULT_REMOTE_URL),
            request_timeout=_parse_timeout(timeout) if timeout is not None else DEFAULT_TIMEOUT,
            state_file=str(storage.get("file_path") or DEFAULT_STATE_FILE),
            log_level=str(logging_section.get("level") or "info"),
            log_output=str(logging_section.get("output") or "stdout"),
            log_format=str(logging_section.get("format") or "text").lower(),
        )

    @classmethod
    def from_environment(cls) -> MirrorConfig:
        """Create configuration from environment variables.

        Returns:
            MirrorConfig populated from environment variables
        """
        timeout = os.environ.get(f"{ENV_PREFIX}TIMEOUT")
        config = cls(
            remote_url=os.environ.get(f"{ENV_PREFIX}REMOTE_URL", DEFAULT_REMOTE_URL),
            request_timeout=_parse_timeout(timeout) if timeout else DEFAULT_TIMEOUT,
            state_file=os.environ.get(f"{ENV_PREFIX}STATE_FILE", DEFAULT_STATE_FILE),
            log_level=os.environ.get(f"{ENV_PREFIX}LOG_LEVEL", "info"),
            log_output=os.environ.get(f"{ENV_PREFIX}LOG_OUTPUT", "stdout"),
            log_format=os.environ.get(f"{ENV_PREFIX}LOG_FORMAT", "text").lower(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Check required fields.

        Raises:
            ConfigError: On the first invalid field
        """
        if not self.remote_url.strip():
            raise ConfigError("remote.url", "remote URL is required")
        if self.request_timeout <= 0:
            raise ConfigError("remote.timeout", "must be a positive number of seconds")
        if not self.state_file.strip():
            raise ConfigError("storage.file_path", "state file path is required")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError("logging.format", f"must be one of: {', '.join(LOG_FORMATS)}")


def _parse_timeout(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError("remote.timeout", f"not a number: {value!r}") from e
