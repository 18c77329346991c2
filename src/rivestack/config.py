"""Provider configuration with validation.

Configuration is resolved once at startup using a layered override:
explicit value, then environment variable, then a hardcoded default.
The result is an immutable value that is passed explicitly to the API
client and the resource handlers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from . import __version__


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_BASE_URL = "https://api.rivestack.io"
DEFAULT_HTTP_TIMEOUT_SECONDS = 120
USER_AGENT = f"rivestack-provider/{__version__}"

API_KEY_ENV = "RIVESTACK_API_KEY"
BASE_URL_ENV = "RIVESTACK_BASE_URL"

# Cluster lifecycle waits
DEFAULT_ACTIVE_POLL_SECONDS = 15.0
DEFAULT_ACTIVE_TIMEOUT_SECONDS = 25 * 60
DEFAULT_DELETE_POLL_SECONDS = 10.0
DEFAULT_DELETE_TIMEOUT_SECONDS = 10 * 60

# Job waits
DEFAULT_JOB_POLL_SECONDS = 10.0
DEFAULT_JOB_TIMEOUT_SECONDS = 5 * 60
DEFAULT_SCALE_TIMEOUT_SECONDS = 10 * 60

# Conflict retry on the configure endpoint
DEFAULT_CONFLICT_BACKOFF_SECONDS = 10.0
DEFAULT_CONFLICT_TIMEOUT_SECONDS = 2 * 60

MAX_TIMEOUT_SECONDS = 4 * 60 * 60


@dataclass(frozen=True)
class Timeouts:
    """Poll intervals and deadlines for every bounded wait.

    All values are seconds. Intervals are floats so tests can run the
    real loops with millisecond sleeps.
    """

    active_poll_interval: float = DEFAULT_ACTIVE_POLL_SECONDS
    active_timeout: float = DEFAULT_ACTIVE_TIMEOUT_SECONDS
    delete_poll_interval: float = DEFAULT_DELETE_POLL_SECONDS
    delete_timeout: float = DEFAULT_DELETE_TIMEOUT_SECONDS
    job_poll_interval: float = DEFAULT_JOB_POLL_SECONDS
    job_timeout: float = DEFAULT_JOB_TIMEOUT_SECONDS
    scale_timeout: float = DEFAULT_SCALE_TIMEOUT_SECONDS
    conflict_backoff: float = DEFAULT_CONFLICT_BACKOFF_SECONDS
    conflict_timeout: float = DEFAULT_CONFLICT_TIMEOUT_SECONDS

    def validate(self) -> list[str]:
        """Return a list of problems, empty when the values are usable."""
        errors: list[str] = []
        for name, value in self.__dict__.items():
            if value <= 0:
                errors.append(f"{name} must be positive: {value}")
            elif value > MAX_TIMEOUT_SECONDS:
                errors.append(f"{name} cannot exceed {MAX_TIMEOUT_SECONDS} seconds: {value}")
        return errors


@dataclass(frozen=True)
class ProviderConfig:
    """Provider configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing on the first
    API call.
    """

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    user_agent: str = USER_AGENT
    timeouts: Timeouts = field(default_factory=Timeouts)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.api_key:
            errors.append(
                f"API key is required: set it explicitly or via the {API_KEY_ENV} "
                "environment variable"
            )

        if not self.base_url:
            errors.append("base_url cannot be empty")
        elif not self.base_url.startswith(("http://", "https://")):
            errors.append(f"base_url must be an http(s) URL: {self.base_url}")

        # Normalise without breaking frozen semantics
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

        if self.http_timeout_seconds < 1:
            errors.append("http_timeout_seconds must be at least 1")

        errors.extend(self.timeouts.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def __repr__(self) -> str:
        # Never render the API key
        return (
            f"ProviderConfig(base_url={self.base_url!r}, "
            f"http_timeout_seconds={self.http_timeout_seconds}, timeouts={self.timeouts!r})"
        )

    @classmethod
    def resolve(
        cls,
        api_key: str | None = None,
        base_url: str | None = None,
        timeouts: Timeouts | None = None,
    ) -> ProviderConfig:
        """Resolve configuration from explicit values and the environment.

        Environment Variables:
            RIVESTACK_API_KEY: API key, used when api_key is not given.
            RIVESTACK_BASE_URL: API base URL (default: https://api.rivestack.io).
            RIVESTACK_HTTP_TIMEOUT: Per-request timeout in seconds (default: 120).
            RIVESTACK_ACTIVE_TIMEOUT: Deadline for a cluster to become active.
            RIVESTACK_DELETE_TIMEOUT: Deadline for a cluster deletion to finish.
            RIVESTACK_JOB_TIMEOUT: Deadline for configuration jobs.
            RIVESTACK_SCALE_TIMEOUT: Deadline for each add/remove node job.
            RIVESTACK_CONFLICT_TIMEOUT: How long to retry a busy cluster.

        Args:
            api_key: Explicit API key, takes precedence over the environment.
            base_url: Explicit base URL, takes precedence over the environment.
            timeouts: Explicit wait settings; environment overrides are
                ignored when given.

        Raises:
            ConfigurationError: If the resolved configuration is invalid.
        """

        def get_int(key: str, default: int | float) -> int | float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        if timeouts is None:
            timeouts = Timeouts(
                active_timeout=get_int("RIVESTACK_ACTIVE_TIMEOUT", DEFAULT_ACTIVE_TIMEOUT_SECONDS),
                delete_timeout=get_int("RIVESTACK_DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
                job_timeout=get_int("RIVESTACK_JOB_TIMEOUT", DEFAULT_JOB_TIMEOUT_SECONDS),
                scale_timeout=get_int("RIVESTACK_SCALE_TIMEOUT", DEFAULT_SCALE_TIMEOUT_SECONDS),
                conflict_timeout=get_int(
                    "RIVESTACK_CONFLICT_TIMEOUT", DEFAULT_CONFLICT_TIMEOUT_SECONDS
                ),
            )

        return cls(
            api_key=api_key or os.environ.get(API_KEY_ENV, ""),
            base_url=base_url or os.environ.get(BASE_URL_ENV) or DEFAULT_BASE_URL,
            http_timeout_seconds=int(
                get_int("RIVESTACK_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS)
            ),
            timeouts=timeouts,
        )
