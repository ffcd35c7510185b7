"""Configuration management with validation.

All settings come from environment variables and are validated once, at
construction time, so the controller never starts half-configured.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_AWX_URL = "https://awx.example.com"
DEFAULT_ORGANIZATION = "Default"

DEFAULT_WAIT_TIMEOUT_SECONDS = 300
DEFAULT_WAIT_INTERVAL_SECONDS = 5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
MAX_REQUEST_TIMEOUT_SECONDS = 600

DEFAULT_RECONNECT_DELAY_SECONDS = 5
DEFAULT_WATCH_TIMEOUT_SECONDS = 300
MIN_WATCH_TIMEOUT_SECONDS = 10
MAX_WATCH_TIMEOUT_SECONDS = 3600

# AWX limits names to 512 characters
MAX_INVENTORY_NAME_LENGTH = 512

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Input validation patterns
VALID_URL_PATTERN = r"^https?://[^\s/]+(/[^\s]*)?$"
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_LABEL_KEY_PATTERN = r"^([a-z0-9.-]{1,253}/)?[A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    awx_token: str

    # AWX connection
    awx_url: str = DEFAULT_AWX_URL
    verify_tls: bool = True
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Inventory layout
    inventory_prefix: str = ""
    organization: str = DEFAULT_ORGANIZATION
    namespace: str | None = None
    group_label: str | None = None
    resolve_on_delete: bool = False

    # Readiness gate
    wait_timeout_seconds: int = DEFAULT_WAIT_TIMEOUT_SECONDS
    wait_interval_seconds: int = DEFAULT_WAIT_INTERVAL_SECONDS

    # Watch
    reconnect_delay_seconds: int = DEFAULT_RECONNECT_DELAY_SECONDS
    watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Every problem is collected so a single start attempt reports all of them.
        """
        errors: list[str] = []

        if not self.awx_token:
            errors.append("AWX_TOKEN is required")

        if not re.match(VALID_URL_PATTERN, self.awx_url):
            errors.append(f"AWX_URL must be an http(s) URL: {self.awx_url}")

        if not self.organization:
            errors.append("ORGANIZATION must not be empty")

        if self.namespace and not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"NAMESPACE must be a valid Kubernetes namespace name: {self.namespace}")

        if self.group_label and not re.match(VALID_LABEL_KEY_PATTERN, self.group_label):
            errors.append(f"HOST_GROUP_LABEL must be a valid label key: {self.group_label}")

        if len(self.inventory_prefix) > MAX_INVENTORY_NAME_LENGTH // 2:
            errors.append(
                f"INVENTORY_PREFIX exceeds maximum length of {MAX_INVENTORY_NAME_LENGTH // 2}"
            )

        # Timing validation
        if self.wait_timeout_seconds < 1:
            errors.append("AWX_WAIT_TIMEOUT must be at least 1 second")
        if self.wait_interval_seconds < 1:
            errors.append("AWX_WAIT_INTERVAL must be at least 1 second")
        elif self.wait_interval_seconds > self.wait_timeout_seconds:
            errors.append("AWX_WAIT_INTERVAL cannot exceed AWX_WAIT_TIMEOUT")

        if not (1 <= self.request_timeout_seconds <= MAX_REQUEST_TIMEOUT_SECONDS):
            errors.append(
                f"AWX_REQUEST_TIMEOUT must be between 1 and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if self.reconnect_delay_seconds < 0:
            errors.append("WATCH_RECONNECT_DELAY cannot be negative")

        if not (MIN_WATCH_TIMEOUT_SECONDS <= self.watch_timeout_seconds <= MAX_WATCH_TIMEOUT_SECONDS):
            errors.append(
                f"WATCH_TIMEOUT must be between {MIN_WATCH_TIMEOUT_SECONDS} "
                f"and {MAX_WATCH_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def base_url(self) -> str:
        """AWX URL without a trailing slash."""
        return self.awx_url.rstrip("/")

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AWX_URL: AWX base URL (default: https://awx.example.com)
            AWX_TOKEN: Bearer token for the AWX API (required)
            AWX_VERIFY_TLS: Verify the AWX TLS certificate (default: true)
            AWX_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 30)
            INVENTORY_PREFIX: Prepended to the namespace to form inventory names
            ORGANIZATION: AWX organization owning the inventories (default: Default)
            NAMESPACE: Watch a single namespace; empty watches the whole cluster
            HOST_GROUP_LABEL: VM label whose value names the AWX group of the host
            RESOLVE_INVENTORY_ON_DELETE: Look up uncached inventories on delete
                events instead of ignoring them (default: false)
            AWX_WAIT_TIMEOUT: Seconds to wait for AWX at startup (default: 300)
            AWX_WAIT_INTERVAL: Seconds between AWX readiness probes (default: 5)
            WATCH_RECONNECT_DELAY: Seconds to wait before re-subscribing (default: 5)
            WATCH_TIMEOUT: Server-side timeout of a single watch (default: 300)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_optional(key: str) -> str | None:
            value = os.environ.get(key, "").strip()
            return value or None

        return cls(
            awx_token=os.environ.get("AWX_TOKEN", ""),
            awx_url=os.environ.get("AWX_URL") or DEFAULT_AWX_URL,
            verify_tls=get_bool("AWX_VERIFY_TLS", True),
            request_timeout_seconds=get_int("AWX_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            inventory_prefix=os.environ.get("INVENTORY_PREFIX", "").strip(),
            organization=os.environ.get("ORGANIZATION") or DEFAULT_ORGANIZATION,
            namespace=get_optional("NAMESPACE"),
            group_label=get_optional("HOST_GROUP_LABEL"),
            resolve_on_delete=get_bool("RESOLVE_INVENTORY_ON_DELETE", False),
            wait_timeout_seconds=get_int("AWX_WAIT_TIMEOUT", DEFAULT_WAIT_TIMEOUT_SECONDS),
            wait_interval_seconds=get_int("AWX_WAIT_INTERVAL", DEFAULT_WAIT_INTERVAL_SECONDS),
            reconnect_delay_seconds=get_int(
                "WATCH_RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY_SECONDS
            ),
            watch_timeout_seconds=get_int("WATCH_TIMEOUT", DEFAULT_WATCH_TIMEOUT_SECONDS),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
