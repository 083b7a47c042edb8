"""Configuration management with validation.

Every problem is collected and reported at once; the controller must not start
with an invalid configuration.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .security import read_secret_file
from .tag_filter import InvalidTagPatternError, TagFilter, build_tag_filter


class LogFormat(str, Enum):
    """Supported log encodings."""

    JSON = "json"
    CONSOLE = "console"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_TAILSCALE_BASE_URL = "https://api.tailscale.com"
DEFAULT_CONTROLLER_NAME = "tailsync"

DEFAULT_RECONCILE_INTERVAL_SECONDS = 30
MIN_RECONCILE_INTERVAL_SECONDS = 5
MAX_RECONCILE_INTERVAL_SECONDS = 86400

DEFAULT_WEBHOOK_PORT = 3000
DEFAULT_HEALTH_PORT = 8081

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

# Written by the kubelet into every pod with a mounted service account
SERVICE_ACCOUNT_NAMESPACE_FILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"
VALID_LABEL_VALUE_PATTERN = r"^[A-Za-z0-9]([A-Za-z0-9._-]{0,61}[A-Za-z0-9])?$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables or CLI flags.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    tailnet: str
    auth_key: str = field(repr=False)
    namespace: str

    # Tailscale inventory
    base_url: str = DEFAULT_TAILSCALE_BASE_URL
    device_filters: tuple[str, ...] = ()

    # Ownership
    controller_name: str = DEFAULT_CONTROLLER_NAME

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Companion Service
    create_service: bool = False
    service_proxy_class: str | None = None

    # Push trigger
    webhook_enabled: bool = False
    webhook_port: int = DEFAULT_WEBHOOK_PORT
    webhook_secret: str | None = field(default=None, repr=False)

    # Health probes (0 disables the server)
    health_port: int = DEFAULT_HEALTH_PORT

    # Logging
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.JSON

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.tailnet:
            errors.append("TAILSCALE_TAILNET is required")

        if not self.auth_key:
            errors.append("TAILSCALE_AUTH_KEY or TAILSCALE_AUTH_KEY_FILE is required")

        if not self.base_url.startswith(("https://", "http://")):
            errors.append(f"TAILSCALE_BASE_URL must be an http(s) URL: {self.base_url}")

        if not self.namespace:
            errors.append(
                "NAMESPACE is required when running outside a cluster "
                "or without a mounted service account"
            )
        elif not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"NAMESPACE must be a valid Kubernetes namespace: {self.namespace}")

        if not re.match(VALID_LABEL_VALUE_PATTERN, self.controller_name):
            errors.append(
                f"CONTROLLER_NAME must be a valid label value: {self.controller_name}"
            )

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.request_timeout_seconds < 1:
            errors.append("REQUEST_TIMEOUT must be at least 1 second")

        if self.webhook_enabled:
            if not self.webhook_secret:
                errors.append(
                    "TAILSCALE_WEBHOOK_SECRET or TAILSCALE_WEBHOOK_SECRET_FILE is required "
                    "when the webhook is enabled"
                )
            if not 1 <= self.webhook_port <= 65535:
                errors.append(f"TAILSCALE_WEBHOOK_PORT is not a valid port: {self.webhook_port}")

        if not 0 <= self.health_port <= 65535:
            errors.append(f"HEALTH_PORT is not a valid port: {self.health_port}")

        if self.webhook_enabled and self.health_port and self.health_port == self.webhook_port:
            errors.append("HEALTH_PORT and TAILSCALE_WEBHOOK_PORT must differ")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        try:
            build_tag_filter(self.device_filters)
        except InvalidTagPatternError as e:
            errors.append(f"TAILSCALE_DEVICE_FILTERS: {e}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def tag_filter(self) -> TagFilter:
        """Compile the configured device filters (validated at construction)."""
        return build_tag_filter(self.device_filters)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TAILSCALE_BASE_URL: Tailscale API base URL (default: https://api.tailscale.com)
            TAILSCALE_TAILNET: Tailnet whose devices are synchronized (required)
            TAILSCALE_AUTH_KEY: OAuth client key
            TAILSCALE_AUTH_KEY_FILE: File holding the OAuth client key (exclusive with the above)
            TAILSCALE_DEVICE_FILTERS: Comma-separated tag patterns (default: match all)
            RECONCILE_INTERVAL: Seconds between full synchronizations (default: 30)
            REQUEST_TIMEOUT: Timeout for API calls in seconds (default: 30)
            NAMESPACE: Namespace of the managed Secrets (default: service account namespace)
            CONTROLLER_NAME: Value of the managed-by label (default: tailsync)
            SERVICE_CREATE: Also manage one ExternalName Service per device (default: false)
            SERVICE_PROXY_CLASS: Tailscale ProxyClass for those Services
            TAILSCALE_WEBHOOK_ENABLE: Serve the webhook endpoint (default: false)
            TAILSCALE_WEBHOOK_PORT: Webhook port (default: 3000)
            TAILSCALE_WEBHOOK_SECRET: Webhook secret
            TAILSCALE_WEBHOOK_SECRET_FILE: File holding the webhook secret
            HEALTH_PORT: Health probe port, 0 disables (default: 8081)
            LOG_LEVEL: Python log level (default: INFO)
            LOG_FORMAT: json or console (default: json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
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

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"LOG_FORMAT must be one of {valid}: {value}") from e

        return cls(
            tailnet=os.environ.get("TAILSCALE_TAILNET", ""),
            auth_key=resolve_secret(
                "TAILSCALE_AUTH_KEY",
                os.environ.get("TAILSCALE_AUTH_KEY"),
                os.environ.get("TAILSCALE_AUTH_KEY_FILE"),
            )
            or "",
            namespace=os.environ.get("NAMESPACE") or detect_namespace() or "",
            base_url=os.environ.get("TAILSCALE_BASE_URL", DEFAULT_TAILSCALE_BASE_URL),
            device_filters=get_list("TAILSCALE_DEVICE_FILTERS"),
            controller_name=os.environ.get("CONTROLLER_NAME", DEFAULT_CONTROLLER_NAME),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            create_service=get_bool("SERVICE_CREATE", False),
            service_proxy_class=os.environ.get("SERVICE_PROXY_CLASS") or None,
            webhook_enabled=get_bool("TAILSCALE_WEBHOOK_ENABLE", False),
            webhook_port=get_int("TAILSCALE_WEBHOOK_PORT", DEFAULT_WEBHOOK_PORT),
            webhook_secret=resolve_secret(
                "TAILSCALE_WEBHOOK_SECRET",
                os.environ.get("TAILSCALE_WEBHOOK_SECRET"),
                os.environ.get("TAILSCALE_WEBHOOK_SECRET_FILE"),
            ),
            health_port=get_int("HEALTH_PORT", DEFAULT_HEALTH_PORT),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=get_log_format(os.environ.get("LOG_FORMAT")),
        )


def resolve_secret(name: str, value: str | None, file_path: str | None) -> str | None:
    """Resolve a secret given either inline or as a file path.

    Raises:
        ConfigurationError: If both forms are set or the file cannot be read.
    """
    if value and file_path:
        raise ConfigurationError(f"{name} and {name}_FILE are mutually exclusive")
    if file_path:
        try:
            return read_secret_file(Path(file_path))
        except OSError as e:
            raise ConfigurationError(f"{name}_FILE cannot be read: {e}") from e
    return value or None


def detect_namespace(path: Path = SERVICE_ACCOUNT_NAMESPACE_FILE) -> str | None:
    """Return the namespace of the pod's service account, if mounted."""
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except OSError:
        return None
