"""Sentry SDK initialization and structured logging for the preview host."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

EventCallback = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any] | None]

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEFAULT_PROFILES_SAMPLE_RATE = 0.1
DEV_TRACES_SAMPLE_RATE = 1.0

SENSITIVE_HEADERS = ("authorization", "cookie", "x-api-key")
SENSITIVE_KEYS = ("password", "token", "secret", "private_key", "api_key")


def configure_logging(
    service_name: str,
    log_level: int = logging.INFO,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure unified logging for the preview host.

    Sets up both Python's standard logging and structlog to work together,
    with Sentry breadcrumbs for every event. Call once at startup, after
    init_sentry().

    Args:
        service_name: Name of the service for log context
        log_level: Minimum log level (default: INFO)
        json_format: Use JSON output (True) or console format (False).
                     If None, console in development and JSON elsewhere.

    Returns:
        Configured structlog logger
    """
    if json_format is None:
        environment = os.environ.get("ENVIRONMENT", "development")
        json_format = environment != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on hot reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    processors.extend(_get_sentry_processors())

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def _get_sentry_processors() -> list[Any]:
    """Get structlog processors for Sentry integration."""

    def add_sentry_context(
        _logger: Any,
        method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        """Add structlog event data to Sentry breadcrumbs and capture errors."""
        level = event_dict.get("level", "info")
        message = event_dict.get("event", "")

        standard_keys = {"event", "level", "timestamp", "logger"}
        extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

        sentry_sdk.add_breadcrumb(
            message=str(message),
            category="log",
            level=level,
            data=extra_data if extra_data else None,
        )

        if method_name in ("error", "exception", "critical"):
            exc_info = event_dict.get("exc_info")
            if exc_info:
                sentry_sdk.capture_exception(exc_info[1] if isinstance(exc_info, tuple) else None)
            else:
                with sentry_sdk.isolation_scope() as scope:
                    for key, value in extra_data.items():
                        scope.set_extra(key, value)
                    sentry_sdk.capture_message(
                        str(message),
                        level="error" if method_name == "error" else "fatal",
                    )

        return event_dict

    return [add_sentry_context]


@dataclass
class SentryConfig:
    """Configuration for Sentry SDK initialization."""

    service_name: str
    dsn: str | None = None
    environment: str | None = None
    release: str | None = None
    traces_sample_rate: float | None = None
    profiles_sample_rate: float | None = None
    before_send: EventCallback | None = None


def init_sentry(
    service_name: str,
    config: SentryConfig | None = None,
) -> bool:
    """
    Initialize Sentry SDK for the preview host.

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    cfg = config or SentryConfig(service_name=service_name)
    effective_dsn = cfg.dsn or os.environ.get("SENTRY_DSN")
    if not effective_dsn:
        return False

    effective_env = cfg.environment or os.environ.get("ENVIRONMENT", "development")
    is_production = effective_env == "production"

    traces_rate = cfg.traces_sample_rate
    profiles_rate = cfg.profiles_sample_rate
    if traces_rate is None:
        traces_rate = DEFAULT_TRACES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE
    if profiles_rate is None:
        profiles_rate = DEFAULT_PROFILES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE

    def default_before_send(event: Event, hint: dict[str, Any]) -> Event | None:
        request = event.get("request")
        if request is not None:
            headers = request.get("headers")
            if isinstance(headers, dict):
                for header in SENSITIVE_HEADERS:
                    if header in headers:
                        headers[header] = "[Filtered]"

        extra = event.get("extra")
        if isinstance(extra, dict):
            for key in list(extra.keys()):
                if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                    extra[key] = "[Filtered]"

        if cfg.before_send:
            result = cfg.before_send(cast("dict[str, Any]", event), hint)
            return cast("Event | None", result)
        return event

    def default_before_send_transaction(event: Event, _hint: dict[str, Any]) -> Event | None:
        # Health checks and proxied preview traffic are noise
        transaction_name = event.get("transaction", "")
        if transaction_name == "/health" or str(transaction_name).startswith("/p/"):
            return None
        return event

    sentry_sdk.init(
        dsn=effective_dsn,
        environment=effective_env,
        release=cfg.release or f"{service_name}@{os.environ.get('VERSION', '0.1.0')}",
        traces_sample_rate=traces_rate,
        profiles_sample_rate=profiles_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        before_send=default_before_send,
        before_send_transaction=default_before_send_transaction,
        send_default_pii=False,
        attach_stacktrace=True,
        server_name=service_name,
        ignore_errors=[
            "ConnectionRefusedError",
            "ConnectionResetError",
            "asyncio.CancelledError",
            "httpx.ConnectError",
        ],
    )
    sentry_sdk.set_tag("service", service_name)
    return True
