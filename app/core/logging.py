# app/core/logging.py
from __future__ import annotations

import logging
import re
import sys
from typing import Any, Dict, Mapping, Union

import structlog

from app.core.request_id import get_request_id, get_run_id

REDACTED = "***redacted***"

# Field names whose values are credentials of the track-listing API.
_CREDENTIAL_FIELDS = frozenset({
    "authorization", "auth_token", "token", "access_token",
    "client_id", "sc_a_id", "api_key", "password", "secret",
})

# Credentials also leak inside strings: httpx error messages carry the full
# request URL (query included), and the auth header is "OAuth <token>".
_QUERY_CREDENTIAL_RE = re.compile(r"(?i)\b(client_id|sc_a_id|oauth_token|access_token)=[^&\s'\"]+")
_OAUTH_VALUE_RE = re.compile(r"(?i)\bOAuth\s+[A-Za-z0-9._~+/=-]+")


def scrub_text(value: str) -> str:
    """Mask credential query parameters and OAuth header values inside free text."""
    value = _QUERY_CREDENTIAL_RE.sub(lambda m: f"{m.group(1)}={REDACTED}", value)
    return _OAUTH_VALUE_RE.sub(f"OAuth {REDACTED}", value)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return scrub_text(value)
    if isinstance(value, Mapping):
        return {
            k: REDACTED if str(k).lower() in _CREDENTIAL_FIELDS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


def _credential_guard(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # Top-level keys plus nested params/headers dicts and error strings.
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if str(key).lower() in _CREDENTIAL_FIELDS:
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _scrub(value)
    return event_dict


def _add_service(service_name: str):
    def _inner(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict
    return _inner


def _add_correlation_ids(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # API requests carry a request_id, scheduler ticks and worker runs a run_id.
    rid = get_request_id()
    if rid:
        event_dict.setdefault("request_id", rid)
    run = get_run_id()
    if run:
        event_dict.setdefault("run_id", run)
    return event_dict


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


_logger: structlog.BoundLogger | None = None


def configure_logging(service_name: str = "api", *, level: Union[int, str, None] = None) -> None:
    """
    One JSON log stack for the API, the refresh scheduler and the refresh worker.

    ``level`` defaults to ``LOG_LEVEL`` from settings.
    """
    global _logger

    if level is None:
        from app.config import get_settings
        level = get_settings().LOG_LEVEL
    numeric_level = _resolve_level(level)

    logging.basicConfig(level=numeric_level, format="%(message)s", stream=sys.stderr, force=True)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.add_log_level,
            _add_service(service_name),
            _add_correlation_ids,
            _credential_guard,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _logger = structlog.get_logger()


def get_logger() -> structlog.BoundLogger:
    if _logger is None:
        configure_logging("api")
    return _logger


logger = get_logger()
