from __future__ import annotations

import logging
import os
from typing import Any, Dict

import structlog

SERVICE_NAME = "chat-vault"

_CONFIGURED = False


def _add_log_level(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["level"] = method_name
    return event_dict


def _add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _renderer() -> Any:
    # LOG_FORMAT=console is for local runs; everything else gets one JSON object per line.
    if os.getenv("LOG_FORMAT", "json").strip().lower() == "console":
        return structlog.dev.ConsoleRenderer(colors=False)
    return structlog.processors.JSONRenderer()


def configure_logging(*, force: bool = False) -> None:
    """Configure structlog once per process; ``force`` re-reads LOG_LEVEL and LOG_FORMAT."""

    global _CONFIGURED
    if _CONFIGURED and not force:
        return
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _add_log_level,
            _add_service,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def bind_request_context(**values: Any) -> None:
    """Attach ``values`` to every log line emitted by the current request task."""

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str):
    configure_logging()
    return structlog.get_logger(name)
