"""
Logging configuration with structlog, with secret redaction.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pydantic import SecretStr

SECRET_KEY_MARKERS = ("token", "password", "secret", "credential")
REDACTED = "**********"


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    structlog processor that masks secret-looking keys and SecretStr values.
    """
    for key, value in list(event_dict.items()):
        if isinstance(value, SecretStr):
            event_dict[key] = REDACTED
        elif any(marker in key.lower() for marker in SECRET_KEY_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure stdlib logging to render through structlog.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
        json_output: Render JSON lines instead of the console format.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)


def get_logger(name: str, stage: Optional[str] = None, **context: Any):
    """
    Returns a structlog logger, optionally bound to a pipeline stage.

    The logger stays lazy, so module-level loggers pick up the configuration
    applied later by ``configure_logging``.
    """
    if stage:
        context["stage"] = stage
    return structlog.get_logger(name, **context)


def bind_run(run_id: str) -> None:
    """Bind the run id to every log line emitted for the current run."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def clear_run() -> None:
    structlog.contextvars.clear_contextvars()
