"""structlog setup for follow-up triage.

Every event is a snake_case name plus keyword fields. A triage run binds its
run_id through a context variable; the ``add_correlation_id`` processor copies
it onto each line logged while the run is active.

    logger = get_logger(__name__)
    set_correlation_id(run_id)
    logger.info("item_enqueued", item_id=item_id, reason="NEEDS_REPLY")
    set_correlation_id(None)
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_run_id: ContextVar[str | None] = ContextVar("followup_run_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind (or clear, with None) the run_id for the current context."""
    _run_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _run_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    run_id = _run_id.get()
    if run_id is not None:
        event_dict["run_id"] = run_id
    return event_dict


def truncate_pii(value: str | None, limit: int = 20) -> str:
    """Shorten an address or subject before it goes into a log field."""
    if not value:
        return ""
    return value[:limit]


def _processors(json_output: bool) -> list[structlog.types.Processor]:
    chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
    ]
    if json_output:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    return chain


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines when True, coloured console output otherwise
            (the CLI's ``--debug`` flag)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
