"""
Main — logging setup and the ``agentbox`` console entry point.

``configure_logging`` wires structlog on top of the standard library once per
process. The level comes from ``AGENTBOX_LOG_LEVEL`` (default WARNING). Long
``command``/``stdout``/``stderr`` fields are cut so a chatty build does not
flood the log.
"""

from __future__ import annotations

import logging
import os

import structlog

_TRUNCATED_KEYS = ("command", "stdout", "stderr")
_MAX_FIELD_LEN = 200


def _truncate_long_fields(logger, method_name, event_dict):
    """Structlog processor that shortens bulky command output fields."""
    for key in _TRUNCATED_KEYS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_FIELD_LEN:
            event_dict[key] = val[:_MAX_FIELD_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging() -> None:
    """Configure structlog and standard-library logging. Later calls are no-ops."""
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    level_name = os.environ.get("AGENTBOX_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _truncate_long_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    configure_logging()

    from agentbox.cli.app import cli

    cli()


if __name__ == "__main__":
    main()
