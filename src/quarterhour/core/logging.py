"""structlog configuration for the bot process.

Lifecycle components bind ``component`` and ``market`` on their loggers;
the console renderer puts those two keys first so one market's tick can be
read top to bottom.
"""
import logging
import sys

import structlog

# CLOB token ids are 70+ digit integers; the tail is enough to tell them apart
TOKEN_ID_TAIL = 8

_TOKEN_KEYS = ("token_id", "tokens")
_LEADING_KEYS = ("component", "market")


def _shorten(value):
    if isinstance(value, str) and len(value) > TOKEN_ID_TAIL:
        return "..." + value[-TOKEN_ID_TAIL:]
    return value


def shorten_token_ids(logger, method_name, event_dict):
    """Replace full token ids with their last few digits."""
    for key in _TOKEN_KEYS:
        value = event_dict.get(key)
        if isinstance(value, (list, tuple)):
            event_dict[key] = [_shorten(v) for v in value]
        elif value is not None:
            event_dict[key] = _shorten(value)
    return event_dict


def lead_with_market(logger, method_name, event_dict):
    """Move the bound component and market ahead of the other keys."""
    leading = {key: event_dict.pop(key) for key in _LEADING_KEYS if key in event_dict}
    if not leading:
        return event_dict
    leading.update(event_dict)
    return leading


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure stdlib logging and structlog.

    JSON output keeps token ids intact for log shipping; the console
    renderer shortens them.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors += [
            shorten_token_ids,
            lead_with_market,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty(), sort_keys=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
