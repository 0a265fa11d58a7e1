import logging
import os
import sys

import structlog
from structlog_sentry import SentryProcessor


_configured = False

# storage clients that log every request at debug level
QUIET_LOGGERS = ("botocore", "aiobotocore", "aiosqlite")


def configure_logging(pretty=True, additional_processors=None, level=logging.INFO):
    if additional_processors is None:
        additional_processors = []
    logging.basicConfig(
        level=level,
    )
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    processors = additional_processors + [
        structlog.stdlib.add_log_level,  # add log level
    ]

    if "SENTRY_DSN" in os.environ:
        # cleanup failures are logged at error level and end up here
        processors += [
            SentryProcessor(event_level=logging.ERROR),
        ]
    if pretty:
        processors += [
            structlog.dev.set_exc_info,  # add exception info
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors += [
            structlog.processors.format_exc_info,  # add exception info
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        # stdout is reserved for command output
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    global _configured
    _configured = True


def get_logger(*args, **kwargs) -> structlog.stdlib.BoundLogger:
    # Configure logging on first logger use, if not configured yet
    if not _configured:
        configure_logging()

    log = structlog.get_logger(*args, **kwargs)
    return log
