"""
Logging helpers shared by the launcher and the agents

Every agent runs in its own container; the container name is injected in all
log records so that interleaved outputs of a deployment can be told apart.
"""

import asyncio
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Final, NotRequired, TypedDict

_logger = logging.getLogger(__name__)


GREEN = "\033[0;32m"
RED = "\033[0;31m"
ORANGE = "\033[48;2;255;165;0m"
GRAY = "\033[0;37m"
BOLDYELLOW = "\033[1;33m"

NORMAL = "\033[0m"

COLORS = {
    "WARNING": BOLDYELLOW,
    "INFO": GREEN,
    "DEBUG": GRAY,
    "CRITICAL": ORANGE,
    "ERROR": RED,
}


class LogExtra(TypedDict):
    log_container: NotRequired[str]
    log_app: NotRequired[str]


def get_log_record_extra(
    *,
    container_name: str | None = None,
    app_id: str | None = None,
) -> LogExtra | None:
    extra: LogExtra = {}

    if container_name:
        extra["log_container"] = container_name
    if app_id:
        extra["log_app"] = app_id

    return extra or None


class _Formatter(logging.Formatter):
    """Fills the missing `LogExtra` fields and colours the level in local dev format"""

    def __init__(self, fmt: str, *, log_format_local_dev_enabled: bool) -> None:
        super().__init__(fmt)
        self.log_format_local_dev_enabled = log_format_local_dev_enabled

    def format(self, record) -> str:
        for name in LogExtra.__optional_keys__:  # pylint: disable=no-member
            if not hasattr(record, name):
                setattr(record, name, None)

        if self.log_format_local_dev_enabled:
            levelname = record.levelname
            if levelname in COLORS:
                levelname_color = COLORS[levelname] + levelname + NORMAL
                record.levelname = levelname_color
            return super().format(record)

        return super().format(record).replace("\n", "\\n")


# SEE https://docs.python.org/3/library/logging.html#logrecord-attributes
_DEFAULT_FORMATTING: Final[str] = " | ".join(
    [
        "log_level=%(levelname)s",
        "log_timestamp=%(asctime)s",
        "log_source=%(name)s:%(funcName)s(%(lineno)d)",
        "log_app=%(log_app)s",
        "log_container=%(log_container)s",
        "log_msg=%(message)s",
    ]
)

_LOCAL_FORMATTING: Final[str] = (
    "%(levelname)s: [%(asctime)s/%(processName)s] "
    "[%(log_container)s] [%(name)s:%(funcName)s(%(lineno)d)]  -  %(message)s"
)


class _ContextFilter(logging.Filter):
    def __init__(self, extra: LogExtra) -> None:
        super().__init__()
        self._extra = extra

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self._extra.items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


def setup_loggers(
    *,
    log_level: int,
    log_format_local_dev_enabled: bool,
    extra: LogExtra | None = None,
) -> None:
    """
    Applies common configuration to the root logger.

    Args:
        log_level: level of the root logger
        log_format_local_dev_enabled: Enable local development formatting
        extra: values injected in every record (e.g. the agent's container name)
    """
    fmt = _LOCAL_FORMATTING if log_format_local_dev_enabled else _DEFAULT_FORMATTING

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler())

    for handler in root_logger.handlers:
        handler.setFormatter(
            _Formatter(
                fmt, log_format_local_dev_enabled=log_format_local_dev_enabled
            )
        )
        if extra:
            handler.addFilter(_ContextFilter(extra))


@contextmanager
def log_catch(logger: logging.Logger, *, reraise: bool = True) -> Iterator[None]:
    """Logs any exception raised in the block, cancellation excepted"""
    try:
        yield
    except asyncio.CancelledError:
        logger.debug("call was cancelled")
        raise
    except Exception:  # pylint: disable=broad-except
        logger.exception("Unhandled exception:")
        if reraise:
            raise


@contextmanager
def log_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    *args,
    log_duration: bool = False,
) -> Iterator[None]:
    """Logs 'Starting <msg> ...' and 'Finished <msg>' around the block

    Nothing is logged as finished if the block raises.
    """
    msg = msg.strip()
    msg = msg[:1].lower() + msg[1:]
    start = time.monotonic()

    # 1 => log_context, 2 => contextlib, 3 => caller
    logger.log(level, f"Starting {msg} ...", *args, stacklevel=3)
    yield
    duration = f" in {time.monotonic() - start:.3f}s" if log_duration else ""
    logger.log(level, f"Finished {msg}{duration}", *args, stacklevel=3)
