"""Logging for skyfleet, on loguru.

Every module logs through ``logger.bind(component=...)``: ``spot``,
``ondemand``, ``asg``, ``allocator``, ``helper``, ``retry`` and so on.
Nothing is emitted until logging is switched on, either by a ``[logging]``
config section, a ``LogConfig`` in the ``Settings`` given to
``EC2Provider.create``, or ``setup_logging``.

Example:
    from skyfleet import EC2Provider, LogConfig, Settings

    # Only the Spot allocator and retries, plus a full debug file
    logging = LogConfig(level="DEBUG", components=("spot", "retry"), file="skyfleet.log")
    provider = EC2Provider.create(Settings(logging=logging))
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal, get_args

from loguru import logger

logger.disable("skyfleet")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
type RecordFilter = Callable[[dict[str, Any]], bool]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[component]: <9}</magenta> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | {extra[component]} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where skyfleet logs go.

    Attributes:
        level: Minimum level on the console.
        file: Log file path; the file gets everything from ``file_level`` up.
        file_level: Minimum level in the file. Defaults to DEBUG.
        console: Whether to log to stderr.
        components: Only log these components, e.g. ``("spot", "asg")``.
            Empty logs every component.
        rotation: File rotation policy, e.g. "50 MB" or "1 day".
        retention: Number of rotated files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    file_level: LogLevel = "DEBUG"
    console: bool = True
    components: Sequence[str] = ()
    rotation: str = "50 MB"
    retention: int = 10

    def __post_init__(self) -> None:
        for name in ("level", "file_level"):
            value = getattr(self, name)
            if value not in get_args(LogLevel.__value__):
                raise ValueError(f"Invalid log {name} {value!r}")
        if self.retention < 0:
            raise ValueError(f"Log retention must not be negative, got {self.retention}")
        # TOML hands over arrays as lists
        object.__setattr__(self, "components", tuple(self.components))


def component_filter(components: Sequence[str]) -> RecordFilter:
    """Accept skyfleet records, restricted to ``components`` when any are given."""
    wanted = frozenset(components)

    def accept(record: dict[str, Any]) -> bool:
        if not (record["name"] or "").startswith("skyfleet"):
            return False
        return not wanted or record["extra"].get("component") in wanted

    return accept


def setup_logging(config: LogConfig) -> list[int]:
    """Enable skyfleet logging and return the handler ids for ``teardown_logging``."""
    logger.enable("skyfleet")
    logger.configure(extra={"component": "-"})
    accept = component_filter(config.components)
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter=accept,
        ))

    if config.file:
        handler_ids.append(logger.add(
            config.file,
            level=config.file_level,
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,  # tracebacks would show boto credentials
            enqueue=True,
            filter=accept,
        ))

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("skyfleet")
