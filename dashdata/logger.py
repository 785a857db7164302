"""Loguru based logging for dashdata.

Modules obtain a bound logger with ``get_logger(__name__)``. Nothing is
configured at import time; applications call ``setup_logging()`` once at
startup. Standard library records (httpx, supabase) are routed into loguru by
``InterceptHandler`` when ``intercept_stdlib`` is enabled.
"""

import logging
import sys
from inspect import currentframe

import typing as t
from loguru import logger as _logger
from pydantic import Field

from .config import AppSettings, Settings

if t.TYPE_CHECKING:
    from loguru import Logger

__all__ = [
    "InterceptHandler",
    "LoggerSettings",
    "get_logger",
    "setup_logging",
]


class LoggerSettings(Settings):
    """Logging configuration."""

    log_level: str = Field(default="INFO", description="Minimum level")
    deployed_level: str = Field(default="WARNING", description="Level when deployed")
    serialize: bool = Field(default=False, description="Emit JSON records")
    colorize: bool = True
    backtrace: bool = False
    diagnose: bool = False
    intercept_stdlib: bool = Field(
        default=True,
        description="Route standard library logging through loguru",
    )
    level_per_module: dict[str, str] = Field(default_factory=dict)
    format: dict[str, str] = {
        "time": "<b><e>[</e> <w>{time:YYYY-MM-DD HH:mm:ss.SSS}</w> <e>]</e></b>",
        "level": " <level>{level:>8}</level>",
        "sep": " <b><w>in</w></b> ",
        "name": "<b>{extra[mod_name]:>20}</b>",
        "line": "<b><e>[</e><w>{line:^5}</w><e>]</e></b>",
        "message": "  <level>{message}</level>",
    }

    @property
    def format_string(self) -> str:
        return "".join(self.format.values()) + "\n{exception}"


_sink_ids: list[int] = []


def _module_name(name: str) -> str:
    parts = name.split(".")
    return parts[-1] if parts[-1] not in ("__init__", "_base") else parts[-2]


def get_logger(name: str) -> "Logger":
    """Return the loguru logger bound to a module name."""
    return _logger.bind(mod_name=_module_name(name))


class InterceptHandler(logging.Handler):
    """Handler to intercept standard library logging and route to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = (currentframe(), 0)
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        _logger.bind(mod_name=_module_name(record.name)).opt(
            depth=depth,
            exception=record.exc_info,
        ).log(level, record.getMessage())


def _patch(record: dict[str, t.Any]) -> None:
    record["extra"].setdefault("mod_name", _module_name(record["name"] or "root"))


def setup_logging(
    settings: LoggerSettings | None = None,
    app: AppSettings | None = None,
) -> None:
    """Configure loguru sinks.

    Idempotent: sinks installed by a previous call are replaced.
    """
    settings = settings or LoggerSettings()
    app = app or AppSettings()

    _logger.remove()
    _sink_ids.clear()
    _logger.configure(patcher=t.cast("t.Any", _patch), extra={"app": app.name})

    level = settings.deployed_level if app.deployed else settings.log_level
    level = "DEBUG" if app.debug else level
    per_module = {k: v.upper() for k, v in settings.level_per_module.items()}

    def _filter(record: dict[str, t.Any]) -> bool:
        module_level = per_module.get(record["extra"].get("mod_name", ""))
        if module_level is None:
            return True
        return record["level"].no >= _logger.level(module_level).no

    sink_id = _logger.add(
        sys.stderr,
        level=level.upper(),
        format=settings.format_string,
        filter=t.cast("t.Any", _filter),
        colorize=settings.colorize and not settings.serialize,
        serialize=settings.serialize,
        backtrace=settings.backtrace,
        diagnose=settings.diagnose,
    )
    _sink_ids.append(sink_id)

    if settings.intercept_stdlib:
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
