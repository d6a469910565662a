"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "rich"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "rich": "{extra[component]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {extra[component]:<10} | {message}",
}
_CONFIGURED_PROFILE: LogProfile | None = None


def _inject_component(record: loguru.Record) -> None:
    # chatrelay.session -> session
    module = record["name"] or ""
    record["extra"].setdefault("component", module.rpartition(".")[2] or "-")


def _build_rich_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once.

    Every record carries `extra[component]`, the short name of the module that
    logged it, unless a caller bound its own with `logger.bind(component=...)`.
    """
    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    level = (level or os.getenv("CHATRELAY_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.configure(patcher=_inject_component)
    sink = _build_rich_handler() if profile == "rich" else sys.stderr
    logger.add(
        sink,
        level=level,
        format=_PROFILE_FORMATS[profile],
        backtrace=False,
        diagnose=False,
    )
    _CONFIGURED_PROFILE = profile
