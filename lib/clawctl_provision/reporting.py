from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("clawctl_provision")


class Reporter(Protocol):
    def info(self, msg: str) -> None: ...

    def ok(self, msg: str) -> None: ...

    def warn(self, msg: str) -> None: ...


class LogReporter:
    """Reporter used when the caller does not supply one."""

    def info(self, msg: str) -> None:
        logger.info(msg)

    def ok(self, msg: str) -> None:
        logger.info(msg)

    def warn(self, msg: str) -> None:
        logger.warning(msg)


def default_reporter(reporter: Reporter | None) -> Reporter:
    return reporter if reporter is not None else LogReporter()
