# SPDX-License-Identifier: AGPL-3.0

import logging
from dataclasses import dataclass

from rich.logging import RichHandler

#
# Basic logging
#

logging.basicConfig(
    format="%(message)s",
    handlers=[RichHandler(level=logging.NOTSET, show_time=False, show_path=False)],
)

logger = logging.getLogger("symvm")


#
# Logging with filtering out duplicate log messages
#


class UniqueLoggingFilter(logging.Filter):
    def __init__(self):
        super().__init__()
        self.records = set()

    def filter(self, record):
        if record.msg in self.records:
            return False
        self.records.add(record.msg)
        return True


logger_unique = logging.getLogger("symvm.unique")
logger_unique.addFilter(UniqueLoggingFilter())


def logger_for(allow_duplicate=True) -> logging.Logger:
    return logger if allow_duplicate else logger_unique


def debug(text: str, allow_duplicate=True) -> None:
    logger_for(allow_duplicate).debug(text)


def info(text: str, allow_duplicate=True) -> None:
    logger_for(allow_duplicate).info(text)


def warn(text: str, allow_duplicate=True) -> None:
    logger_for(allow_duplicate).warning(text)


def error(text: str, allow_duplicate=True) -> None:
    logger_for(allow_duplicate).error(text)


def debug_once(text: str) -> None:
    debug(text, allow_duplicate=False)


def set_verbosity(verbose: int, debug: bool = False) -> None:
    if debug:
        logger.setLevel(logging.DEBUG)
    elif verbose >= 1:
        logger.setLevel(logging.INFO)
    else:
        logger.setLevel(logging.WARNING)


#
# Warnings with error code
#


@dataclass(frozen=True)
class ErrorCode:
    code: str
    summary: str

    def __str__(self) -> str:
        return self.code


UNSUPPORTED_OPCODE = ErrorCode(
    "unsupported-opcode", "the path reached an opcode the engine does not model"
)
LOOP_BOUND = ErrorCode(
    "loop-bound", "a branch was taken more often than the `loop` option allows"
)
SOLVER_UNKNOWN = ErrorCode(
    "solver-unknown", "the solver could not decide a path condition"
)
FRONTIER_OVERFLOW = ErrorCode(
    "frontier-overflow", "pending states were evicted to honour `max_frontier`"
)
COUNTEREXAMPLE_INVALID = ErrorCode(
    "counterexample-invalid", "a solver model failed concrete re-evaluation"
)


def warn_code(error_code: ErrorCode, msg: str, allow_duplicate=True):
    logger_for(allow_duplicate).warning(f"{msg}\n({error_code}: {error_code.summary})")
