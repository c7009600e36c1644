# SPDX-License-Identifier: AGPL-3.0

import re

from symvm.logs import logger

# Regular expression for capturing model entries
model_pattern = re.compile(
    r"""
    \(\s*define-fun\s+           # Match "(define-fun"
    (\|[^|]*\||[^\s()|]+)\s+     # Capture the symbol, optionally wrapped in "|"
    \(\)\s+                      # No arguments
    (Bool|\(_\s+BitVec\s+\d+\))\s+  # Capture the sort
    (                            # Group for the value
        \#b[01]+                 # Binary value (e.g., "#b1010")
        |\#x[0-9a-fA-F]+         # Hexadecimal value (e.g., "#xFF")
        |\(_\s+bv\d+\s+\d+\)     # Decimal value (e.g., "(_ bv42 256)")
        |true|false              # Boolean value
    )
    """,
    re.VERBOSE,
)


def parse_const_value(value: str) -> int | bool:
    if value == "true":
        return True

    if value == "false":
        return False

    if value.startswith("#b"):
        return int(value[2:], 2)

    if value.startswith("#x"):
        return int(value[2:], 16)

    # we may have a group like (_ bv123 256)
    tokens = value.split()
    for token in tokens:
        if token.startswith("bv"):
            return int(token[2:])

    raise ValueError(f"unknown value format: {value}")


def parse_model(smtlib_str: str) -> dict[str, int | bool]:
    """Expects a whole smtlib model output, as produced by a solver
    in response to a `(check-sat)` + `(get-model)` command.

    Returns the value of every constant the model defines, by symbol name."""

    model: dict[str, int | bool] = {}

    # for now we explicitly don't try to properly parse the smtlib output
    # because of idiosyncrasies of different solvers:
    # - ignores the initial sat/unsat on the first line
    # - ignores the occasional `(model)` wrapper used by yices, stp, cvc4, etc.
    # - ignores auxiliary define-funs with arguments

    for match in model_pattern.finditer(smtlib_str):
        name = match.group(1).strip("|")
        try:
            model[name] = parse_const_value(match.group(3))
        except ValueError as e:
            logger.error(f"error parsing smtlib string '{match.group(0).strip()}': {e}")
            raise e

    return model


def parse_check_sat(output: str) -> str:
    """the first answer line (sat, unsat or unknown), or "" if there is none"""

    for line in output.splitlines():
        line = line.strip()
        if line in ("sat", "unsat", "unknown"):
            return line
        if line:
            break
    return ""
