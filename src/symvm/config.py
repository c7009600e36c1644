# SPDX-License-Identifier: AGPL-3.0

import os
from collections import OrderedDict
from collections.abc import Callable, Generator
from dataclasses import MISSING, dataclass, fields
from dataclasses import field as dataclass_field
from typing import Any

import toml

from symvm.constants import MAX_CALL_DEPTH
from symvm.logs import warn

# common strings
internal = "internal"

# groups
bounds, debugging, solver = (
    "Bounds",
    "Debugging options",
    "Solver options",
)


# helper to define config fields
def arg(
    help: str,
    global_default: Any,
    metavar: str | None = None,
    group: str | None = None,
    choices: list[str] | None = None,
    action: Callable = None,
):
    return dataclass_field(
        default=None,
        metadata={
            "help": help,
            "global_default": global_default,
            "metavar": metavar,
            "group": group,
            "choices": choices,
            "action": action,
        },
    )


def ensure_non_empty(values: list | set | dict) -> list:
    if not values:
        raise ValueError("required a non-empty list")
    return values


def parse_csv(values: str, sep: str = ",") -> Generator[Any, None, None]:
    """Parse a CSV string and return a generator of *non-empty* values."""
    return (x for _x in values.split(sep) if (x := _x.strip()))


def split_signatures(values: str) -> list[str]:
    """splits on commas that are not inside parentheses"""

    result, depth, start = [], 0, 0
    for i, ch in enumerate(values):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced parentheses: {values}")
        elif ch == "," and depth == 0:
            result.append(values[start:i])
            start = i + 1

    if depth != 0:
        raise ValueError(f"unbalanced parentheses: {values}")

    result.append(values[start:])
    return [x for _x in result if (x := _x.strip())]


class ParseCSV:
    """comma-separated event signatures, e.g. `Bug(uint256,address),Hit()`"""

    @staticmethod
    def parse(values: str | list[str]) -> list[str]:
        if isinstance(values, list):
            return [str(v).strip() for v in values]
        return split_signatures(values)

    @staticmethod
    def unparse(values: list[str]) -> str:
        return ",".join(values)


class ParseCSVInt:
    @staticmethod
    def parse(values: str | list[int]) -> list[int]:
        if isinstance(values, list):
            return [int(v) for v in values]
        # support multiple bases: decimal, hex, etc.
        return [int(x, 0) for x in parse_csv(values)]

    @staticmethod
    def unparse(values: list[int]) -> str:
        return ",".join([str(v) for v in values])


class ParseErrorCodes:
    @staticmethod
    def parse(values: str | list[int] | set[int]) -> set[int]:
        if isinstance(values, set):
            return values

        if isinstance(values, list):
            return ensure_non_empty(set(int(v) for v in values))

        values = values.strip()
        # return empty set, which will be interpreted as matching any panic code
        if values == "*":
            return set()

        # support multiple bases: decimal, hex, etc.
        return ensure_non_empty(set(int(x, 0) for x in parse_csv(values)))

    @staticmethod
    def unparse(values: set[int]) -> str:
        if not values:
            return "*"
        return ",".join([f"0x{v:02x}" for v in sorted(values)])


@dataclass(frozen=True)
class Config:
    """Configuration object for symvm.

    Don't instantiate this directly, since all fields have default value None. Instead, use:

     - `default_config()` to get the default configuration with the actual default values
     - `with_overrides()` to create a new configuration object with some fields overridden
    """

    ### Internal fields

    _parent: "Config" = dataclass_field(
        repr=False,
        metadata={
            internal: True,
        },
    )

    _source: str = dataclass_field(
        metadata={
            internal: True,
        },
    )

    ### Exploration options
    #
    # New Config() objects only have None values for these fields. The actual
    # defaults live in the `global_default` metadata and are materialized by
    # `default_config()`, so that overrides can be layered on top of it.

    strategy: str = arg(
        help="frontier strategy",
        global_default="depth-first",
        choices=["depth-first", "coverage-guided"],
    )

    watch_events: str = arg(
        help="event signatures whose emission is flagged, e.g. 'Bug(uint256)'",
        global_default="",
        metavar="SIG1,SIG2,...",
        action=ParseCSV,
    )

    watch_pcs: str = arg(
        help="program counters at which a LOG is flagged",
        global_default="",
        metavar="PC1,PC2,...",
        action=ParseCSVInt,
    )

    panic_error_codes: str = arg(
        help="specify Panic error codes to be treated as invariant violations; use '*' to include all error codes",
        global_default="0x01",
        metavar="ERROR_CODE1,ERROR_CODE2,...",
        action=ParseErrorCodes,
    )

    timeout: int = arg(
        help="wall-clock limit for a whole exploration in seconds; 0 means unlimited",
        global_default=0,
        metavar="SECONDS",
    )

    ### Bounds

    max_depth: int = arg(
        help="set the max number of symbolic forks along a single path; 0 means unlimited",
        global_default=64,
        metavar="MAX_DEPTH",
        group=bounds,
    )

    max_instructions: int = arg(
        help="set the max number of instructions executed along a single path; 0 means unlimited",
        global_default=100_000,
        metavar="MAX_INSTRUCTIONS",
        group=bounds,
    )

    max_frontier: int = arg(
        help="set the max number of pending states; 0 means unlimited",
        global_default=1024,
        metavar="MAX_FRONTIER",
        group=bounds,
    )

    max_states: int = arg(
        help="set the max number of scheduling turns of a whole exploration; 0 means unlimited",
        global_default=10_000,
        metavar="MAX_STATES",
        group=bounds,
    )

    max_call_depth: int = arg(
        help="set the max number of nested calls; 0 means the EVM limit",
        global_default=8,
        metavar="MAX_CALL_DEPTH",
        group=bounds,
    )

    loop: int = arg(
        help="set loop unrolling bounds",
        global_default=2,
        metavar="MAX_BOUND",
        group=bounds,
    )

    ### Debugging options

    verbose: int = arg(
        help="increase verbosity levels: -v, -vv, -vvv, ...",
        global_default=0,
        group=debugging,
    )

    debug: bool = arg(
        help="run in debug mode",
        global_default=False,
        group=debugging,
    )

    print_steps: bool = arg(
        help="print every execution step",
        global_default=False,
        group=debugging,
    )

    ### Solver options

    solver: str = arg(
        help="solver back end",
        global_default="z3",
        choices=["z3", "external", "ranges"],
        group=solver,
    )

    solver_command: str = arg(
        help="command line of the external solver; reads SMT-LIB from stdin",
        global_default="z3 -in -smt2",
        metavar="COMMAND",
        group=solver,
    )

    solver_timeout_branching: int = arg(
        help="set timeout (in milliseconds) for solving branching conditions; 0 means no timeout",
        global_default=1000,
        metavar="TIMEOUT",
        group=solver,
    )

    solver_timeout_assertion: int = arg(
        help="set timeout (in milliseconds) for solving terminal path conditions; 0 means no timeout",
        global_default=60000,
        metavar="TIMEOUT",
        group=solver,
    )

    ### Methods

    def __post_init__(self):
        for field in fields(self):
            if field.metadata.get(internal):
                continue

            value = object.__getattribute__(self, field.name)
            if value is None:
                continue

            # parse raw values, e.g. strings from a toml file or a caller
            if (action := field.metadata.get("action")) is not None:
                value = action.parse(value)
            elif isinstance(value, str) and field.type is int:
                value = int(value, 0)
            elif isinstance(value, str) and field.type is bool:
                if value.lower() not in ("true", "false"):
                    raise ValueError(f"invalid {field.name}: {value!r}")
                value = value.lower() == "true"
            object.__setattr__(self, field.name, value)

            if (choices := field.metadata.get("choices")) and value not in choices:
                raise ValueError(
                    f"invalid {field.name}: {value!r} (choose from {', '.join(choices)})"
                )

            if field.type is int and (type(value) is not int or value < 0):
                raise ValueError(f"invalid {field.name}: {value!r}")

        call_depth = object.__getattribute__(self, "max_call_depth")
        if call_depth is not None and call_depth > MAX_CALL_DEPTH:
            raise ValueError(f"max_call_depth exceeds the EVM limit: {call_depth}")

    def __getattribute__(self, name):
        """Look up values in parent object if they are not set in the current object.

        This is because we consider the current object to override its parent.

        Because of this, printing a Config object will show a "flattened/resolved" view of the configuration.
        """

        # look up value in current object
        value = object.__getattribute__(self, name)
        if value is not None:
            return value

        # look up value in parent object
        parent = object.__getattribute__(self, "_parent")
        if parent is not None:
            return getattr(parent, name)

        return value

    def with_overrides(self, source: str, **overrides):
        """Create a new configuration object with some fields overridden.

        Raises ValueError for unknown fields or invalid values."""

        try:
            return Config(_parent=self, _source=source, **overrides)
        except TypeError as e:
            warn(f"error: unrecognized option: {str(e).split()[-1]}")
            raise ValueError(f"unrecognized option in {source}: {e}") from e

    def value_with_source(self, name: str) -> tuple[Any, str]:
        # look up value in current object
        value = object.__getattribute__(self, name)
        if value is not None:
            return (value, self._source)

        # look up value in parent object
        parent = self._parent
        if parent is not None:
            return parent.value_with_source(name)

        return (value, self._source)

    def values_with_sources(self) -> dict[str, tuple[Any, str]]:
        # field -> (value, source)
        values = {}
        for field in fields(self):
            if field.metadata.get(internal):
                continue
            values[field.name] = self.value_with_source(field.name)
        return values

    def values(self):
        skip_empty = self._parent is not None

        for field in fields(self):
            if field.metadata.get(internal):
                continue

            field_value = object.__getattribute__(self, field.name)
            if skip_empty and field_value is None:
                continue

            yield field.name, field_value

    def values_by_layer(self) -> dict[str, tuple[str, Any]]:
        # source -> {field, value}
        if self._parent is None:
            return OrderedDict([(self._source, dict(self.values()))])

        values = self._parent.values_by_layer()
        values[self._source] = dict(self.values())
        return values

    def formatted_layers(self) -> str:
        lines = []
        for layer, values in self.values_by_layer().items():
            lines.append(f"{layer}:")
            for field, value in values.items():
                lines.append(f"  {field}: {value}")
        return "\n".join(lines)


class TomlParser:
    def __init__(self):
        pass

    def parse_file(self, toml_file_path: str) -> dict:
        with open(toml_file_path) as f:
            return self.parse_str(f.read(), source=toml_file_path)

    # exposed for easier testing
    def parse_str(self, file_contents: str, source: str = "symvm.toml") -> dict:
        parsed = toml.loads(file_contents)
        return self.parse_dict(parsed, source=source)

    # exposed for easier testing
    def parse_dict(self, parsed: dict, source: str = "symvm.toml") -> dict:
        if len(parsed) != 1:
            raise ValueError(
                f"{source}: expected a single `[global]` section in the toml file, "
                f"got {len(parsed)}: {', '.join(parsed.keys())}"
            )

        data = parsed.get("global")
        if data is None:
            key = next(iter(parsed))
            raise ValueError(
                f"{source}: expected a `[global]` section in the toml file, got '{key}'"
            )

        # gather custom actions
        actions = {
            field.name: field.metadata["action"]
            for field in fields(Config)
            if field.metadata.get("action")
        }

        result = {}
        for key, value in data.items():
            key = key.replace("-", "_")
            action = actions.get(key)
            result[key] = action.parse(value) if action else value
        return result


def _create_default_config() -> "Config":
    values = {}

    for field in fields(Config):
        # we build the default config by looking at the global_default metadata field
        default = field.metadata.get("global_default", MISSING)
        if default == MISSING:
            continue

        # retrieve the default value
        values[field.name] = default() if callable(default) else default

    return Config(_parent=None, _source="default", **values)


def _create_toml_parser() -> TomlParser:
    return TomlParser()


# public singleton accessors
def default_config() -> "Config":
    return _default_config


def toml_parser():
    return _toml_parser


def load_config(path: str | None = None, base: Config | None = None) -> Config:
    """
    Layers the `[global]` table of a symvm.toml file on top of base (the
    defaults if omitted). With no path, ./symvm.toml is used if it exists.
    """

    base = base or default_config()

    if path is None:
        path = os.path.join(os.getcwd(), "symvm.toml")
        if not os.path.exists(path):
            return base

    return base.with_overrides(source=path, **toml_parser().parse_file(path))


# init module-level singletons
_default_config = _create_default_config()
_toml_parser = _create_toml_parser()
