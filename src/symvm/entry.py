# SPDX-License-Identifier: AGPL-3.0

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace

from symvm.bitvec import Word
from symvm.constants import DEFAULT_ADDRESS, DEFAULT_CALLER, DEFAULT_ORIGIN
from symvm.contract import Contract
from symvm.expr import ExprArena
from symvm.memory import Byte, word_to_bytes
from symvm.state import Block, Exec, Frame
from symvm.storage import Storage
from symvm.utils import selector as selector_of

SENDER = "msg_sender"
VALUE = "msg_value"

_signature_pattern = re.compile(r"^\s*([A-Za-z_$][\w$]*)\s*\((.*)\)\s*$")
_static_type_pattern = re.compile(r"^(u?int)(\d*)$|^(address|bool)$|^bytes(\d+)$")


def is_static_type(typ: str) -> bool:
    """ABI types that are encoded in place as a single 32-byte word"""

    m = _static_type_pattern.match(typ)
    if m is None:
        return False

    int_kind, int_bits, _, bytes_len = m.groups()
    if int_kind is not None:
        bits = int(int_bits) if int_bits else 256
        return 8 <= bits <= 256 and bits % 8 == 0

    if bytes_len is not None:
        return 1 <= int(bytes_len) <= 32

    return True


def parse_signature(signature: str) -> tuple[str, list[str]]:
    """
    Splits e.g. `process(uint256,address)` into its name and parameter types.
    Raises ValueError for dynamic or composite parameter types.
    """

    m = _signature_pattern.match(signature)
    if m is None:
        raise ValueError(f"invalid function signature: {signature!r}")

    name, params = m.groups()
    types = [t.strip() for t in params.split(",")] if params.strip() else []

    for typ in types:
        if not is_static_type(typ):
            raise ValueError(f"unsupported parameter type {typ!r} in {signature!r}")

    return name, types


def canonical_signature(signature: str) -> str:
    name, types = parse_signature(signature)
    # uint and int are aliases of their 256-bit versions
    types = [t + "256" if t in ("uint", "int") else t for t in types]
    return f"{name}({','.join(types)})"


@dataclass(frozen=True)
class EntryPoint:
    """
    Where an exploration starts: the code under analysis, the message that
    calls it, and the initial world state.

    args holds one entry per ABI parameter; None marks a symbolic argument,
    named after arg_names (p0, p1, ... by default). A symbolic caller or
    callvalue is written as None and named msg_sender / msg_value.
    """

    code: Contract | bytes | str
    signature: str | None = None
    selector: bytes | None = None
    args: Sequence[int | None] | None = None
    arg_names: Sequence[str] | None = None

    address: int = DEFAULT_ADDRESS
    caller: int | None = DEFAULT_CALLER
    callvalue: int | None = 0

    # initial storage of the entry contract
    storage: Mapping[int, int] = field(default_factory=dict)

    # other deployed contracts, address -> code, and their storage
    accounts: Mapping[int, Contract | bytes | str] = field(default_factory=dict)
    accounts_storage: Mapping[int, Mapping[int, int]] = field(default_factory=dict)

    # raw calldata; replaces selector and args
    calldata: bytes | None = None

    block: Block | None = None

    def __post_init__(self):
        # decode eagerly so that malformed code is reported up front
        object.__setattr__(self, "code", Contract.of(self.code))
        object.__setattr__(
            self,
            "accounts",
            {addr: Contract.of(code) for addr, code in self.accounts.items()},
        )

        if self.calldata is not None:
            if self.signature is not None or self.selector is not None or self.args:
                raise ValueError("raw calldata excludes signature, selector and args")
            object.__setattr__(self, "args", ())
            object.__setattr__(self, "arg_names", ())
            return

        num_params = None
        if self.signature is not None:
            _, types = parse_signature(self.signature)
            num_params = len(types)
            expected = selector_of(canonical_signature(self.signature))
            if self.selector is None:
                object.__setattr__(self, "selector", expected)
            elif bytes(self.selector) != expected:
                raise ValueError(
                    f"selector 0x{bytes(self.selector).hex()} does not match {self.signature}"
                )

        if self.selector is not None and len(self.selector) != 4:
            raise ValueError(f"selector must be 4 bytes: {self.selector!r}")

        args = self.args
        if args is None:
            args = (None,) * (num_params or 0)
        elif num_params is not None and len(args) != num_params:
            raise ValueError(
                f"{self.signature} takes {num_params} arguments, got {len(args)}"
            )
        object.__setattr__(self, "args", tuple(args))

        names = self.arg_names
        if names is None:
            names = tuple(f"p{i}" for i in range(len(self.args)))
        if len(names) != len(self.args):
            raise ValueError(f"expected {len(self.args)} argument names, got {len(names)}")
        if len(set(names)) != len(names) or {SENDER, VALUE} & set(names):
            raise ValueError(f"argument names must be unique: {names}")
        object.__setattr__(self, "arg_names", tuple(names))

    @property
    def symbolic_inputs(self) -> tuple[str, ...]:
        """the names of the symbols a witness assigns"""

        names = [n for n, a in zip(self.arg_names or (), self.args or ()) if a is None]
        if self.caller is None:
            names.append(SENDER)
        if self.callvalue is None:
            names.append(VALUE)
        return tuple(names)

    def mk_calldata(self, arena: ExprArena) -> list[Byte]:
        if self.calldata is not None:
            return list(self.calldata)

        data: list[Byte] = list(self.selector or b"")
        for name, arg in zip(self.arg_names, self.args):
            word = Word(arena.var(name)) if arg is None else Word(arg)
            data.extend(word_to_bytes(word))
        return data

    def mk_exec(self, arena: ExprArena) -> Exec:
        """the initial execution state"""

        caller = Word(arena.var(SENDER)) if self.caller is None else Word(self.caller)
        callvalue = Word(arena.var(VALUE)) if self.callvalue is None else Word(self.callvalue)

        accounts = dict(self.accounts)
        accounts[self.address] = self.code

        storage = {addr: Storage(slots) for addr, slots in self.accounts_storage.items()}
        storage[self.address] = Storage(self.storage)

        frame = Frame(
            contract=self.code,
            address=self.address,
            caller=caller,
            callvalue=callvalue,
            calldata=self.mk_calldata(arena),
        )

        return Exec(
            arena=arena,
            accounts=accounts,
            storage=storage,
            frames=[frame],
            block=self.block,
            origin=Word(DEFAULT_ORIGIN),
            inputs=self.symbolic_inputs,
        )

    def with_witness(self, witness: Mapping[str, int]) -> "EntryPoint":
        """a fully concrete copy, with every symbolic input taken from witness"""

        args = tuple(
            witness.get(name, 0) if arg is None else arg
            for name, arg in zip(self.arg_names, self.args)
        )

        return replace(
            self,
            args=args,
            caller=witness.get(SENDER, 0) if self.caller is None else self.caller,
            callvalue=witness.get(VALUE, 0) if self.callvalue is None else self.callvalue,
        )
