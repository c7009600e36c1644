# SPDX-License-Identifier: AGPL-3.0

import re
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from symvm.bitvec import Word
from symvm.constants import MAX_CODE_SIZE
from symvm.exceptions import MalformedBytecode

OP_STOP = 0x00
OP_ADD = 0x01
OP_MUL = 0x02
OP_SUB = 0x03
OP_DIV = 0x04
OP_SDIV = 0x05
OP_MOD = 0x06
OP_SMOD = 0x07
OP_ADDMOD = 0x08
OP_MULMOD = 0x09
OP_EXP = 0x0A
OP_SIGNEXTEND = 0x0B
OP_LT = 0x10
OP_GT = 0x11
OP_SLT = 0x12
OP_SGT = 0x13
OP_EQ = 0x14
OP_ISZERO = 0x15
OP_AND = 0x16
OP_OR = 0x17
OP_XOR = 0x18
OP_NOT = 0x19
OP_BYTE = 0x1A
OP_SHL = 0x1B
OP_SHR = 0x1C
OP_SAR = 0x1D
OP_SHA3 = 0x20
OP_ADDRESS = 0x30
OP_BALANCE = 0x31
OP_ORIGIN = 0x32
OP_CALLER = 0x33
OP_CALLVALUE = 0x34
OP_CALLDATALOAD = 0x35
OP_CALLDATASIZE = 0x36
OP_CALLDATACOPY = 0x37
OP_CODESIZE = 0x38
OP_CODECOPY = 0x39
OP_GASPRICE = 0x3A
OP_EXTCODESIZE = 0x3B
OP_EXTCODECOPY = 0x3C
OP_RETURNDATASIZE = 0x3D
OP_RETURNDATACOPY = 0x3E
OP_EXTCODEHASH = 0x3F
OP_BLOCKHASH = 0x40
OP_COINBASE = 0x41
OP_TIMESTAMP = 0x42
OP_NUMBER = 0x43
OP_PREVRANDAO = 0x44
OP_GASLIMIT = 0x45
OP_CHAINID = 0x46
OP_SELFBALANCE = 0x47
OP_BASEFEE = 0x48
OP_POP = 0x50
OP_MLOAD = 0x51
OP_MSTORE = 0x52
OP_MSTORE8 = 0x53
OP_SLOAD = 0x54
OP_SSTORE = 0x55
OP_JUMP = 0x56
OP_JUMPI = 0x57
OP_PC = 0x58
OP_MSIZE = 0x59
OP_GAS = 0x5A
OP_JUMPDEST = 0x5B
OP_TLOAD = 0x5C
OP_TSTORE = 0x5D
OP_MCOPY = 0x5E
OP_PUSH0 = 0x5F
OP_PUSH1 = 0x60
OP_PUSH2 = 0x61
OP_PUSH3 = 0x62
OP_PUSH4 = 0x63
OP_PUSH5 = 0x64
OP_PUSH6 = 0x65
OP_PUSH7 = 0x66
OP_PUSH8 = 0x67
OP_PUSH9 = 0x68
OP_PUSH10 = 0x69
OP_PUSH11 = 0x6A
OP_PUSH12 = 0x6B
OP_PUSH13 = 0x6C
OP_PUSH14 = 0x6D
OP_PUSH15 = 0x6E
OP_PUSH16 = 0x6F
OP_PUSH17 = 0x70
OP_PUSH18 = 0x71
OP_PUSH19 = 0x72
OP_PUSH20 = 0x73
OP_PUSH21 = 0x74
OP_PUSH22 = 0x75
OP_PUSH23 = 0x76
OP_PUSH24 = 0x77
OP_PUSH25 = 0x78
OP_PUSH26 = 0x79
OP_PUSH27 = 0x7A
OP_PUSH28 = 0x7B
OP_PUSH29 = 0x7C
OP_PUSH30 = 0x7D
OP_PUSH31 = 0x7E
OP_PUSH32 = 0x7F
OP_DUP1 = 0x80
OP_DUP2 = 0x81
OP_DUP3 = 0x82
OP_DUP4 = 0x83
OP_DUP5 = 0x84
OP_DUP6 = 0x85
OP_DUP7 = 0x86
OP_DUP8 = 0x87
OP_DUP9 = 0x88
OP_DUP10 = 0x89
OP_DUP11 = 0x8A
OP_DUP12 = 0x8B
OP_DUP13 = 0x8C
OP_DUP14 = 0x8D
OP_DUP15 = 0x8E
OP_DUP16 = 0x8F
OP_SWAP1 = 0x90
OP_SWAP2 = 0x91
OP_SWAP3 = 0x92
OP_SWAP4 = 0x93
OP_SWAP5 = 0x94
OP_SWAP6 = 0x95
OP_SWAP7 = 0x96
OP_SWAP8 = 0x97
OP_SWAP9 = 0x98
OP_SWAP10 = 0x99
OP_SWAP11 = 0x9A
OP_SWAP12 = 0x9B
OP_SWAP13 = 0x9C
OP_SWAP14 = 0x9D
OP_SWAP15 = 0x9E
OP_SWAP16 = 0x9F
OP_LOG0 = 0xA0
OP_LOG1 = 0xA1
OP_LOG2 = 0xA2
OP_LOG3 = 0xA3
OP_LOG4 = 0xA4
OP_CREATE = 0xF0
OP_CALL = 0xF1
OP_CALLCODE = 0xF2
OP_RETURN = 0xF3
OP_DELEGATECALL = 0xF4
OP_CREATE2 = 0xF5
OP_STATICCALL = 0xFA
OP_REVERT = 0xFD
OP_INVALID = 0xFE
OP_SELFDESTRUCT = 0xFF

str_opcode: dict[int, str] = {
    value: name[3:]
    for name, value in list(globals().items())
    if name.startswith("OP_")
}

TERMINATING_OPCODES = (
    OP_STOP,
    OP_RETURN,
    OP_REVERT,
    OP_INVALID,
)


class InsnKind(Enum):
    """Instruction categories, one interpreter handler each."""

    ARITH = "arith"
    COMPARE = "compare"
    BITWISE = "bitwise"
    SHA3 = "sha3"
    ENV = "env"
    STACK = "stack"
    MEMORY = "memory"
    STORAGE = "storage"
    JUMP = "jump"
    JUMPI = "jumpi"
    LOG = "log"
    CALL = "call"
    HALT = "halt"
    UNSUPPORTED = "unsupported"


def _kinds() -> dict[int, InsnKind]:
    kinds = {}

    def assign(kind: InsnKind, *opcodes: int) -> None:
        for op in opcodes:
            kinds[op] = kind

    assign(
        InsnKind.ARITH,
        OP_ADD, OP_MUL, OP_SUB, OP_DIV, OP_SDIV, OP_MOD, OP_SMOD,
        OP_ADDMOD, OP_MULMOD, OP_EXP, OP_SIGNEXTEND,
    )  # fmt: skip
    assign(InsnKind.COMPARE, OP_LT, OP_GT, OP_SLT, OP_SGT, OP_EQ, OP_ISZERO)
    assign(
        InsnKind.BITWISE,
        OP_AND, OP_OR, OP_XOR, OP_NOT, OP_BYTE, OP_SHL, OP_SHR, OP_SAR,
    )  # fmt: skip
    assign(InsnKind.SHA3, OP_SHA3)
    assign(
        InsnKind.ENV,
        OP_ADDRESS, OP_BALANCE, OP_ORIGIN, OP_CALLER, OP_CALLVALUE,
        OP_CALLDATALOAD, OP_CALLDATASIZE, OP_CALLDATACOPY, OP_CODESIZE,
        OP_CODECOPY, OP_GASPRICE, OP_EXTCODESIZE, OP_EXTCODECOPY,
        OP_RETURNDATASIZE, OP_RETURNDATACOPY, OP_BLOCKHASH, OP_COINBASE,
        OP_TIMESTAMP, OP_NUMBER, OP_PREVRANDAO, OP_GASLIMIT, OP_CHAINID,
        OP_SELFBALANCE, OP_BASEFEE, OP_PC, OP_GAS,
    )  # fmt: skip
    assign(InsnKind.STACK, OP_POP, OP_JUMPDEST, *range(OP_PUSH0, OP_SWAP16 + 1))
    assign(InsnKind.MEMORY, OP_MLOAD, OP_MSTORE, OP_MSTORE8, OP_MSIZE, OP_MCOPY)
    assign(InsnKind.STORAGE, OP_SLOAD, OP_SSTORE)
    assign(InsnKind.JUMP, OP_JUMP)
    assign(InsnKind.JUMPI, OP_JUMPI)
    assign(InsnKind.LOG, *range(OP_LOG0, OP_LOG4 + 1))
    assign(InsnKind.CALL, OP_CALL, OP_DELEGATECALL, OP_STATICCALL)
    assign(InsnKind.HALT, *TERMINATING_OPCODES)
    return kinds


INSN_KINDS: dict[int, InsnKind] = _kinds()


def insn_kind(opcode: int) -> InsnKind:
    # everything else, including CREATE*, CALLCODE, SELFDESTRUCT, EXTCODEHASH,
    # TLOAD/TSTORE and undefined opcodes
    return INSN_KINDS.get(opcode, InsnKind.UNSUPPORTED)


def insn_len(opcode: int) -> int:
    return 1 + (opcode - OP_PUSH0) * (OP_PUSH1 <= opcode <= OP_PUSH32)


def mnemonic(opcode: int) -> str:
    return str_opcode.get(opcode, hex(opcode))


@dataclass(frozen=True, slots=True, eq=False, order=False)
class Instruction:
    opcode: int
    pc: int = -1
    next_pc: int = -1

    # a Word, so that it can be pushed on the stack with no conversion
    operand: Word | None = None

    kind: InsnKind = InsnKind.HALT

    STOP: ClassVar["Instruction"] = None

    def __str__(self) -> str:
        operand_str = ""
        if self.operand is not None and len(self) > 1:
            width = (len(self) - 1) * 2
            operand_str = f" 0x{int(self.operand):0{width}x}"
        return f"{mnemonic(self.opcode)}{operand_str}"

    def __repr__(self) -> str:
        return f"Instruction({mnemonic(self.opcode)}, pc={self.pc}, operand={self.operand!r})"

    def __len__(self) -> int:
        return insn_len(self.opcode)


# Initialize the STOP singleton
Instruction.STOP = Instruction(OP_STOP)

_HEX = re.compile(r"[0-9a-fA-F]*\Z")


def stripped(hexstring: str) -> str:
    """Remove 0x prefix from hexstring"""
    return hexstring[2:] if hexstring.startswith(("0x", "0X")) else hexstring


class Contract:
    """
    Decoded contract bytecode.

    Instructions are decoded eagerly, so malformed code is rejected before
    any path is explored. The object is immutable and shared by all states.
    """

    __slots__ = ("_code", "_insn", "_jumpdests", "name")

    def __init__(self, code: bytes, *, name: str | None = None) -> None:
        if not isinstance(code, bytes | bytearray):
            raise TypeError(f"expected bytes, got {type(code)}")

        if not code:
            raise MalformedBytecode("empty bytecode")

        if len(code) > MAX_CODE_SIZE:
            raise MalformedBytecode(
                f"bytecode size {len(code)} exceeds the limit of {MAX_CODE_SIZE}"
            )

        self._code = bytes(code)
        self.name = name

        # maps pc to decoded instruction, None for push data
        self._insn: list[Instruction | None] = [None] * len(code)
        self._jumpdests: frozenset[int] = frozenset()
        self.__decode_all()

    def __deepcopy__(self, memo):
        # immutable
        return self

    def __repr__(self) -> str:
        return f"Contract({self.name or '?'}, {len(self._code)} bytes)"

    @staticmethod
    def from_hexcode(hexcode: str, *, name: str | None = None) -> "Contract":
        """Create a contract from a hexcode string, e.g. "0x6001600201" """
        if not isinstance(hexcode, str):
            raise MalformedBytecode(f"expected a hex string, got {type(hexcode)}")

        hexcode = stripped(hexcode.strip())

        if "__" in hexcode:
            raise MalformedBytecode("bytecode contains an unlinked library placeholder")

        if len(hexcode) % 2 != 0:
            raise MalformedBytecode(f"odd-length hexcode ({len(hexcode)} digits)")

        if not _HEX.match(hexcode):
            raise MalformedBytecode("hexcode contains non-hex characters")

        return Contract(bytes.fromhex(hexcode), name=name)

    @staticmethod
    def of(code: "Contract | bytes | str", *, name: str | None = None) -> "Contract":
        if isinstance(code, Contract):
            return code
        if isinstance(code, str):
            return Contract.from_hexcode(code, name=name)
        return Contract(code, name=name)

    def __decode_all(self) -> None:
        code = self._code
        n = len(code)
        jumpdests = set()
        pc = 0

        while pc < n:
            opcode = code[pc]
            next_pc = pc + insn_len(opcode)
            if next_pc > n:
                raise MalformedBytecode(
                    f"truncated {mnemonic(opcode)} at pc={pc}: "
                    f"needs {next_pc - pc - 1} bytes, {n - pc - 1} left"
                )

            operand = None
            if next_pc > pc + 1:
                operand = Word(code[pc + 1 : next_pc])
            elif opcode == OP_PUSH0:
                operand = Word(0)

            if opcode == OP_JUMPDEST:
                jumpdests.add(pc)

            self._insn[pc] = Instruction(
                opcode, pc=pc, next_pc=next_pc, operand=operand, kind=insn_kind(opcode)
            )
            pc = next_pc

        self._jumpdests = frozenset(jumpdests)

    def decode_instruction(self, pc: int) -> Instruction:
        """the instruction at pc, STOP past the end of the code"""

        if pc < 0:
            raise ValueError(f"invalid {pc=}")

        if pc >= len(self._insn):
            return Instruction.STOP

        insn = self._insn[pc]
        if insn is None:
            raise ValueError(f"pc={pc} points into push data")
        return insn

    def instructions(self) -> list[Instruction]:
        return [insn for insn in self._insn if insn is not None]

    def next_pc(self, pc: int) -> int:
        return self.decode_instruction(pc).next_pc

    def slice(self, start: int, size: int) -> list[int]:
        """code bytes in [start, start + size), zero-padded past the end"""
        chunk = list(self._code[start : start + size])
        return chunk + [0] * (size - len(chunk))

    def __getitem__(self, key: int) -> int:
        """Returns the byte at the given offset."""
        return self._code[key]

    def __len__(self) -> int:
        """Returns the length of the bytecode in bytes."""
        return len(self._code)

    def __bytes__(self) -> bytes:
        return self._code

    def valid_jumpdests(self) -> frozenset[int]:
        """Returns the set of valid jump destinations."""
        return self._jumpdests
