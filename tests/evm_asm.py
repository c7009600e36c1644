"""
Tiny assembler for test fixtures.

Syntax, one or more items per line, `;` starts a comment:

    name:                   JUMPDEST, and defines a label
    PUSH @name              PUSH2 of the label's offset
    PUSH 0x2a / PUSH 42     smallest PUSHn holding the value
    PUSH sel:f(uint256)     PUSH4 of a function selector
    PUSH event:E(uint256)   PUSH32 of an event topic
    PUSH3 0x2a              explicit width
    ADD, MSTORE, ...        any mnemonic
"""

from symvm.contract import OP_JUMPDEST, OP_PUSH1, OP_PUSH2, str_opcode
from symvm.utils import event_topic, selector

OPCODES = {name: op for op, name in str_opcode.items()}


def _operand(token: str) -> tuple[int, int | None]:
    """(value, width) of a PUSH operand; width None means smallest"""

    if token.startswith("sel:"):
        return int.from_bytes(selector(token[4:]), "big"), 4

    if token.startswith("event:"):
        return event_topic(token[6:]), 32

    return int(token, 0), None


def _tokens(source: str) -> list[str]:
    tokens = []
    for line in source.splitlines():
        tokens.extend(line.split(";", 1)[0].split())
    return tokens


def assemble(source: str) -> bytes:
    # first pass: item sizes and label offsets
    items: list[tuple] = []
    labels: dict[str, int] = {}
    offset = 0

    tokens = iter(_tokens(source))
    for token in tokens:
        if token.endswith(":") and not token.startswith(("sel:", "event:")):
            labels[token[:-1]] = offset
            items.append(("op", OP_JUMPDEST))
            offset += 1
            continue

        name = token.upper()

        if name.startswith("PUSH") and name != "PUSH0":
            arg = next(tokens)

            if arg.startswith("@"):
                items.append(("label", arg[1:]))
                offset += 3
                continue

            value, width = _operand(arg)
            if name != "PUSH":
                width = int(name[4:])
            elif width is None:
                width = max(1, (value.bit_length() + 7) // 8)

            if not 1 <= width <= 32 or value >= 1 << (8 * width):
                raise ValueError(f"operand does not fit: {token} {arg}")

            items.append(("push", width, value))
            offset += 1 + width
            continue

        if name not in OPCODES:
            raise ValueError(f"unknown mnemonic: {token}")

        items.append(("op", OPCODES[name]))
        offset += 1

    # second pass: emit
    code = bytearray()
    for item in items:
        match item:
            case ("op", opcode):
                code.append(opcode)
            case ("label", name):
                code.append(OP_PUSH2)
                code += labels[name].to_bytes(2, "big")
            case ("push", width, value):
                code.append(OP_PUSH1 + width - 1)
                code += value.to_bytes(width, "big")

    return bytes(code)
