import pytest

from symvm.bitvec import Word
from symvm.contract import (
    OP_ADD,
    OP_JUMPDEST,
    OP_PUSH0,
    OP_PUSH2,
    OP_STOP,
    Contract,
    InsnKind,
    insn_kind,
    mnemonic,
    str_opcode,
)
from symvm.exceptions import MalformedBytecode


def test_decode():
    # PUSH1 0x2a PUSH0 ADD STOP
    c = Contract.from_hexcode("0x602a5f0100")

    insns = c.instructions()
    assert [str(i) for i in insns] == ["PUSH1 0x2a", "PUSH0", "ADD", "STOP"]
    assert [i.pc for i in insns] == [0, 2, 3, 4]

    assert insns[0].operand == Word(0x2A)
    assert insns[1].operand == Word(0)
    assert insns[2].operand is None
    assert c.next_pc(0) == 2


def test_jumpdest_inside_push_data_is_not_valid():
    # PUSH2 0x5b5b JUMPDEST
    c = Contract(bytes([OP_PUSH2, OP_JUMPDEST, OP_JUMPDEST, OP_JUMPDEST]))
    assert c.valid_jumpdests() == frozenset({3})

    with pytest.raises(ValueError):
        c.decode_instruction(1)


def test_past_the_end_is_stop():
    c = Contract(bytes([OP_ADD]))
    assert c.decode_instruction(1).opcode == OP_STOP
    assert c.decode_instruction(1000).opcode == OP_STOP


def test_code_slice_is_zero_padded():
    c = Contract.from_hexcode("6001")
    assert c.slice(1, 4) == [1, 0, 0, 0]
    assert c.slice(10, 2) == [0, 0]


@pytest.mark.parametrize(
    "code",
    [
        b"",
        b"\x60",
        b"\x7f" + b"\x00" * 31,
    ],
)
def test_malformed_bytes(code):
    with pytest.raises(MalformedBytecode):
        Contract(code)


@pytest.mark.parametrize(
    "hexcode",
    [
        "",
        "0x",
        "0x6",
        "0xzz",
        "0x73__$lib$__00",
    ],
)
def test_malformed_hexcode(hexcode):
    with pytest.raises(MalformedBytecode):
        Contract.from_hexcode(hexcode)


def test_not_bytes():
    with pytest.raises(TypeError):
        Contract([1, 2, 3])


def test_of():
    c = Contract.of("0x00")
    assert Contract.of(c) is c
    assert bytes(Contract.of(b"\x00")) == bytes(c)


@pytest.mark.parametrize(
    "opcode,kind",
    [
        (0x01, InsnKind.ARITH),
        (0x15, InsnKind.COMPARE),
        (0x1B, InsnKind.BITWISE),
        (0x20, InsnKind.SHA3),
        (0x35, InsnKind.ENV),
        (0x5A, InsnKind.ENV),
        (0x60, InsnKind.STACK),
        (0x9F, InsnKind.STACK),
        (0x52, InsnKind.MEMORY),
        (0x54, InsnKind.STORAGE),
        (0x56, InsnKind.JUMP),
        (0x57, InsnKind.JUMPI),
        (0xA2, InsnKind.LOG),
        (0xF1, InsnKind.CALL),
        (0xFD, InsnKind.HALT),
        (0xF0, InsnKind.UNSUPPORTED),
        (0xF2, InsnKind.UNSUPPORTED),
        (0xFF, InsnKind.UNSUPPORTED),
        (0x5C, InsnKind.UNSUPPORTED),
        (0x0C, InsnKind.UNSUPPORTED),
    ],
)
def test_insn_kind(opcode, kind):
    assert insn_kind(opcode) is kind


def test_mnemonics():
    assert str_opcode[OP_PUSH0] == "PUSH0"
    assert mnemonic(0x0C) == "0xc"
