import pytest

from symvm.bitvec import Word
from symvm.constants import DEFAULT_ADDRESS, DEFAULT_CALLER
from symvm.contract import Contract
from symvm.entry import (
    SENDER,
    VALUE,
    EntryPoint,
    canonical_signature,
    is_static_type,
    parse_signature,
)
from symvm.exceptions import MalformedBytecode
from symvm.memory import bytes_to_word
from symvm.utils import selector

STOP = b"\x00"


@pytest.mark.parametrize(
    "typ,expected",
    [
        ("uint256", True),
        ("uint", True),
        ("int8", True),
        ("address", True),
        ("bool", True),
        ("bytes32", True),
        ("bytes1", True),
        ("uint7", False),
        ("uint264", False),
        ("bytes0", False),
        ("bytes33", False),
        ("bytes", False),
        ("string", False),
        ("uint256[]", False),
        ("(uint256,bool)", False),
    ],
)
def test_is_static_type(typ, expected):
    assert is_static_type(typ) is expected


def test_parse_signature():
    assert parse_signature("process(uint256)") == ("process", ["uint256"])
    assert parse_signature("f()") == ("f", [])
    assert parse_signature(" g( address , bool ) ") == ("g", ["address", "bool"])

    with pytest.raises(ValueError):
        parse_signature("process")

    with pytest.raises(ValueError):
        parse_signature("f(string)")


def test_canonical_signature():
    assert canonical_signature("f(uint,int,address)") == "f(uint256,int256,address)"


def test_defaults():
    entry = EntryPoint(STOP, signature="process(uint256)")

    assert isinstance(entry.code, Contract)
    assert entry.selector == selector("process(uint256)")
    assert entry.args == (None,)
    assert entry.arg_names == ("p0",)
    assert entry.address == DEFAULT_ADDRESS
    assert entry.caller == DEFAULT_CALLER
    assert entry.callvalue == 0
    assert entry.symbolic_inputs == ("p0",)


def test_selector_mismatch():
    with pytest.raises(ValueError):
        EntryPoint(STOP, signature="process(uint256)", selector=b"\x00\x00\x00\x00")

    # the canonical form is what gets hashed
    entry = EntryPoint(
        STOP, signature="process(uint)", selector=selector("process(uint256)")
    )
    assert entry.args == (None,)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"signature": "f(uint256)", "args": (1, 2)},
        {"signature": "f(uint256,uint256)", "arg_names": ("a", "a")},
        {"signature": "f(uint256)", "arg_names": (SENDER,)},
        {"signature": "f(uint256)", "arg_names": ("a", "b")},
        {"selector": b"\x01\x02"},
        {"signature": "f()", "calldata": b""},
    ],
)
def test_invalid_entry_points(kwargs):
    with pytest.raises(ValueError):
        EntryPoint(STOP, **kwargs)


@pytest.mark.parametrize("code", [b"", b"\x60", "0x6", "0xzz", "0x73__lib__"])
def test_malformed_code(code):
    with pytest.raises(MalformedBytecode):
        EntryPoint(code)


def test_malformed_account_code():
    with pytest.raises(MalformedBytecode):
        EntryPoint(STOP, accounts={0xBEEF: "0x60"})


def test_calldata(arena):
    entry = EntryPoint(STOP, signature="f(uint256,address)", args=(42, None))
    assert entry.symbolic_inputs == ("p1",)

    data = entry.mk_calldata(arena)
    assert len(data) == 4 + 64
    assert bytes(data[:4]) == selector("f(uint256,address)")
    assert bytes_to_word(data[4:36], arena) == Word(42)
    assert bytes_to_word(data[36:68], arena) == Word(arena.var("p1"))


def test_raw_calldata(arena):
    entry = EntryPoint(STOP, calldata=b"\x12\x34")
    assert entry.args == ()
    assert entry.symbolic_inputs == ()
    assert entry.mk_calldata(arena) == [0x12, 0x34]


def test_symbolic_caller_and_value(arena):
    entry = EntryPoint(STOP, caller=None, callvalue=None)
    assert entry.symbolic_inputs == (SENDER, VALUE)

    ex = entry.mk_exec(arena)
    assert ex.frame.caller == Word(arena.var(SENDER))
    assert ex.frame.callvalue == Word(arena.var(VALUE))
    assert ex.inputs == (SENDER, VALUE)


def test_mk_exec(arena):
    entry = EntryPoint(
        STOP,
        storage={0: 7},
        accounts={0xBEEF: STOP},
        accounts_storage={0xBEEF: {1: 2}},
    )

    ex = entry.mk_exec(arena)
    assert ex.address == DEFAULT_ADDRESS
    assert ex.depth == 1
    assert ex.pc == 0
    assert set(ex.accounts) == {DEFAULT_ADDRESS, 0xBEEF}
    assert ex.storage[DEFAULT_ADDRESS].load(Word(0)) == Word(7)
    assert ex.storage[0xBEEF].load(Word(1)) == Word(2)
    assert len(ex.path) == 0


def test_mk_exec_is_fresh(arena):
    entry = EntryPoint(STOP, storage={0: 7})
    ex1 = entry.mk_exec(arena)
    ex2 = entry.mk_exec(arena)

    ex1.storage[DEFAULT_ADDRESS].store(Word(0), Word(8))
    assert ex2.storage[DEFAULT_ADDRESS].load(Word(0)) == Word(7)


def test_with_witness():
    entry = EntryPoint(
        STOP, signature="f(uint256,uint256)", args=(None, 5), caller=None
    )
    concrete = entry.with_witness({"p0": 42, SENDER: 0x1234})

    assert concrete.args == (42, 5)
    assert concrete.caller == 0x1234
    assert concrete.callvalue == 0
    assert concrete.symbolic_inputs == ()
    assert concrete.selector == entry.selector

    # unassigned inputs default to zero
    assert entry.with_witness({}).args == (0, 5)
