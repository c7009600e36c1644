import pytest

from symvm.bitvec import ONE, ZERO, Word
from symvm.exceptions import OutOfGasError
from symvm.expr import ExprArena, evaluate
from symvm.memory import Memory, bytes_to_word, data_to_expr, word_to_bytes
from symvm.storage import Storage


@pytest.fixture
def arena():
    return ExprArena()


@pytest.fixture
def mem():
    return Memory()


def test_unwritten_memory_reads_zero(mem, arena):
    assert mem.get_word(100, arena) == ZERO
    assert len(mem) == 160


def test_memory_expansion_is_word_aligned(mem):
    mem.touch(0, 1)
    assert len(mem) == 32

    mem.touch(31, 2)
    assert len(mem) == 64

    # zero-size accesses never expand
    mem.touch(1000, 0)
    assert len(mem) == 64


def test_memory_limit(mem):
    with pytest.raises(OutOfGasError):
        mem.touch(1 << 40, 32)


def test_word_round_trip(mem, arena):
    mem.set_word(4, Word(0x1122))
    assert mem.get_word(4, arena) == Word(0x1122)
    assert mem.get_byte(35) == 0x22
    assert mem.get_byte(34) == 0x11
    assert mem.get_byte(3) == 0


def test_symbolic_word_round_trip(mem, arena):
    x = Word(arena.var("x"))
    mem.set_word(0, x)

    # the 32 byte slices fuse back into the original term
    assert mem.get_word(0, arena) == x

    # a misaligned read mixes symbolic and concrete bytes
    w = mem.get_word(16, arena)
    assert w.is_symbolic
    assert evaluate(w.expr, {"x": (1 << 256) - 1}) == ((1 << 128) - 1) << 128


def test_set_byte_masks(mem):
    mem.set_byte(0, 0x1FF)
    assert mem.get_byte(0) == 0xFF


def test_memory_copy_on_write(mem, arena):
    mem.set_word(0, ONE)
    other = mem.copy()

    other.set_word(0, Word(2))
    assert mem.get_word(0, arena) == ONE
    assert other.get_word(0, arena) == Word(2)

    mem.set_word(32, Word(3))
    assert len(other) == 32
    assert len(mem) == 64


def test_bytes_to_word_pads_right(arena):
    assert bytes_to_word([0x12], arena) == Word(0x12 << 248)


def test_word_to_bytes(arena):
    assert word_to_bytes(Word(1)) == [0] * 31 + [1]

    x = arena.var("x")
    parts = word_to_bytes(Word(x))
    assert len(parts) == 32
    assert data_to_expr(parts, arena) is x


def test_storage_concrete(arena):
    s = Storage({1: 10, 2: 0})
    assert len(s) == 1
    assert s.load(ONE) == Word(10)
    assert s.load(Word(2)) == ZERO

    s.store(Word(2), Word(20))
    assert s.concrete_items() == {1: 10, 2: 20}


def test_storage_rewrite_moves_to_end():
    s = Storage()
    s.store(ONE, Word(1))
    s.store(Word(2), Word(2))
    s.store(ONE, Word(3))

    assert [int(k) for k, _ in s.items()] == [2, 1]
    assert s.load(ONE) == Word(3)


def test_storage_symbolic_key(arena):
    k = Word(arena.var("k"))
    s = Storage({1: 10})
    s.store(k, Word(42))

    # same key expression folds to the stored value
    assert s.load(k) == Word(42)

    # a concrete read may alias the symbolic write
    v = s.load(ONE)
    assert v.is_symbolic
    assert evaluate(v.expr, {"k": 1}) == 42
    assert evaluate(v.expr, {"k": 2}) == 10

    v = s.load(Word(5))
    assert evaluate(v.expr, {"k": 5}) == 42
    assert evaluate(v.expr, {"k": 6}) == 0


def test_storage_later_writes_win(arena):
    k = Word(arena.var("k"))
    s = Storage()
    s.store(ONE, Word(10))
    s.store(k, Word(42))

    v = s.load(ONE)
    assert evaluate(v.expr, {"k": 1}) == 42

    # the rewrite shadows the symbolic write entirely
    s.store(ONE, Word(11))
    assert s.load(ONE) == Word(11)


def test_storage_copy_on_write():
    s = Storage({1: 10})
    other = s.copy()

    other.store(ONE, Word(20))
    assert s.load(ONE) == Word(10)
    assert other.load(ONE) == Word(20)

    s.store(Word(2), Word(30))
    assert other.load(Word(2)) == ZERO
