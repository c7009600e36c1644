# SPDX-License-Identifier: AGPL-3.0

from typing import Any

from symvm.exceptions import NotConcreteError
from symvm.expr import BOOL, WORD, Expr, ExprArena, Op, mask, to_signed

MASK = mask(WORD)


def is_power_of_two(x: int) -> bool:
    return x > 0 and not (x & (x - 1))


def _arena_of(*values: "Word | SymBool") -> ExprArena:
    for v in values:
        if v.is_symbolic:
            return v.expr.arena
    raise ValueError("no symbolic operand")


class SymBool:
    """
    Immutable wrapper for concrete or symbolic boolean values.

    Can be constructed with:
    - SymBool(42 % 2 == 0) # bool
    - SymBool(arena.ult(x, y)) # boolean Expr
    - SymBool(word) # Word, same as word.is_non_zero()

    Conversion to and from Word:
    - Word(sym_bool) (same as sym_bool.as_bv())
    - SymBool(word) (same as word.is_non_zero())

    Comparison results are kept as booleans so that `AND`/`OR` of two
    comparisons stays a single boolean guard; they only become the word
    ite(c, 1, 0) when used arithmetically.
    """

    __slots__ = ("con_val", "sym_val")
    con_val: bool | None
    sym_val: Expr | None

    def __new__(cls, value):
        type_value = type(value)

        if type_value is bool:
            return TRUE if value else FALSE

        if type_value is SymBool:
            return value

        if type_value is Word:
            return value.is_non_zero()

        if type_value is Expr:
            if value.op is Op.TRUE:
                return TRUE
            if value.op is Op.FALSE:
                return FALSE

        return super().__new__(cls)

    def __init__(self, value: "bool | Expr | SymBool | Word"):
        match value:
            case bool():
                self.con_val = value
                self.sym_val = None

            case Expr():
                if self is TRUE or self is FALSE:
                    return
                if value.size != BOOL:
                    raise TypeError("SymBool needs a boolean expression")
                self.sym_val = value
                self.con_val = None

            case SymBool() | Word():
                return

            case _:
                raise TypeError(f"Cannot create SymBool from {type(value)}")

    def __bool__(self) -> bool:
        if self.is_symbolic:
            raise NotConcreteError("Cannot convert symbolic bool to bool")
        return self.con_val

    def __repr__(self) -> str:
        return str(self.con_val) if self.is_concrete else f"SYM {self.sym_val}"

    def __str__(self) -> str:
        return str(self.con_val) if self.is_concrete else f"SYM {self.sym_val}"

    def __int__(self) -> int:
        return int(bool(self))

    def __deepcopy__(self, memo):
        return self

    @property
    def is_symbolic(self) -> bool:
        return self.sym_val is not None

    @property
    def is_concrete(self) -> bool:
        return self.sym_val is None

    @property
    def is_true(self) -> bool:
        """checks if it is the literal True"""

        return self is TRUE

    @property
    def is_false(self) -> bool:
        """checks if it is the literal False"""

        return self is FALSE

    @property
    def expr(self) -> Expr:
        if self.sym_val is None:
            raise NotConcreteError("concrete bool has no expression")
        return self.sym_val

    def as_expr(self, arena: ExprArena) -> Expr:
        return arena.bool_val(self.con_val) if self.is_concrete else self.sym_val

    def __eq__(self, other: Any) -> bool:
        """
        tests for structural equality

        note: this is not the same as eq(), which returns a constraint
        """

        if not isinstance(other, SymBool):
            return False

        if self.is_concrete or other.is_concrete:
            return self is other

        return self.sym_val is other.sym_val

    def __hash__(self) -> int:
        return hash((self.con_val, self.sym_val))

    def is_zero(self) -> "SymBool":
        if self is TRUE:
            return FALSE

        if self is FALSE:
            return TRUE

        return SymBool(self.sym_val.arena.lnot(self.sym_val))

    def is_non_zero(self) -> "SymBool":
        return self

    def eq(self, other: "SymBool") -> "SymBool":
        if self.is_concrete and other.is_concrete:
            return SymBool(self.con_val == other.con_val)

        arena = _arena_of(self, other)
        return SymBool(arena.eq(self.as_expr(arena), other.as_expr(arena)))

    def bitwise_not(self) -> "SymBool":
        return self.is_zero()

    def bitwise_and(self, other: "SymBool") -> "SymBool":
        if self is TRUE:
            return other

        if self is FALSE:
            return self

        if other is TRUE:
            return self

        if other is FALSE:
            return other

        return SymBool(self.sym_val.arena.land(self.sym_val, other.sym_val))

    def bitwise_or(self, other: "SymBool") -> "SymBool":
        if self is TRUE:
            return self

        if other is TRUE:
            return other

        if self is FALSE:
            return other

        if other is FALSE:
            return self

        return SymBool(self.sym_val.arena.lor(self.sym_val, other.sym_val))

    def bitwise_xor(self, other: "SymBool") -> "SymBool":
        if self is TRUE:
            return other.bitwise_not()

        if other is TRUE:
            return self.bitwise_not()

        if self is FALSE:
            return other

        if other is FALSE:
            return self

        return self.eq(other).is_zero()

    def as_bv(self) -> "Word":
        if self is TRUE:
            return ONE

        if self is FALSE:
            return ZERO

        return Word(self.sym_val.arena.bit(self.sym_val))


class Word:
    """
    Immutable 256-bit EVM word, either a concrete int (always reduced modulo
    2**256) or a symbolic bit-vector expression.

    Can be constructed with:
    - Word(42) # int, wraps around
    - Word(-1) # int, 2's complement
    - Word(bytes.fromhex("12345678")) # bytes, big endian
    - Word(arena.var("x")) # 256-bit Expr
    - Word(sym_bool) # SymBool, ite(c, 1, 0)

    A constant expression is stored as its int value, so is_concrete is
    reliable after simplification.
    """

    __slots__ = ("_value",)

    def __new__(cls, value):
        if type(value) is Word:
            return value

        if type(value) is SymBool:
            return value.as_bv()

        return super().__new__(cls)

    def __init__(self, value: "int | bytes | Expr | Word | SymBool"):
        match value:
            case Word() | SymBool():
                return

            case bool():
                raise TypeError("use SymBool for booleans")

            case int():
                self._value = value & MASK

            case bytes():
                if len(value) > 32:
                    raise ValueError(f"{len(value)} bytes do not fit in a word")
                self._value = int.from_bytes(value, "big")

            case Expr():
                if value.size != WORD:
                    raise ValueError(f"expected a 256-bit expression: {value.size}")
                self._value = value.value if value.is_const else value

            case _:
                raise TypeError(f"Cannot create Word from {type(value)}")

    def __deepcopy__(self, memo):
        # yay immutability
        return self

    @property
    def is_symbolic(self) -> bool:
        return type(self._value) is not int

    @property
    def is_concrete(self) -> bool:
        return type(self._value) is int

    @property
    def value(self) -> int | Expr:
        return self._value

    @property
    def expr(self) -> Expr:
        if type(self._value) is int:
            raise NotConcreteError("concrete word has no expression")
        return self._value

    def as_expr(self, arena: ExprArena) -> Expr:
        v = self._value
        return arena.const(v) if type(v) is int else v

    def __eq__(self, other: Any) -> bool:
        """
        tests for structural equality

        note: this is not the same as eq(), which returns a constraint
        """
        if not isinstance(other, Word):
            return False

        return self._value is other._value or (
            self.is_concrete and other.is_concrete and self._value == other._value
        )

    def __hash__(self) -> int:
        return hash(self._value)

    def __int__(self) -> int:
        if type(self._value) is not int:
            raise NotConcreteError(f"Cannot convert symbolic word to int: {self}")
        return self._value

    def __repr__(self) -> str:
        return str(self._value)

    def __str__(self) -> str:
        v = self._value
        return hex(v) if type(v) is int else str(v)

    def to_bytes(self) -> bytes:
        return int(self).to_bytes(32, "big")

    def signed(self) -> int:
        return to_signed(int(self), WORD)

    def is_zero(self) -> SymBool:
        if self.is_concrete:
            return TRUE if self._value == 0 else FALSE

        arena = self._value.arena
        return SymBool(arena.eq(self._value, arena.const(0)))

    def is_non_zero(self) -> SymBool:
        return self.is_zero().is_zero()

    #
    # helpers
    #

    def _lift(self, other: "Word", build) -> "Word":
        arena = _arena_of(self, other)
        return Word(build(arena, self.as_expr(arena), other.as_expr(arena)))

    def _cmp(self, other: "Word", build) -> SymBool:
        arena = _arena_of(self, other)
        return SymBool(build(arena, self.as_expr(arena), other.as_expr(arena)))

    def _guard_zero(self, divisor: "Word", build) -> "Word":
        """build(self, divisor), or zero when divisor is zero (EVM semantics)"""
        arena = _arena_of(self, divisor)
        d = divisor.as_expr(arena)
        result = build(arena, self.as_expr(arena), d)
        if divisor.is_concrete:
            return Word(result)
        return Word(arena.ite(arena.eq(d, arena.const(0)), arena.const(0), result))

    #
    # operations
    #

    def add(self, other: "Word") -> "Word":
        if self.is_concrete and other.is_concrete:
            return Word(self._value + other._value)

        return self._lift(other, ExprArena.add)

    def sub(self, other: "Word") -> "Word":
        if self.is_concrete and other.is_concrete:
            return Word(self._value - other._value)

        return self._lift(other, ExprArena.sub)

    def mul(self, other: "Word") -> "Word":
        lhs, rhs = self, other
        if lhs.is_concrete and rhs.is_concrete:
            return Word(lhs._value * rhs._value)

        if rhs.is_concrete and lhs.is_symbolic:
            lhs, rhs = rhs, lhs

        if lhs.is_concrete and is_power_of_two(lhs._value):
            return rhs.lshl(Word(lhs._value.bit_length() - 1))

        return lhs._lift(rhs, ExprArena.mul)

    def div(self, other: "Word") -> "Word":
        if other.is_concrete:
            rhs = other._value

            # div by zero is zero
            if rhs == 0:
                return ZERO

            # div by one is identity
            if rhs == 1:
                return self

            # fully concrete case
            if self.is_concrete:
                return Word(self._value // rhs)

            if is_power_of_two(rhs):
                return self.lshr(Word(rhs.bit_length() - 1))

        return self._guard_zero(other, ExprArena.udiv)

    def sdiv(self, other: "Word") -> "Word":
        if other.is_concrete:
            rhs = other._value

            if rhs == 0:
                return ZERO

            if rhs == 1:
                return self

            if self.is_concrete:
                sl, sr = to_signed(self._value, WORD), to_signed(rhs, WORD)
                q = abs(sl) // abs(sr)
                return Word(-q if (sl < 0) != (sr < 0) else q)

        return self._guard_zero(other, ExprArena.sdiv)

    def mod(self, other: "Word") -> "Word":
        if other.is_concrete:
            rhs = other._value

            # mod by zero is zero
            if rhs == 0:
                return ZERO

            # mod by one is zero
            if rhs == 1:
                return ZERO

            # fully concrete case
            if self.is_concrete:
                return Word(self._value % rhs)

            # mod by a power of two only keeps the low bits
            if is_power_of_two(rhs):
                return self.bitwise_and(Word(rhs - 1))

        return self._guard_zero(other, ExprArena.urem)

    def smod(self, other: "Word") -> "Word":
        if other.is_concrete:
            rhs = other._value

            if rhs == 0 or rhs == 1:
                return ZERO

            if self.is_concrete:
                sl, sr = to_signed(self._value, WORD), to_signed(rhs, WORD)
                r = abs(sl) % abs(sr)
                return Word(-r if sl < 0 else r)

        return self._guard_zero(other, ExprArena.srem)

    def exp(self, other: "Word") -> "Word":
        if other.is_concrete:
            rhs = other._value

            if rhs == 0:
                return ONE

            if rhs == 1:
                return self

            if self.is_concrete:
                return Word(pow(self._value, rhs, 1 << WORD))

            if rhs <= 2:
                return self.mul(self)

        if self.is_concrete:
            lhs = self._value
            if lhs == 0:
                return other.is_zero().as_bv()

            if lhs == 1:
                return ONE

            # (2**k)**x == 1 << (k*x), zero once k*x reaches the word size
            if is_power_of_two(lhs):
                k = lhs.bit_length() - 1
                arena = other.expr.arena
                shifted = ONE.lshl(other.mul(Word(k)))
                in_range = arena.ult(other.expr, arena.const(-(-WORD // k)))
                return Word(
                    arena.ite(in_range, shifted.as_expr(arena), arena.const(0))
                )

        return self._lift(other, ExprArena.exp)

    def addmod(self, other: "Word", modulus: "Word") -> "Word":
        if self.is_concrete and other.is_concrete and modulus.is_concrete:
            if modulus._value == 0:
                return ZERO
            return Word((self._value + other._value) % modulus._value)

        # to avoid add overflow; and to be a multiple of 8-bit
        return self._widened(other, modulus, WORD + 8, ExprArena.add)

    def mulmod(self, other: "Word", modulus: "Word") -> "Word":
        if self.is_concrete and other.is_concrete and modulus.is_concrete:
            if modulus._value == 0:
                return ZERO
            return Word((self._value * other._value) % modulus._value)

        # to avoid mul overflow
        return self._widened(other, modulus, WORD * 2, ExprArena.mul)

    def _widened(self, other: "Word", modulus: "Word", newsize: int, build) -> "Word":
        arena = _arena_of(self, other, modulus)
        extra = newsize - WORD

        def ext(w: Word) -> Expr:
            return arena.zero_ext(w.as_expr(arena), extra)

        n = modulus.as_expr(arena)
        r1 = build(arena, ext(self), ext(other))
        r2 = arena.extract(WORD - 1, 0, arena.urem(r1, ext(modulus)))
        return Word(arena.ite(arena.eq(n, arena.const(0)), arena.const(0), r2))

    def signextend(self, size: "Word") -> "Word":
        """sign-extends the low (size + 1) bytes"""

        if size.is_concrete:
            if size._value >= 31:
                return self

            bl = (size._value + 1) * 8
            if self.is_concrete:
                low = self._value & mask(bl)
                return Word(to_signed(low, bl))

            shift = Word(WORD - bl)
            return self.lshl(shift).ashr(shift)

        # shift = 248 - 8 * size, only meaningful when size < 31
        arena = _arena_of(size, self)
        shift = Word(248).sub(size.mul(Word(8)))
        extended = self.lshl(shift).ashr(shift)
        in_range = arena.ult(size.as_expr(arena), arena.const(31))
        return Word(arena.ite(in_range, extended.as_expr(arena), self.as_expr(arena)))

    def lshl(self, shift: "Word") -> "Word":
        """
        Logical left shift
        """

        if shift.is_concrete:
            if shift._value == 0:
                return self

            if shift._value >= WORD:
                return ZERO

            if self.is_concrete:
                return Word(self._value << shift._value)

        return self._lift(shift, ExprArena.shl)

    def lshr(self, shift: "Word") -> "Word":
        """
        Logical right shift
        """

        if shift.is_concrete:
            if shift._value == 0:
                return self

            if shift._value >= WORD:
                return ZERO

            if self.is_concrete:
                return Word(self._value >> shift._value)

        return self._lift(shift, ExprArena.lshr)

    def ashr(self, shift: "Word") -> "Word":
        """
        Arithmetic right shift
        """

        # check for no-op
        if shift.is_concrete:
            if shift._value == 0:
                return self

            if self.is_concrete:
                return Word(to_signed(self._value, WORD) >> min(shift._value, 255))

        return self._lift(shift, ExprArena.ashr)

    def bitwise_not(self) -> "Word":
        if self.is_concrete:
            return Word(~self._value)

        return Word(self._value.arena.bvnot(self._value))

    def bitwise_and(self, other: "Word") -> "Word":
        if self.is_concrete and other.is_concrete:
            return Word(self._value & other._value)

        return self._lift(other, ExprArena.bvand)

    def bitwise_or(self, other: "Word") -> "Word":
        if self.is_concrete and other.is_concrete:
            return Word(self._value | other._value)

        return self._lift(other, ExprArena.bvor)

    def bitwise_xor(self, other: "Word") -> "Word":
        if self.is_concrete and other.is_concrete:
            return Word(self._value ^ other._value)

        return self._lift(other, ExprArena.bvxor)

    def byte(self, idx: "Word") -> "Word":
        """
        The idx-th byte counting from the most significant one, zero if
        idx >= 32.
        """

        if idx.is_concrete:
            i = idx._value
            if i >= 32:
                return ZERO

            if self.is_concrete:
                return Word((self._value >> (8 * (31 - i))) & 0xFF)

            arena = self._value.arena
            lo = 8 * (31 - i)
            return Word(arena.zero_ext(arena.extract(lo + 7, lo, self._value), 248))

        arena = _arena_of(idx, self)
        shifted = self.lshr(Word(248).sub(idx.mul(Word(8))))
        value = shifted.bitwise_and(Word(0xFF))
        in_range = arena.ult(idx.as_expr(arena), arena.const(32))
        return Word(arena.ite(in_range, value.as_expr(arena), arena.const(0)))

    def ult(self, other: "Word") -> SymBool:
        if self.is_concrete and other.is_concrete:
            return SymBool(self._value < other._value)

        return self._cmp(other, ExprArena.ult)

    def ugt(self, other: "Word") -> SymBool:
        return other.ult(self)

    def ule(self, other: "Word") -> SymBool:
        if self.is_concrete and other.is_concrete:
            return SymBool(self._value <= other._value)

        return self._cmp(other, ExprArena.ule)

    def slt(self, other: "Word") -> SymBool:
        if self.is_concrete and other.is_concrete:
            return SymBool(self.signed() < other.signed())

        return self._cmp(other, ExprArena.slt)

    def sgt(self, other: "Word") -> SymBool:
        return other.slt(self)

    def eq(self, other: "Word") -> SymBool:
        if self.is_concrete and other.is_concrete:
            return SymBool(self._value == other._value)

        return self._cmp(other, ExprArena.eq)


def ite(cond: SymBool, then: Word, else_: Word) -> Word:
    """if-then-else over words, folding concrete conditions"""

    if cond is TRUE:
        return then

    if cond is FALSE:
        return else_

    if then == else_:
        return then

    arena = cond.expr.arena
    return Word(arena.ite(cond.expr, then.as_expr(arena), else_.as_expr(arena)))


# initialize global constants
TRUE = object.__new__(SymBool)
TRUE.con_val = True
TRUE.sym_val = None

FALSE = object.__new__(SymBool)
FALSE.con_val = False
FALSE.sym_val = None

ZERO = Word(0)
ONE = Word(1)
