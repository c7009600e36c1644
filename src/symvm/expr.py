# SPDX-License-Identifier: AGPL-3.0

"""
Interned, immutable expression DAG for path conditions and symbolic words.

Nodes are created exclusively through the smart constructors of an ExprArena,
which fold constants and apply cheap local rewrites before interning. Two
structurally identical expressions built in the same arena are the same
object, so identity comparison is structural equality.

Bit-vector nodes have a positive `size` (in bits), boolean nodes have size 0.
The semantics of every operator is the SMT-LIB one (e.g. `bvudiv` by zero is
all ones); the EVM-specific corner cases are handled by the word layer in
symvm.bitvec before nodes are built.
"""

import re
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from eth_hash.auto import keccak

BOOL = 0
WORD = 256


class Op(Enum):
    # leaves
    CONST = "const"
    VAR = "var"
    TRUE = "true"
    FALSE = "false"

    # bit-vector terms
    ADD = "bvadd"
    SUB = "bvsub"
    MUL = "bvmul"
    UDIV = "bvudiv"
    UREM = "bvurem"
    SDIV = "bvsdiv"
    SREM = "bvsrem"
    AND = "bvand"
    OR = "bvor"
    XOR = "bvxor"
    NOT = "bvnot"
    SHL = "bvshl"
    LSHR = "bvlshr"
    ASHR = "bvashr"
    EXTRACT = "extract"
    CONCAT = "concat"
    ITE = "ite"

    # uninterpreted functions
    EXP = "evm_exp"
    SHA3 = "sha3"

    # boolean terms
    EQ = "="
    ULT = "bvult"
    ULE = "bvule"
    SLT = "bvslt"
    SLE = "bvsle"
    LNOT = "not"
    LAND = "and"
    LOR = "or"


_SIMPLE_SYMBOL = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*\Z")


def mask(size: int) -> int:
    return (1 << size) - 1


def to_signed(x: int, size: int) -> int:
    """
    Interpret x (masked to size bits) as a signed integer in two's complement.
    """
    sign_bit = 1 << (size - 1)
    return x - (1 << size) if (x & sign_bit) else x


def smt_symbol(name: str) -> str:
    return name if _SIMPLE_SYMBOL.match(name) else f"|{name}|"


@dataclass(frozen=True, slots=True, eq=False, repr=False)
class Expr:
    """
    A node of the expression DAG. Never instantiate directly, use ExprArena.

    params holds the leaf payload (the constant value, the symbol name) or the
    bounds of an extract.
    """

    op: Op
    args: tuple["Expr", ...]
    size: int
    params: tuple
    arena: "ExprArena" = field(compare=False)
    uid: int

    @property
    def is_bool(self) -> bool:
        return self.size == BOOL

    @property
    def is_const(self) -> bool:
        return self.op is Op.CONST

    @property
    def value(self) -> int:
        if self.op is not Op.CONST:
            raise ValueError(f"not a constant: {self}")
        return self.params[0]

    @property
    def name(self) -> str:
        if self.op is not Op.VAR:
            raise ValueError(f"not a symbol: {self}")
        return self.params[0]

    def is_bit_ite(self) -> bool:
        """true for ite(c, 1, 0), the word encoding of a boolean"""
        if self.op is not Op.ITE:
            return False
        _, then, else_ = self.args
        return then.is_const and then.value == 1 and else_.is_const and else_.value == 0

    def __str__(self) -> str:
        return to_sexpr(self)

    def __repr__(self) -> str:
        return f"Expr({to_sexpr(self)})"


def postorder(roots: Iterable[Expr]) -> list[Expr]:
    """
    Returns every node reachable from roots exactly once, children first.
    """
    seen: set[int] = set()
    order: list[Expr] = []

    for root in roots:
        if root.uid in seen:
            continue
        stack: list[tuple[Expr, bool]] = [(root, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                order.append(node)
                continue
            if node.uid in seen:
                continue
            seen.add(node.uid)
            stack.append((node, True))
            for arg in reversed(node.args):
                if arg.uid not in seen:
                    stack.append((arg, False))

    return order


def free_vars(exprs: Iterable[Expr]) -> dict[str, Expr]:
    """symbols occurring in exprs, in order of first occurrence"""
    return {node.name: node for node in postorder(exprs) if node.op is Op.VAR}


def uninterpreted_functions(exprs: Iterable[Expr]) -> dict[str, tuple[int, ...]]:
    """name -> (input sizes..., output size) of the uninterpreted functions used"""
    result: dict[str, tuple[int, ...]] = {}
    for node in postorder(exprs):
        if node.op is Op.SHA3:
            result[f"sha3_{node.args[0].size}"] = (node.args[0].size, WORD)
        elif node.op is Op.EXP:
            result["evm_exp"] = (WORD, WORD, WORD)
    return result


def sort_of(size: int) -> str:
    return "Bool" if size == BOOL else f"(_ BitVec {size})"


def _render(node: Expr, args: Sequence[str]) -> str:
    match node.op:
        case Op.CONST:
            return f"(_ bv{node.value} {node.size})"
        case Op.VAR:
            return smt_symbol(node.name)
        case Op.TRUE:
            return "true"
        case Op.FALSE:
            return "false"
        case Op.EXTRACT:
            hi, lo = node.params
            return f"((_ extract {hi} {lo}) {args[0]})"
        case Op.SHA3:
            return f"(sha3_{node.args[0].size} {args[0]})"
        case _:
            return f"({node.op.value} {' '.join(args)})"


def to_sexpr(expr: Expr) -> str:
    """Renders expr as a single inline SMT-LIB term."""
    rendered: dict[int, str] = {}
    for node in postorder([expr]):
        rendered[node.uid] = _render(node, [rendered[a.uid] for a in node.args])
    return rendered[expr.uid]


def to_smtlib(constraints: Sequence[Expr], logic: str = "QF_UFBV") -> str:
    """
    Exports the conjunction of constraints as an SMT-LIB 2 script (without
    check-sat). Shared subterms are emitted once as define-fun.
    """
    lines = [f"(set-logic {logic})"]

    for name, node in free_vars(constraints).items():
        lines.append(f"(declare-fun {smt_symbol(name)} () {sort_of(node.size)})")

    for name, sizes in uninterpreted_functions(constraints).items():
        inputs = " ".join(sort_of(s) for s in sizes[:-1])
        lines.append(f"(declare-fun {name} ({inputs}) {sort_of(sizes[-1])})")

    ref: dict[int, str] = {}
    for node in postorder(constraints):
        term = _render(node, [ref[a.uid] for a in node.args])
        if not node.args:
            ref[node.uid] = term
            continue
        name = f"t!{node.uid}"
        lines.append(f"(define-fun {name} () {sort_of(node.size)} {term})")
        ref[node.uid] = name

    for c in constraints:
        lines.append(f"(assert {ref[c.uid]})")

    return "\n".join(lines) + "\n"


#
# concrete semantics
#


def _sdiv(a: int, b: int, size: int) -> int:
    sa, sb = to_signed(a, size), to_signed(b, size)
    if sb == 0:
        return 1 if sa < 0 else mask(size)
    q = abs(sa) // abs(sb)
    return (-q if (sa < 0) != (sb < 0) else q) & mask(size)


def _srem(a: int, b: int, size: int) -> int:
    sa, sb = to_signed(a, size), to_signed(b, size)
    if sb == 0:
        return a
    r = abs(sa) % abs(sb)
    return (-r if sa < 0 else r) & mask(size)


def apply_op(node: Expr, vals: Sequence[Any]) -> Any:
    """
    Computes the value of node given the values of its children.
    Bit-vectors evaluate to non-negative ints, booleans to bool.
    """
    size = node.size
    m = mask(size) if size else 0

    match node.op:
        case Op.CONST:
            return node.value
        case Op.TRUE:
            return True
        case Op.FALSE:
            return False
        case Op.ADD:
            return (vals[0] + vals[1]) & m
        case Op.SUB:
            return (vals[0] - vals[1]) & m
        case Op.MUL:
            return (vals[0] * vals[1]) & m
        case Op.UDIV:
            return m if vals[1] == 0 else vals[0] // vals[1]
        case Op.UREM:
            return vals[0] if vals[1] == 0 else vals[0] % vals[1]
        case Op.SDIV:
            return _sdiv(vals[0], vals[1], size)
        case Op.SREM:
            return _srem(vals[0], vals[1], size)
        case Op.EXP:
            return pow(vals[0], vals[1], 1 << size)
        case Op.AND:
            return vals[0] & vals[1]
        case Op.OR:
            return vals[0] | vals[1]
        case Op.XOR:
            return vals[0] ^ vals[1]
        case Op.NOT:
            return ~vals[0] & m
        case Op.SHL:
            return (vals[0] << vals[1]) & m if vals[1] < size else 0
        case Op.LSHR:
            return vals[0] >> vals[1] if vals[1] < size else 0
        case Op.ASHR:
            return (to_signed(vals[0], size) >> min(vals[1], size - 1)) & m
        case Op.EXTRACT:
            hi, lo = node.params
            return (vals[0] >> lo) & mask(hi - lo + 1)
        case Op.CONCAT:
            acc = 0
            for arg, v in zip(node.args, vals, strict=True):
                acc = (acc << arg.size) | v
            return acc
        case Op.ITE:
            return vals[1] if vals[0] else vals[2]
        case Op.SHA3:
            data = vals[0].to_bytes(node.args[0].size // 8, "big")
            return int.from_bytes(keccak(data), "big")
        case Op.EQ:
            return vals[0] == vals[1]
        case Op.ULT:
            return vals[0] < vals[1]
        case Op.ULE:
            return vals[0] <= vals[1]
        case Op.SLT:
            s = node.args[0].size
            return to_signed(vals[0], s) < to_signed(vals[1], s)
        case Op.SLE:
            s = node.args[0].size
            return to_signed(vals[0], s) <= to_signed(vals[1], s)
        case Op.LNOT:
            return not vals[0]
        case Op.LAND:
            return all(vals)
        case Op.LOR:
            return any(vals)
        case _:
            raise ValueError(f"cannot apply {node.op}")


def evaluate(expr: Expr, assignment: Mapping[str, int | bool]) -> int | bool:
    """
    Evaluates expr under assignment. Unassigned symbols default to zero/false.
    """
    vals: dict[int, Any] = {}
    for node in postorder([expr]):
        if node.op is Op.VAR:
            v = assignment.get(node.name, 0)
            vals[node.uid] = bool(v) if node.is_bool else int(v) & mask(node.size)
        else:
            vals[node.uid] = apply_op(node, [vals[a.uid] for a in node.args])
    return vals[expr.uid]


#
# arena
#


class ExprArena:
    """
    Owner of the intern table. Every Expr knows the arena it was built in and
    expressions from different arenas must not be combined.

    The intern table is guarded by a lock, so an arena can be shared by
    explorations running in different threads.
    """

    def __init__(self):
        self._table: dict[tuple, Expr] = {}
        self._lock = threading.Lock()
        self.true = self._intern(Op.TRUE, (), BOOL)
        self.false = self._intern(Op.FALSE, (), BOOL)

    def __len__(self) -> int:
        return len(self._table)

    def _intern(self, op: Op, args: tuple[Expr, ...], size: int, params=()) -> Expr:
        for arg in args:
            if arg.arena is not self:
                raise ValueError(f"expression from a different arena: {arg}")

        key = (op, tuple(a.uid for a in args), size, params)
        with self._lock:
            node = self._table.get(key)
            if node is None:
                node = Expr(op, args, size, params, self, len(self._table))
                self._table[key] = node
        return node

    #
    # leaves
    #

    def const(self, value: int, size: int = WORD) -> Expr:
        assert size > 0
        return self._intern(Op.CONST, (), size, (value & mask(size),))

    def var(self, name: str, size: int = WORD) -> Expr:
        if not name or any(c in name for c in "|\\!"):
            raise ValueError(f"invalid symbol name: {name!r}")
        return self._intern(Op.VAR, (), size, (name,))

    def bool_val(self, value: bool) -> Expr:
        return self.true if value else self.false

    def _fold(self, op: Op, args: tuple[Expr, ...], size: int, params=()) -> Expr:
        """interns the node, replacing it by a constant if all args are constants"""
        if all(a.is_const or a.op in (Op.TRUE, Op.FALSE) for a in args):
            node = Expr(op, args, size, params, self, -1)
            value = apply_op(node, [apply_op(a, ()) for a in args])
            return self.bool_val(value) if size == BOOL else self.const(value, size)
        return self._intern(op, args, size, params)

    @staticmethod
    def _same_size(a: Expr, b: Expr) -> int:
        if a.size != b.size or a.size == BOOL:
            raise ValueError(f"size mismatch: {a.size} vs {b.size}")
        return a.size

    #
    # arithmetic
    #

    def add(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if b.is_const and not a.is_const:
            a, b = b, a
        if a.is_const:
            if a.value == 0:
                return b
            # (c1 + (c2 + x)) => ((c1 + c2) + x)
            if b.op is Op.ADD and b.args[0].is_const:
                return self.add(self.const(a.value + b.args[0].value, size), b.args[1])
        return self._fold(Op.ADD, (a, b), size)

    def sub(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if a is b:
            return self.const(0, size)
        if b.is_const and b.value == 0:
            return a
        if b.is_const and not a.is_const:
            return self.add(self.const(-b.value, size), a)
        return self._fold(Op.SUB, (a, b), size)

    def mul(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if b.is_const and not a.is_const:
            a, b = b, a
        if a.is_const and not b.is_const:
            if a.value == 0:
                return a
            if a.value == 1:
                return b
        return self._fold(Op.MUL, (a, b), size)

    def udiv(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if b.is_const and b.value == 1:
            return a
        return self._fold(Op.UDIV, (a, b), size)

    def urem(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if b.is_const and b.value == 1:
            return self.const(0, size)
        return self._fold(Op.UREM, (a, b), size)

    def sdiv(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if b.is_const and b.value == 1:
            return a
        return self._fold(Op.SDIV, (a, b), size)

    def srem(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if b.is_const and b.value == 1:
            return self.const(0, size)
        return self._fold(Op.SREM, (a, b), size)

    def exp(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        return self._fold(Op.EXP, (a, b), size)

    #
    # bitwise
    #

    def bvand(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if a is b:
            return a
        if b.is_const and not a.is_const:
            a, b = b, a
        if a.is_const and not b.is_const:
            if a.value == 0:
                return a
            if a.value == mask(size):
                return b
        if a.is_bit_ite() and b.is_bit_ite():
            return self.bit(self.land(a.args[0], b.args[0]), size)
        return self._fold(Op.AND, (a, b), size)

    def bvor(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if a is b:
            return a
        if b.is_const and not a.is_const:
            a, b = b, a
        if a.is_const and not b.is_const:
            if a.value == 0:
                return b
            if a.value == mask(size):
                return a
        if a.is_bit_ite() and b.is_bit_ite():
            return self.bit(self.lor(a.args[0], b.args[0]), size)
        return self._fold(Op.OR, (a, b), size)

    def bvxor(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if a is b:
            return self.const(0, size)
        if b.is_const and not a.is_const:
            a, b = b, a
        if a.is_const and not b.is_const and a.value == 0:
            return b
        return self._fold(Op.XOR, (a, b), size)

    def bvnot(self, a: Expr) -> Expr:
        if a.op is Op.NOT:
            return a.args[0]
        return self._fold(Op.NOT, (a,), a.size)

    def _shift(self, op: Op, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if b.is_const:
            if b.value == 0:
                return a
            if b.value >= size and op is not Op.ASHR:
                return self.const(0, size)
            # constant logical shifts are slices, which fuse with concat
            if not a.is_const and op is Op.LSHR:
                k = b.value
                return self.zero_ext(self.extract(size - 1, k, a), k)
            if not a.is_const and op is Op.SHL:
                k = b.value
                return self.concat(self.extract(size - 1 - k, 0, a), self.const(0, k))
        if a.is_const and a.value == 0:
            return a
        return self._fold(op, (a, b), size)

    def shl(self, a: Expr, b: Expr) -> Expr:
        return self._shift(Op.SHL, a, b)

    def lshr(self, a: Expr, b: Expr) -> Expr:
        return self._shift(Op.LSHR, a, b)

    def ashr(self, a: Expr, b: Expr) -> Expr:
        return self._shift(Op.ASHR, a, b)

    #
    # slicing
    #

    def extract(self, hi: int, lo: int, a: Expr) -> Expr:
        if not (0 <= lo <= hi < a.size):
            raise ValueError(f"invalid extract [{hi}:{lo}] of {a.size} bits")

        size = hi - lo + 1
        if lo == 0 and size == a.size:
            return a

        match a.op:
            case Op.CONST:
                return self.const(a.value >> lo, size)

            case Op.EXTRACT:
                _, inner_lo = a.params
                return self.extract(hi + inner_lo, lo + inner_lo, a.args[0])

            case Op.CONCAT:
                # keep only the parts overlapping [hi:lo], parts are msb first
                pieces = []
                offset = a.size
                for part in a.args:
                    part_hi, part_lo = offset - 1, offset - part.size
                    offset = part_lo
                    if part_lo > hi or part_hi < lo:
                        continue
                    pieces.append(
                        self.extract(
                            min(hi, part_hi) - part_lo,
                            max(lo, part_lo) - part_lo,
                            part,
                        )
                    )
                return self.concat(*pieces)

            case Op.ITE if a.args[1].is_const and a.args[2].is_const:
                cond, then, else_ = a.args
                return self.ite(
                    cond, self.extract(hi, lo, then), self.extract(hi, lo, else_)
                )

        return self._intern(Op.EXTRACT, (a,), size, (hi, lo))

    def concat(self, *parts: Expr) -> Expr:
        if not parts:
            raise ValueError("empty concat")

        flat: list[Expr] = []
        for part in parts:
            if part.size == BOOL:
                raise ValueError("cannot concat a boolean")
            flat.extend(part.args if part.op is Op.CONCAT else (part,))

        # merge adjacent constants and adjacent slices of the same term
        merged: list[Expr] = []
        for part in flat:
            if merged:
                prev = merged[-1]
                if prev.is_const and part.is_const:
                    merged[-1] = self.const(
                        (prev.value << part.size) | part.value, prev.size + part.size
                    )
                    continue
                if (
                    prev.op is Op.EXTRACT
                    and part.op is Op.EXTRACT
                    and prev.args[0] is part.args[0]
                    and prev.params[1] == part.params[0] + 1
                ):
                    merged[-1] = self.extract(
                        prev.params[0], part.params[1], prev.args[0]
                    )
                    continue
            merged.append(part)

        if len(merged) == 1:
            return merged[0]

        # concat(k1, ite(c, k2, k3), k4) => ite(c, concat(k1, k2, k4), ...)
        ites = [i for i, p in enumerate(merged) if not p.is_const]
        if len(ites) == 1:
            i = ites[0]
            node = merged[i]
            if node.op is Op.ITE and node.args[1].is_const and node.args[2].is_const:
                cond, then, else_ = node.args
                return self.ite(
                    cond,
                    self.concat(*merged[:i], then, *merged[i + 1 :]),
                    self.concat(*merged[:i], else_, *merged[i + 1 :]),
                )

        size = sum(p.size for p in merged)
        return self._intern(Op.CONCAT, tuple(merged), size)

    def zero_ext(self, a: Expr, extra: int) -> Expr:
        return a if extra == 0 else self.concat(self.const(0, extra), a)

    #
    # conditionals
    #

    def ite(self, c: Expr, a: Expr, b: Expr) -> Expr:
        if c.size != BOOL or a.size != b.size:
            raise ValueError("ill-sorted ite")
        if c is self.true:
            return a
        if c is self.false:
            return b
        if a is b:
            return a
        if c.op is Op.LNOT:
            return self.ite(c.args[0], b, a)
        return self._intern(Op.ITE, (c, a, b), a.size)

    def bit(self, c: Expr, size: int = WORD) -> Expr:
        """ite(c, 1, 0)"""
        return self.ite(c, self.const(1, size), self.const(0, size))

    def sha3(self, a: Expr) -> Expr:
        if a.size == BOOL or a.size % 8:
            raise ValueError(f"sha3 input must be whole bytes, got {a.size} bits")
        return self._fold(Op.SHA3, (a,), WORD)

    #
    # predicates
    #

    def eq(self, a: Expr, b: Expr) -> Expr:
        if a.size != b.size:
            raise ValueError(f"size mismatch: {a.size} vs {b.size}")
        if a is b:
            return self.true
        if a.is_const and not b.is_const:
            a, b = b, a

        if b.is_const and a.op is Op.ITE and a.args[1].is_const and a.args[2].is_const:
            cond, then, else_ = a.args
            match (then.value == b.value, else_.value == b.value):
                case (True, True):
                    return self.true
                case (True, False):
                    return cond
                case (False, True):
                    return self.lnot(cond)
                case _:
                    return self.false

        if a.size == BOOL:
            if b is self.true:
                return a
            if b is self.false:
                return self.lnot(a)

        return self._fold(Op.EQ, (a, b), BOOL)

    def ult(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if a is b:
            return self.false
        if b.is_const and b.value == 0:
            return self.false
        if a.is_const and a.value == mask(size):
            return self.false
        return self._fold(Op.ULT, (a, b), BOOL)

    def ule(self, a: Expr, b: Expr) -> Expr:
        size = self._same_size(a, b)
        if a is b:
            return self.true
        if a.is_const and a.value == 0:
            return self.true
        if b.is_const and b.value == mask(size):
            return self.true
        return self._fold(Op.ULE, (a, b), BOOL)

    def slt(self, a: Expr, b: Expr) -> Expr:
        self._same_size(a, b)
        if a is b:
            return self.false
        return self._fold(Op.SLT, (a, b), BOOL)

    def sle(self, a: Expr, b: Expr) -> Expr:
        self._same_size(a, b)
        if a is b:
            return self.true
        return self._fold(Op.SLE, (a, b), BOOL)

    def ugt(self, a: Expr, b: Expr) -> Expr:
        return self.ult(b, a)

    def sgt(self, a: Expr, b: Expr) -> Expr:
        return self.slt(b, a)

    def lnot(self, c: Expr) -> Expr:
        match c.op:
            case Op.TRUE:
                return self.false
            case Op.FALSE:
                return self.true
            case Op.LNOT:
                return c.args[0]
            case Op.ULT:
                return self.ule(c.args[1], c.args[0])
            case Op.ULE:
                return self.ult(c.args[1], c.args[0])
            case Op.SLT:
                return self.sle(c.args[1], c.args[0])
            case Op.SLE:
                return self.slt(c.args[1], c.args[0])
        if c.size != BOOL:
            raise ValueError("lnot of a bit-vector")
        return self._intern(Op.LNOT, (c,), BOOL)

    def _connective(self, op: Op, unit: Expr, zero: Expr, conds) -> Expr:
        flat: list[Expr] = []
        seen: set[int] = set()
        pending = list(conds)
        pending.reverse()
        while pending:
            c = pending.pop()
            if c.size != BOOL:
                raise ValueError(f"{op.value} of a bit-vector")
            if c is zero:
                return zero
            if c is unit or c.uid in seen:
                continue
            if c.op is op:
                pending.extend(reversed(c.args))
                continue
            seen.add(c.uid)
            flat.append(c)

        # c and not c
        for c in flat:
            if c.op is Op.LNOT and c.args[0].uid in seen:
                return zero

        if not flat:
            return unit
        if len(flat) == 1:
            return flat[0]
        return self._intern(op, tuple(flat), BOOL)

    def land(self, *conds: Expr) -> Expr:
        return self._connective(Op.LAND, self.true, self.false, conds)

    def lor(self, *conds: Expr) -> Expr:
        return self._connective(Op.LOR, self.false, self.true, conds)

    #
    # generic construction
    #

    def mk(self, op: Op, args: Sequence[Expr], size: int, params: tuple = ()) -> Expr:
        """rebuilds a node of the given shape through the smart constructors"""
        match op:
            case Op.CONST:
                return self.const(params[0], size)
            case Op.VAR:
                return self.var(params[0], size)
            case Op.TRUE:
                return self.true
            case Op.FALSE:
                return self.false
            case Op.EXTRACT:
                return self.extract(params[0], params[1], args[0])
            case Op.CONCAT:
                return self.concat(*args)
            case Op.LAND:
                return self.land(*args)
            case Op.LOR:
                return self.lor(*args)

        builder = _BUILDERS[op]
        return builder(self, *args)

    def simplify(self, expr: Expr) -> Expr:
        """re-applies the rewrite rules bottom-up"""
        return self.substitute(expr, {})

    def substitute(self, expr: Expr, mapping: Mapping[str, Expr | int]) -> Expr:
        """
        Replaces symbols by expressions (or concrete values) and rebuilds the
        term bottom-up, folding what becomes constant.
        """
        done: dict[int, Expr] = {}
        for node in postorder([expr]):
            if node.op is Op.VAR and node.name in mapping:
                new = mapping[node.name]
                if isinstance(new, int | bool):
                    new = (
                        self.bool_val(bool(new))
                        if node.is_bool
                        else self.const(new, node.size)
                    )
                done[node.uid] = new
            else:
                done[node.uid] = self.mk(
                    node.op, [done[a.uid] for a in node.args], node.size, node.params
                )
        return done[expr.uid]


_BUILDERS = {
    Op.ADD: ExprArena.add,
    Op.SUB: ExprArena.sub,
    Op.MUL: ExprArena.mul,
    Op.UDIV: ExprArena.udiv,
    Op.UREM: ExprArena.urem,
    Op.SDIV: ExprArena.sdiv,
    Op.SREM: ExprArena.srem,
    Op.EXP: ExprArena.exp,
    Op.AND: ExprArena.bvand,
    Op.OR: ExprArena.bvor,
    Op.XOR: ExprArena.bvxor,
    Op.NOT: ExprArena.bvnot,
    Op.SHL: ExprArena.shl,
    Op.LSHR: ExprArena.lshr,
    Op.ASHR: ExprArena.ashr,
    Op.ITE: ExprArena.ite,
    Op.SHA3: ExprArena.sha3,
    Op.EQ: ExprArena.eq,
    Op.ULT: ExprArena.ult,
    Op.ULE: ExprArena.ule,
    Op.SLT: ExprArena.slt,
    Op.SLE: ExprArena.sle,
    Op.LNOT: ExprArena.lnot,
}
