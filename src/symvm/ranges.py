# SPDX-License-Identifier: AGPL-3.0

"""
Interval reasoning over single-variable constraints.

Handles conjunctions, and disjunctions over a single variable, of atoms that
compare a bare symbol with a constant (=, <, <=, signed or unsigned, and
their negations), plus bare boolean symbols. Anything else makes the
answer Unknown, unless the supported part is already contradictory.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from symvm.expr import BOOL, Expr, Op, mask, to_signed

Interval = tuple[int, int]


@dataclass(frozen=True, slots=True)
class Intervals:
    """sorted, disjoint, non-adjacent inclusive ranges"""

    ranges: tuple[Interval, ...]

    @staticmethod
    def of(*ranges: Interval) -> "Intervals":
        spans = sorted((lo, hi) for lo, hi in ranges if lo <= hi)
        merged: list[Interval] = []
        for lo, hi in spans:
            if merged and lo <= merged[-1][1] + 1:
                merged[-1] = (merged[-1][0], max(merged[-1][1], hi))
            else:
                merged.append((lo, hi))
        return Intervals(tuple(merged))

    @property
    def is_empty(self) -> bool:
        return not self.ranges

    def min(self) -> int:
        return self.ranges[0][0]

    def __contains__(self, value: int) -> bool:
        return any(lo <= value <= hi for lo, hi in self.ranges)

    def intersect(self, other: "Intervals") -> "Intervals":
        result = []
        for lo1, hi1 in self.ranges:
            for lo2, hi2 in other.ranges:
                lo, hi = max(lo1, lo2), min(hi1, hi2)
                if lo <= hi:
                    result.append((lo, hi))
        return Intervals.of(*result)

    def union(self, other: "Intervals") -> "Intervals":
        return Intervals.of(*self.ranges, *other.ranges)

    def complement(self, size: int) -> "Intervals":
        top = mask(max(size, 1))
        result = []
        start = 0
        for lo, hi in self.ranges:
            if lo > start:
                result.append((start, lo - 1))
            start = hi + 1
        if start <= top:
            result.append((start, top))
        return Intervals.of(*result)


# name -> (size, allowed values)
Domains = dict[str, tuple[int, Intervals]]


def _signed(lo: int, hi: int, size: int) -> Intervals:
    """unsigned encoding of the signed range [lo, hi]"""
    lo = max(lo, -(1 << (size - 1)))
    hi = min(hi, (1 << (size - 1)) - 1)
    if lo > hi:
        return Intervals(())
    if lo >= 0 or hi < 0:
        return Intervals.of((lo & mask(size), hi & mask(size)))
    return Intervals.of((lo & mask(size), mask(size)), (0, hi))


def _compare(op: Op, var_on_left: bool, c: int, size: int) -> Intervals:
    top = mask(size)
    sc = to_signed(c, size)
    smin, smax = -(1 << (size - 1)), (1 << (size - 1)) - 1

    match (op, var_on_left):
        case (Op.EQ, _):
            return Intervals.of((c, c))
        case (Op.ULT, True):
            return Intervals.of((0, c - 1))
        case (Op.ULT, False):
            return Intervals.of((c + 1, top))
        case (Op.ULE, True):
            return Intervals.of((0, c))
        case (Op.ULE, False):
            return Intervals.of((c, top))
        case (Op.SLT, True):
            return _signed(smin, sc - 1, size)
        case (Op.SLT, False):
            return _signed(sc + 1, smax, size)
        case (Op.SLE, True):
            return _signed(smin, sc, size)
        case (Op.SLE, False):
            return _signed(sc, smax, size)

    raise ValueError(op)


def atom_domain(expr: Expr) -> tuple[str, int, Intervals] | None:
    if expr.op is Op.VAR and expr.size == BOOL:
        return expr.name, BOOL, Intervals.of((1, 1))

    if expr.op not in (Op.EQ, Op.ULT, Op.ULE, Op.SLT, Op.SLE):
        return None

    lhs, rhs = expr.args
    if lhs.size == BOOL:
        return None

    if lhs.op is Op.VAR and rhs.is_const:
        return lhs.name, lhs.size, _compare(expr.op, True, rhs.value, lhs.size)

    if rhs.op is Op.VAR and lhs.is_const:
        return rhs.name, rhs.size, _compare(expr.op, False, lhs.value, rhs.size)

    return None


def _conjoin(into: Domains, name: str, size: int, allowed: Intervals) -> None:
    if name in into:
        _, current = into[name]
        allowed = current.intersect(allowed)
    into[name] = (size, allowed)


def formula_domains(expr: Expr, negate: bool = False) -> Domains | None:
    """
    Per-variable allowed values of expr (or of its negation), or None if expr
    is not a supported shape.
    """

    match expr.op:
        case Op.TRUE | Op.FALSE:
            # folded away by the smart constructors except at the top level
            return None

        case Op.LNOT:
            return formula_domains(expr.args[0], not negate)

        case Op.LAND | Op.LOR:
            conjunctive = (expr.op is Op.LAND) != negate
            parts = [formula_domains(arg, negate) for arg in expr.args]
            if any(p is None for p in parts):
                return None

            result: Domains = {}
            if conjunctive:
                for part in parts:
                    for name, (size, allowed) in part.items():
                        _conjoin(result, name, size, allowed)
                return result

            # a disjunction is only exact when every disjunct is about the
            # same single variable
            names = {name for part in parts for name in part}
            if len(names) != 1 or any(len(p) != 1 for p in parts):
                return None
            (name,) = names
            size = parts[0][name][0]
            allowed = Intervals(())
            for part in parts:
                allowed = allowed.union(part[name][1])
            return {name: (size, allowed)}

    atom = atom_domain(expr)
    if atom is None:
        return None

    name, size, allowed = atom
    if negate:
        allowed = allowed.complement(size)
    return {name: (size, allowed)}


def solve_ranges(constraints: Sequence[Expr]) -> tuple[str, dict[str, int | bool]]:
    """
    Returns ("sat", model), ("unsat", {}) or ("unknown", {}). A model assigns
    each constrained variable its smallest allowed value.
    """

    domains: Domains = {}
    unsupported = False

    for c in constraints:
        part = formula_domains(c)
        if part is None:
            unsupported = True
            continue
        for name, (size, allowed) in part.items():
            _conjoin(domains, name, size, allowed)

    if any(allowed.is_empty for _, allowed in domains.values()):
        return "unsat", {}

    if unsupported:
        return "unknown", {}

    model: dict[str, int | bool] = {}
    for name, (size, allowed) in sorted(domains.items()):
        value = allowed.min()
        model[name] = bool(value) if size == BOOL else value
    return "sat", model
