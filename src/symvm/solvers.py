# SPDX-License-Identifier: AGPL-3.0

"""
Solver adapters: decide a conjunction of boolean expressions.

Every adapter answers `check(constraints)` with Sat(model), Unsat or
Unknown(reason). Each call is independent of the previous ones. Unknown is
never to be read as infeasible.
"""

import shlex
import shutil
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from subprocess import PIPE, Popen

import z3

from symvm.exceptions import SolverTimeout, SolverUnavailable
from symvm.expr import BOOL, Expr, Op, evaluate, free_vars, postorder, to_smtlib
from symvm.logs import COUNTEREXAMPLE_INVALID, debug, warn_code
from symvm.processes import kill_process_tree
from symvm.ranges import solve_ranges
from symvm.smtlib import parse_check_sat, parse_model


@dataclass(frozen=True, slots=True)
class Sat:
    model: dict[str, int | bool] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Unsat:
    pass


@dataclass(frozen=True, slots=True)
class Unknown:
    reason: str = "unknown"


CheckResult = Sat | Unsat | Unknown

UNSAT = Unsat()


def model_satisfies(constraints: Sequence[Expr], model: dict[str, int | bool]) -> bool:
    return all(evaluate(c, model) is True for c in constraints)


class SolverAdapter:
    """
    Base class. Subclasses implement _check(); check() takes care of the
    trivial cases and validates models by concrete evaluation.
    """

    name = "abstract"

    def check(
        self, constraints: Sequence[Expr], *, timeout: int | None = None
    ) -> CheckResult:
        """
        timeout is in milliseconds, None means the adapter's default and 0
        means no timeout.
        """
        pending = []
        for c in constraints:
            if c.op is Op.FALSE:
                return UNSAT
            if c.op is not Op.TRUE:
                pending.append(c)

        if not pending:
            return Sat({})

        result = self._check(pending, timeout)

        if isinstance(result, Sat) and not model_satisfies(pending, result.model):
            warn_code(
                COUNTEREXAMPLE_INVALID,
                f"{self.name}: model does not satisfy the path condition",
                allow_duplicate=False,
            )
            return Unknown("invalid model")

        return result

    def _check(self, constraints: list[Expr], timeout: int | None) -> CheckResult:
        raise NotImplementedError

    def ensure_available(self) -> None:
        """raises SolverUnavailable if the back end cannot be used"""
        pass

    def interrupt(self) -> None:
        """aborts the in-flight check, if any; safe to call from any thread"""
        pass


#
# in-process z3
#


def create_solver(logic="QF_AUFBV", ctx=None, timeout=0, max_memory=0) -> z3.Solver:
    # QF_AUFBV: quantifier-free bitvector + array theory: https://smtlib.cs.uiowa.edu/logics.shtml
    solver = z3.SolverFor(logic, ctx=ctx)

    # set timeout
    solver.set(timeout=timeout)

    # set memory limit
    if max_memory > 0:
        solver.set(max_memory=max_memory)

    return solver


class Z3Translator:
    """Converts expressions to z3 terms of a given context, memoized per node."""

    def __init__(self, ctx: z3.Context):
        self.ctx = ctx
        self.memo: dict[int, z3.ExprRef] = {}
        self.functions: dict[str, z3.FuncDeclRef] = {}

    def function(self, name: str, *sizes: int) -> z3.FuncDeclRef:
        if name not in self.functions:
            sorts = [z3.BitVecSort(s, self.ctx) for s in sizes]
            self.functions[name] = z3.Function(name, *sorts)
        return self.functions[name]

    def __call__(self, expr: Expr) -> z3.ExprRef:
        memo = self.memo
        for node in postorder([expr]):
            if node.uid not in memo:
                memo[node.uid] = self._node(node, [memo[a.uid] for a in node.args])
        return memo[expr.uid]

    def _node(self, node: Expr, args: list) -> z3.ExprRef:
        ctx = self.ctx

        match node.op:
            case Op.CONST:
                return z3.BitVecVal(node.value, node.size, ctx)
            case Op.VAR:
                if node.size == BOOL:
                    return z3.Bool(node.name, ctx)
                return z3.BitVec(node.name, node.size, ctx)
            case Op.TRUE:
                return z3.BoolVal(True, ctx)
            case Op.FALSE:
                return z3.BoolVal(False, ctx)
            case Op.ADD:
                return args[0] + args[1]
            case Op.SUB:
                return args[0] - args[1]
            case Op.MUL:
                return args[0] * args[1]
            case Op.UDIV:
                return z3.UDiv(args[0], args[1])
            case Op.UREM:
                return z3.URem(args[0], args[1])
            case Op.SDIV:
                return args[0] / args[1]
            case Op.SREM:
                return z3.SRem(args[0], args[1])
            case Op.AND:
                return args[0] & args[1]
            case Op.OR:
                return args[0] | args[1]
            case Op.XOR:
                return args[0] ^ args[1]
            case Op.NOT:
                return ~args[0]
            case Op.SHL:
                return args[0] << args[1]
            case Op.LSHR:
                return z3.LShR(args[0], args[1])
            case Op.ASHR:
                return args[0] >> args[1]
            case Op.EXTRACT:
                hi, lo = node.params
                return z3.Extract(hi, lo, args[0])
            case Op.CONCAT:
                return z3.Concat(*args)
            case Op.ITE:
                return z3.If(args[0], args[1], args[2])
            case Op.EXP:
                return self.function("evm_exp", 256, 256, 256)(args[0], args[1])
            case Op.SHA3:
                n = node.args[0].size
                return self.function(f"sha3_{n}", n, 256)(args[0])
            case Op.EQ:
                return args[0] == args[1]
            case Op.ULT:
                return z3.ULT(args[0], args[1])
            case Op.ULE:
                return z3.ULE(args[0], args[1])
            case Op.SLT:
                return args[0] < args[1]
            case Op.SLE:
                return args[0] <= args[1]
            case Op.LNOT:
                return z3.Not(args[0], ctx)
            case Op.LAND:
                return z3.And(*args)
            case Op.LOR:
                return z3.Or(*args)

        raise ValueError(f"cannot translate {node.op}")


class Z3Solver(SolverAdapter):
    """
    In-process z3. Every check runs in a fresh z3.Context, so checks made by
    different threads never share solver state and an interrupt only hits
    the check in flight.
    """

    name = "z3"

    def __init__(self, timeout: int = 0, max_memory: int = 0, logic: str = "QF_AUFBV"):
        self.timeout = timeout
        self.max_memory = max_memory
        self.logic = logic
        self._ctx: z3.Context | None = None
        self._lock = threading.Lock()

    def ensure_available(self) -> None:
        try:
            ctx = z3.Context()
            solver = create_solver(self.logic, ctx=ctx)
            solver.add(z3.BoolVal(True, ctx))
            solver.check()
        except z3.Z3Exception as err:
            raise SolverUnavailable(f"z3 is not usable: {err}") from err

    def _check(self, constraints: list[Expr], timeout: int | None) -> CheckResult:
        timeout = self.timeout if timeout is None else timeout
        ctx = z3.Context()
        solver = create_solver(self.logic, ctx, timeout, self.max_memory)

        translate = Z3Translator(ctx)
        for c in constraints:
            solver.add(translate(c))

        with self._lock:
            self._ctx = ctx

        try:
            result = solver.check()
        finally:
            with self._lock:
                self._ctx = None

        if result == z3.sat:
            model = solver.model()
            values: dict[str, int | bool] = {}
            for name, node in free_vars(constraints).items():
                value = model.eval(translate(node), model_completion=True)
                values[name] = z3.is_true(value) if node.is_bool else value.as_long()
            return Sat(values)

        if result == z3.unsat:
            return UNSAT

        return Unknown(solver.reason_unknown())

    def interrupt(self) -> None:
        with self._lock:
            if self._ctx is not None:
                self._ctx.interrupt()


#
# external solver process
#


class ExternalSolver(SolverAdapter):
    """
    Runs an SMT-LIB solver binary on the exported script, e.g.
    `z3 -in -smt2`, `cvc5 --produce-models` or `bitwuzla --produce-models`.
    The process tree is killed on timeout or interrupt().
    """

    name = "external"

    def __init__(self, command: str | Sequence[str] = "z3 -in -smt2", timeout: int = 0):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("empty solver command")
        self.timeout = timeout
        self._process: Popen | None = None
        self._lock = threading.Lock()

    def ensure_available(self) -> None:
        if shutil.which(self.command[0]) is None:
            raise SolverUnavailable(f"solver binary not found: {self.command[0]}")

    def _check(self, constraints: list[Expr], timeout: int | None) -> CheckResult:
        timeout = self.timeout if timeout is None else timeout
        script = to_smtlib(constraints) + "(check-sat)\n(get-model)\n"

        try:
            stdout, stderr, returncode = self._run(script, timeout)
        except SolverTimeout as err:
            debug(str(err))
            return Unknown("timeout")

        answer = parse_check_sat(stdout)
        if answer == "unsat":
            return UNSAT

        if answer == "sat":
            model = parse_model(stdout)
            return Sat({name: model.get(name, 0) for name in free_vars(constraints)})

        debug(f"{self.command[0]} returned {answer or 'nothing'}: {stderr.strip()}")
        return Unknown(answer or f"no answer (exit code {returncode})")

    def _run(self, script: str, timeout: int) -> tuple[str, str, int]:
        try:
            process = Popen(self.command, stdin=PIPE, stdout=PIPE, stderr=PIPE, text=True)
        except OSError as err:
            raise SolverUnavailable(f"cannot start {self.command[0]}: {err}") from err

        with self._lock:
            self._process = process

        try:
            stdout, stderr = process.communicate(script, timeout=timeout / 1000 or None)
        except subprocess.TimeoutExpired as err:
            kill_process_tree(process)
            process.communicate()
            raise SolverTimeout(f"{self.command[0]} timed out after {timeout} ms") from err
        finally:
            with self._lock:
                self._process = None

        return stdout, stderr, process.returncode

    def interrupt(self) -> None:
        with self._lock:
            process = self._process
        if process is not None:
            kill_process_tree(process)


#
# interval pre-solver and chaining
#


class RangeSolver(SolverAdapter):
    """
    Deterministic interval solver for range and equality constraints over
    single variables. Answers Unknown for anything it cannot model exactly.
    """

    name = "ranges"

    def _check(self, constraints: list[Expr], timeout: int | None) -> CheckResult:
        answer, model = solve_ranges(constraints)
        if answer == "sat":
            return Sat(model)
        if answer == "unsat":
            return UNSAT
        return Unknown("unsupported constraint shape")


class ChainSolver(SolverAdapter):
    """Asks each solver in turn and returns the first definite answer."""

    name = "chain"

    def __init__(self, solvers: Sequence[SolverAdapter]):
        if not solvers:
            raise ValueError("empty solver chain")
        self.solvers = list(solvers)
        self.name = "+".join(s.name for s in self.solvers)

    def ensure_available(self) -> None:
        for solver in self.solvers:
            solver.ensure_available()

    def check(
        self, constraints: Sequence[Expr], *, timeout: int | None = None
    ) -> CheckResult:
        result: CheckResult = Unknown("no solver")
        for solver in self.solvers:
            result = solver.check(constraints, timeout=timeout)
            if not isinstance(result, Unknown):
                return result
        return result

    def interrupt(self) -> None:
        for solver in self.solvers:
            solver.interrupt()


def mk_solver(config) -> SolverAdapter:
    """the solver selected by config.solver, with the range pre-solver in front"""

    match config.solver:
        case "z3":
            return ChainSolver([RangeSolver(), Z3Solver(config.solver_timeout_branching)])
        case "external":
            command = config.solver_command or "z3 -in -smt2"
            timeout = config.solver_timeout_branching
            return ChainSolver([RangeSolver(), ExternalSolver(command, timeout)])
        case "ranges":
            return RangeSolver()

    raise ValueError(f"unknown solver: {config.solver}")
