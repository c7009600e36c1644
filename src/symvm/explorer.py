# SPDX-License-Identifier: AGPL-3.0

"""
Path scheduling: picks pending states from a frontier, runs them to their next
branch or terminal instruction, admits feasible children and turns terminal
states into findings.
"""

import itertools
import threading
from collections import Counter, deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from timeit import default_timer as timer

import xxhash
from sortedcontainers import SortedList

from symvm.config import Config, default_config
from symvm.entry import EntryPoint
from symvm.expr import Expr, ExprArena, free_vars
from symvm.logs import (
    FRONTIER_OVERFLOW,
    SOLVER_UNKNOWN,
    debug,
    info,
    set_verbosity,
    warn_code,
)
from symvm.memory import Byte
from symvm.sevm import (
    INCOMPLETE_KINDS,
    SEVM,
    Branched,
    FindingKind,
    Terminal,
)
from symvm.solvers import Sat, SolverAdapter, Unsat, mk_solver
from symvm.state import EventLog, Exec
from symvm.utils import CancellationToken


@dataclass(frozen=True)
class Finding:
    kind: FindingKind
    path: tuple[Expr, ...]

    # symbol name -> value, None if the solver could not produce one
    witness: dict[str, int] | None

    # the path was shown feasible by a solver
    confirmed: bool

    address: int
    pc: int
    logs: tuple[EventLog, ...]
    output: tuple[Byte, ...]
    reason: str
    path_id: str
    steps: int = 0
    forks: int = 0

    def __str__(self) -> str:
        witness = "n/a" if self.witness is None else self.witness
        return f"{self.kind} at {hex(self.address)}:{self.pc} ({self.reason}) {witness}"


def path_id(path: tuple[Expr, ...]) -> str:
    return xxhash.xxh3_64_hexdigest("\n".join(str(c) for c in path).encode())


class RunStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"

    def __str__(self) -> str:
        return self.value


@dataclass
class Stats:
    # scheduling turns
    states: int = 0
    # instructions executed
    steps: int = 0
    branches: int = 0
    infeasible: int = 0
    unknown: int = 0
    evicted: int = 0
    findings: int = 0
    kinds: Counter = field(default_factory=Counter)
    elapsed: float = 0.0


#
# frontiers
#


class DepthFirstFrontier:
    """LIFO; evicts the oldest pending state"""

    def __init__(self):
        self.items: deque[Exec] = deque()

    def push(self, ex: Exec) -> None:
        self.items.append(ex)

    def pop(self) -> Exec | None:
        try:
            return self.items.pop()
        except IndexError:
            return None

    def evict(self) -> Exec:
        return self.items.popleft()

    def __len__(self) -> int:
        return len(self.items)


class CoverageGuidedFrontier:
    """
    Prefers states whose pc has been scheduled least often, then shallower
    states, then older ones. Evicts the least preferred state.
    """

    def __init__(self, visits: Counter):
        self.visits = visits
        self.items = SortedList(key=lambda item: item[0])
        self.seq = itertools.count()

    def push(self, ex: Exec) -> None:
        priority = (self.visits[(ex.address, ex.pc)], ex.forks, next(self.seq))
        self.items.add((priority, ex))

    def pop(self) -> Exec | None:
        if not self.items:
            return None
        return self.items.pop(0)[1]

    def evict(self) -> Exec:
        return self.items.pop(-1)[1]

    def __len__(self) -> int:
        return len(self.items)


Frontier = DepthFirstFrontier | CoverageGuidedFrontier


def mk_frontier(strategy: str, visits: Counter) -> Frontier:
    match strategy:
        case "depth-first":
            return DepthFirstFrontier()
        case "coverage-guided":
            return CoverageGuidedFrontier(visits)

    raise ValueError(f"unknown strategy: {strategy}")


#
# exploration
#


class Exploration:
    """
    A single lazy exploration. Iterating it runs the engine and yields one
    Finding per terminal path; it can be iterated only once. cancel() may be
    called from any thread.
    """

    def __init__(self, explorer: "Explorer", entry: EntryPoint, ex0: Exec):
        self.explorer = explorer
        self.entry = entry
        self.config = explorer.config
        self.token = CancellationToken()
        self.status = RunStatus.PENDING
        self.stats = Stats()
        self.findings: list[Finding] = []
        self.visits: Counter = Counter()
        self.stop_reason: str | None = None
        self._ex0: Exec | None = ex0
        self._started = False

    def __iter__(self) -> Iterator[Finding]:
        if self._started:
            raise RuntimeError("an exploration can only be iterated once")
        self._started = True
        return self._run()

    def cancel(self) -> None:
        if self.stop_reason is None:
            self.stop_reason = "cancelled"
        self.token.cancel()

    def _on_timeout(self) -> None:
        if self.stop_reason is None:
            self.stop_reason = f"timeout ({self.config.timeout}s)"
        self.token.cancel()

    @property
    def complete(self) -> bool:
        return self.status is RunStatus.COMPLETE

    def _run(self) -> Iterator[Finding]:
        config = self.config
        sevm = self.explorer.sevm
        frontier = mk_frontier(config.strategy, self.visits)

        frontier.push(self._ex0)
        self._ex0 = None

        start = timer()
        self.status = RunStatus.RUNNING
        drained = False

        deadline = None
        if config.timeout:
            deadline = threading.Timer(config.timeout, self._on_timeout)
            deadline.daemon = True
            deadline.start()

        try:
            with self.token.on_cancel(self.explorer.solver.interrupt):
                while (ex := frontier.pop()) is not None:
                    if self.token.cancelled:
                        yield from self._abandon(ex, frontier)
                        break

                    if config.max_states and self.stats.states >= config.max_states:
                        self.stop_reason = f"state bound reached (max_states={config.max_states})"
                        yield from self._abandon(ex, frontier)
                        break

                    self.stats.states += 1
                    self.visits[(ex.address, ex.pc)] += 1

                    steps_before = ex.steps
                    result = sevm.run(ex, self.token)
                    self.stats.steps += ex.steps - steps_before

                    if isinstance(result, Terminal):
                        if result.kind is FindingKind.INCOMPLETE:
                            yield from self._abandon(ex, frontier)
                            break

                        if (finding := self._finalize(result)) is not None:
                            yield finding
                        continue

                    assert isinstance(result, Branched)
                    self.stats.branches += 1

                    admitted = []
                    for child in result.children:
                        if not self._admit(child):
                            continue

                        if config.max_depth and child.forks > config.max_depth:
                            reason = f"fork bound reached (max_depth={config.max_depth})"
                            terminal = Terminal(child, FindingKind.BOUNDED_ABORT, reason)
                            if (finding := self._finalize(terminal)) is not None:
                                yield finding
                            continue

                        admitted.append(child)

                    # children[0] is scheduled first
                    for child in reversed(admitted):
                        frontier.push(child)

                    while config.max_frontier and len(frontier) > config.max_frontier:
                        evicted = frontier.evict()
                        self.stats.evicted += 1
                        warn_code(
                            FRONTIER_OVERFLOW,
                            f"frontier bound reached (max_frontier={config.max_frontier})",
                            allow_duplicate=False,
                        )
                        reason = f"evicted from the frontier (max_frontier={config.max_frontier})"
                        terminal = Terminal(evicted, FindingKind.BOUNDED_ABORT, reason)
                        if (finding := self._finalize(terminal)) is not None:
                            yield finding
                else:
                    drained = True

        finally:
            if deadline is not None:
                deadline.cancel()

            self.stats.elapsed = timer() - start

            incomplete = (
                not drained
                or self.stats.evicted > 0
                or any(self.stats.kinds[k] for k in INCOMPLETE_KINDS)
            )
            self.status = RunStatus.INCOMPLETE if incomplete else RunStatus.COMPLETE

            info(
                f"exploration {self.status}: {self.stats.findings} findings, "
                f"{self.stats.states} states, {self.stats.steps} steps, "
                f"{self.stats.elapsed:0.2f}s"
                + (f" ({self.stop_reason})" if self.stop_reason else "")
            )

    def _admit(self, child: Exec) -> bool:
        """checks the path condition of a new child; Unknown admits it unconfirmed"""

        result = self.explorer.solver.check(
            child.path.conditions(), timeout=self.config.solver_timeout_branching
        )

        if isinstance(result, Unsat):
            self.stats.infeasible += 1
            return False

        if not isinstance(result, Sat):
            child.unconfirmed = True
            if not self.token.cancelled:
                self.stats.unknown += 1
                warn_code(
                    SOLVER_UNKNOWN,
                    f"branch at {hex(child.address)}:{child.pc} admitted unconfirmed ({result.reason})",
                )

        return True

    def _record(self, finding: Finding) -> Finding:
        self.findings.append(finding)
        self.stats.findings += 1
        self.stats.kinds[finding.kind] += 1
        return finding

    def _finding(
        self,
        ex: Exec,
        kind: FindingKind,
        reason: str,
        witness: dict[str, int] | None,
        confirmed: bool,
    ) -> Finding:
        path = ex.path.conditions()
        return self._record(
            Finding(
                kind=kind,
                path=path,
                witness=witness,
                confirmed=confirmed,
                address=ex.address,
                pc=ex.pc,
                logs=ex.logs,
                output=tuple(ex.output),
                reason=reason,
                path_id=path_id(path),
                steps=ex.steps,
                forks=ex.forks,
            )
        )

    def _finalize(self, terminal: Terminal) -> Finding | None:
        """solves the path condition of a terminal state for a witness"""

        ex = terminal.ex
        path = ex.path.conditions()

        result = self.explorer.solver.check(
            path, timeout=self.config.solver_timeout_assertion
        )

        if isinstance(result, Unsat):
            # only reachable through branches admitted unconfirmed
            debug(f"dropping infeasible {terminal.kind} path at {hex(ex.address)}:{ex.pc}")
            self.stats.infeasible += 1
            return None

        if isinstance(result, Sat):
            names = dict.fromkeys(ex.inputs)
            names.update(dict.fromkeys(free_vars(path)))
            witness = {name: int(result.model.get(name, 0)) for name in names}
            return self._finding(ex, terminal.kind, terminal.reason, witness, True)

        if self.token.cancelled:
            # the solve was interrupted, so nothing is known about this state
            reason = self.stop_reason or "cancelled"
            return self._finding(ex, FindingKind.INCOMPLETE, reason, None, False)

        debug(f"no witness for {terminal.kind} path: {result.reason}")
        return self._finding(ex, terminal.kind, terminal.reason, None, False)

    def _abandon(self, ex: Exec, frontier: Frontier) -> Iterator[Finding]:
        """turns the current state and everything still pending into incomplete findings"""

        reason = self.stop_reason or "cancelled"
        pending = [ex]
        while (other := frontier.pop()) is not None:
            pending.append(other)

        for state in pending:
            yield self._finding(state, FindingKind.INCOMPLETE, reason, None, False)


class Explorer:
    """
    Explores the paths of a contract call. One solver is shared by every
    exploration of an explorer, so concurrent explorations need separate
    explorers.
    """

    def __init__(self, config: Config | None = None, solver: SolverAdapter | None = None):
        self.config = config or default_config()
        set_verbosity(self.config.verbose, self.config.debug)
        self.solver = solver or mk_solver(self.config)
        self.solver.ensure_available()
        self.sevm = SEVM(self.config)

    def explore(self, entry: EntryPoint, arena: ExprArena | None = None) -> Exploration:
        ex0 = entry.mk_exec(arena or ExprArena())
        return Exploration(self, entry, ex0)

    def run(self, entry: EntryPoint) -> list[Finding]:
        """explores entry to the end and returns all findings"""
        return list(self.explore(entry))
