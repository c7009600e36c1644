import threading

import pytest

from evm_asm import assemble
from symvm.config import default_config
from symvm.entry import EntryPoint
from symvm.exceptions import MalformedBytecode, SolverUnavailable
from symvm.explorer import Explorer, RunStatus, path_id
from symvm.sevm import FindingKind
from symvm.solvers import RangeSolver, Unknown

REVERTED = FindingKind.REVERTED
NORMAL_RETURN = FindingKind.NORMAL_RETURN
FLAGGED = FindingKind.FLAGGED_EVENT
VIOLATED = FindingKind.INVARIANT_VIOLATED
BOUNDED = FindingKind.BOUNDED_ABORT
UNSUPPORTED = FindingKind.UNSUPPORTED
INCOMPLETE = FindingKind.INCOMPLETE


def kinds(findings):
    return [f.kind for f in findings]


def explore(args, entry, **overrides):
    if overrides:
        args = args.with_overrides(source="test", **overrides)
    exploration = Explorer(args).explore(entry)
    return list(exploration), exploration


def test_process_and_lowering(args, process_and):
    findings, exploration = explore(args, process_and)

    assert kinds(findings) == [FLAGGED, REVERTED]
    assert exploration.status is RunStatus.COMPLETE
    assert exploration.stats.branches == 1

    flagged, reverted = findings
    assert 201 <= flagged.witness["p0"] <= 209
    assert flagged.confirmed
    assert len(flagged.logs) == 1
    assert flagged.reason == "event Bug(uint256)"

    assert not 201 <= reverted.witness["p0"] <= 209
    assert reverted.confirmed
    assert reverted.output == ()


def test_process_short_circuit_lowering(args, process_short_circuit):
    findings, exploration = explore(args, process_short_circuit)

    # one fork per JUMPI: a <= 200, then 200 < a and a >= 210
    assert kinds(findings) == [REVERTED, REVERTED, FLAGGED]
    assert exploration.status is RunStatus.COMPLETE
    assert exploration.stats.branches == 2

    low, high, flagged = findings
    assert low.witness["p0"] <= 200
    assert high.witness["p0"] >= 210
    assert 201 <= flagged.witness["p0"] <= 209


@pytest.mark.parametrize("fixture", ["process_and", "process_short_circuit"])
def test_witness_replay(args, fixture, request):
    entry = request.getfixturevalue(fixture)
    findings, _ = explore(args, entry)

    for finding in findings:
        replayed, exploration = explore(args, entry.with_witness(finding.witness))
        assert kinds(replayed) == [finding.kind]
        assert exploration.stats.branches == 0


@pytest.mark.parametrize("fixture", ["process_and", "process_short_circuit"])
def test_determinism(args, fixture, request):
    entry = request.getfixturevalue(fixture)

    def signature(findings):
        return [(f.kind, f.witness, f.path_id, f.pc, f.reason) for f in findings]

    first, _ = explore(args, entry)
    second, _ = explore(args, entry)
    assert signature(first) == signature(second)


def test_path_id(args, process_and):
    findings, _ = explore(args, process_and)
    flagged, reverted = findings

    assert flagged.path_id == path_id(flagged.path)
    assert len(flagged.path_id) == 16
    assert flagged.path_id != reverted.path_id
    assert path_id(()) == path_id(())


def test_range_solver_alone(args, process_short_circuit):
    exploration = Explorer(args, solver=RangeSolver()).explore(process_short_circuit)
    findings = list(exploration)

    assert kinds(findings) == [REVERTED, REVERTED, FLAGGED]
    assert all(f.confirmed for f in findings)
    assert exploration.status is RunStatus.COMPLETE


def test_coverage_guided_finds_the_same_paths(args, process_short_circuit):
    findings, exploration = explore(
        args, process_short_circuit, strategy="coverage-guided"
    )

    assert sorted(kinds(findings), key=str) == [FLAGGED, REVERTED, REVERTED]
    assert exploration.status is RunStatus.COMPLETE


def test_infeasible_branches_are_dropped(args):
    # if (a > 10) { if (a < 5) INVALID } STOP
    code = assemble(
        """
        PUSH 0
        CALLDATALOAD
        DUP1
        PUSH 10
        LT
        PUSH @big
        JUMPI
        STOP
    big:
        PUSH 5
        GT
        PUSH @unreachable
        JUMPI
        STOP
    unreachable:
        INVALID
        """
    )
    findings, exploration = explore(args, EntryPoint(code, args=(None,)))

    assert kinds(findings) == [NORMAL_RETURN, NORMAL_RETURN]
    assert exploration.stats.infeasible == 1
    assert exploration.status is RunStatus.COMPLETE


def test_compound_guard_yields_feasible_subset(args):
    # two guards over the same symbol: a < 5 and a > 10 are exclusive,
    # so only 3 of the 4 direction combinations are feasible
    code = assemble(
        """
        PUSH 0
        CALLDATALOAD
        DUP1
        PUSH 5
        GT
        PUSH @small
        JUMPI
        PUSH @second
        JUMP
    small:
        PUSH 1
        PUSH 0
        SSTORE
    second:
        PUSH 10
        LT
        PUSH @large
        JUMPI
        STOP
    large:
        STOP
        """
    )
    findings, exploration = explore(args, EntryPoint(code, args=(None,)))

    assert kinds(findings) == [NORMAL_RETURN] * 3
    assert exploration.stats.infeasible == 1

    witnesses = sorted(f.witness["p0"] for f in findings)
    assert witnesses[0] < 5
    assert 5 <= witnesses[1] <= 10
    assert witnesses[2] > 10


def test_sha3_storage_roundtrip(args):
    # balances[msg.sender] = a; if (balances[msg.sender] == 7) INVALID
    code = assemble(
        """
        CALLER
        PUSH 0
        MSTORE
        PUSH 1
        PUSH 32
        MSTORE
        PUSH 64
        PUSH 0
        SHA3                ; [slot]
        PUSH 0
        CALLDATALOAD
        DUP2
        SSTORE              ; [slot]
        SLOAD
        PUSH 7
        EQ
        PUSH @hit
        JUMPI
        STOP
    hit:
        INVALID
        """
    )

    findings, _ = explore(args, EntryPoint(code, args=(None,)))
    assert kinds(findings) == [VIOLATED, NORMAL_RETURN]
    assert findings[0].witness["p0"] == 7
    assert findings[1].witness["p0"] != 7

    # same with a symbolic caller: the slot is an uninterpreted hash
    entry = EntryPoint(code, args=(None,), caller=None)
    findings, _ = explore(args, entry)
    assert kinds(findings) == [VIOLATED, NORMAL_RETURN]
    assert findings[0].witness["p0"] == 7
    assert "msg_sender" in findings[0].witness


def test_watch_pcs(args):
    code = assemble("PUSH 0 PUSH 0 LOG0 STOP")

    findings, _ = explore(args, EntryPoint(code, calldata=b""))
    assert kinds(findings) == [NORMAL_RETURN]
    assert len(findings[0].logs) == 1

    findings, _ = explore(args, EntryPoint(code, calldata=b""), watch_pcs="4")
    assert kinds(findings) == [FLAGGED]
    assert findings[0].pc == 4


#
# bounds
#


def test_max_instructions(args, process_and):
    findings, exploration = explore(args, process_and, max_instructions=25)

    # the revert path needs 23 instructions, the event 27
    assert kinds(findings) == [BOUNDED, REVERTED]
    assert "max_instructions" in findings[0].reason
    assert findings[0].steps == 25
    assert exploration.status is RunStatus.INCOMPLETE


def test_max_depth(args, process_short_circuit):
    findings, exploration = explore(args, process_short_circuit, max_depth=1)

    assert kinds(findings) == [REVERTED, BOUNDED, BOUNDED]
    assert all(f.forks <= 2 for f in findings)
    assert exploration.status is RunStatus.INCOMPLETE


LOOP = """
    PUSH 0
    CALLDATALOAD            ; [n]
    PUSH 0                  ; [i, n]
loop:
    DUP2
    DUP2
    LT                      ; [i < n, i, n]
    ISZERO
    PUSH @done
    JUMPI
    PUSH 1
    ADD
    PUSH @loop
    JUMP
done:
    STOP
"""


def test_loop_bound(args):
    entry = EntryPoint(assemble(LOOP), args=(None,))
    findings, exploration = explore(args, entry, loop=2)

    # each direction of the guard may be taken twice; the third time through
    # the loop body is cut off
    assert kinds(findings) == [NORMAL_RETURN, NORMAL_RETURN, NORMAL_RETURN, BOUNDED]
    assert [f.witness["p0"] for f in findings[:3]] == [0, 1, 2]
    assert "loop=2" in findings[3].reason
    assert exploration.status is RunStatus.INCOMPLETE


def test_loop_bound_is_per_path(args):
    entry = EntryPoint(assemble(LOOP), args=(3,))
    findings, exploration = explore(args, entry, loop=2)

    # concrete guards never count against the bound
    assert kinds(findings) == [NORMAL_RETURN]
    assert exploration.status is RunStatus.COMPLETE


def test_max_frontier(args, process_short_circuit):
    findings, exploration = explore(args, process_short_circuit, max_frontier=1)

    # the continuation is the oldest pending state when the frontier overflows
    assert kinds(findings) == [BOUNDED, REVERTED]
    assert "max_frontier" in findings[0].reason
    assert exploration.stats.evicted == 1
    assert exploration.status is RunStatus.INCOMPLETE


def test_max_states(args, process_and):
    findings, exploration = explore(args, process_and, max_states=1)

    assert kinds(findings) == [INCOMPLETE, INCOMPLETE]
    assert all(f.witness is None and not f.confirmed for f in findings)
    assert "max_states" in exploration.stop_reason
    assert exploration.status is RunStatus.INCOMPLETE


def test_max_call_depth(args):
    entry = EntryPoint(
        assemble(CALL_BEEF + "POP STOP"),
        calldata=b"",
        accounts={
            0xBEEF: assemble(
                "PUSH 0 PUSH 0 PUSH 0 PUSH 0 PUSH 0 PUSH 0xc0de GAS CALL STOP"
            ),
            0xC0DE: assemble("STOP"),
        },
    )

    findings, exploration = explore(args, entry, max_call_depth=1)
    assert kinds(findings) == [BOUNDED]
    assert "max_call_depth" in findings[0].reason

    findings, exploration = explore(args, entry, max_call_depth=2)
    assert kinds(findings) == [NORMAL_RETURN]
    assert exploration.status is RunStatus.COMPLETE


#
# calls
#

# call(gas, 0xbeef, 0, 0, 0, 0, 32)
CALL_BEEF = """
    PUSH 32
    PUSH 0
    PUSH 0
    PUSH 0
    PUSH 0
    PUSH 0xbeef
    GAS
    CALL
"""


def test_nested_call_returns_data(args):
    entry = EntryPoint(
        assemble(CALL_BEEF + "POP PUSH 32 PUSH 0 RETURN"),
        calldata=b"",
        accounts={0xBEEF: assemble("PUSH 42 PUSH 0 MSTORE PUSH 32 PUSH 0 RETURN")},
    )

    findings, exploration = explore(args, entry)
    assert kinds(findings) == [NORMAL_RETURN]
    assert findings[0].output == tuple((42).to_bytes(32, "big"))
    assert exploration.status is RunStatus.COMPLETE


def test_failed_delegatecall_rolls_back_storage(args):
    # delegatecall(gas, 0xbeef, 0, 0, 0, 0); return (success, sload(0))
    code = assemble(
        """
        PUSH 0
        PUSH 0
        PUSH 0
        PUSH 0
        PUSH 0xbeef
        GAS
        DELEGATECALL
        PUSH 0
        MSTORE
        PUSH 0
        SLOAD
        PUSH 32
        MSTORE
        PUSH 64
        PUSH 0
        RETURN
        """
    )
    entry = EntryPoint(
        code,
        calldata=b"",
        accounts={0xBEEF: assemble("PUSH 1 PUSH 0 SSTORE PUSH 0 DUP1 REVERT")},
    )

    findings, _ = explore(args, entry)
    assert kinds(findings) == [NORMAL_RETURN]
    assert findings[0].output == (0,) * 64


def test_unknown_call_target_has_symbolic_result(args):
    # if (call(gas, 0x1234, 0, 0, 0, 0, 0)) STOP else REVERT
    code = assemble(
        """
        PUSH 0
        PUSH 0
        PUSH 0
        PUSH 0
        PUSH 0
        PUSH 0x1234
        GAS
        CALL
        PUSH @ok
        JUMPI
        PUSH 0
        DUP1
        REVERT
    ok:
        STOP
        """
    )

    findings, _ = explore(args, EntryPoint(code, calldata=b""))
    assert kinds(findings) == [NORMAL_RETURN, REVERTED]
    assert findings[0].witness["call_success_02"] == 1
    assert findings[1].witness["call_success_02"] == 0


#
# halting
#

PANIC = """
    PUSH 0x4e487b71
    PUSH 0xe0
    SHL
    PUSH 0
    MSTORE
    PUSH {code}
    PUSH 4
    MSTORE
    PUSH 36
    PUSH 0
    REVERT
"""


@pytest.mark.parametrize(
    "code, panic_error_codes, expected",
    [
        (0x01, "0x01", VIOLATED),
        (0x11, "0x01", REVERTED),
        (0x11, "*", VIOLATED),
        (0x32, "0x11,0x32", VIOLATED),
    ],
)
def test_panic(args, code, panic_error_codes, expected):
    entry = EntryPoint(assemble(PANIC.format(code=code)), calldata=b"")
    findings, _ = explore(args, entry, panic_error_codes=panic_error_codes)

    assert kinds(findings) == [expected]
    assert len(findings[0].output) == 36


def test_invalid_opcode_is_a_violation(args):
    findings, _ = explore(args, EntryPoint(assemble("INVALID"), calldata=b""))
    assert kinds(findings) == [VIOLATED]


def test_unsupported_opcode_ends_only_its_path(args):
    code = assemble(
        """
        PUSH 0
        CALLDATALOAD
        PUSH @create
        JUMPI
        STOP
    create:
        PUSH 0
        DUP1
        DUP1
        CREATE
        STOP
        """
    )
    findings, exploration = explore(args, EntryPoint(code, args=(None,)))

    assert kinds(findings) == [UNSUPPORTED, NORMAL_RETURN]
    assert "CREATE" in findings[0].reason
    assert findings[0].witness["p0"] != 0
    assert exploration.status is RunStatus.INCOMPLETE


def test_stack_underflow_reverts(args):
    findings, _ = explore(args, EntryPoint(assemble("ADD"), calldata=b""))
    assert kinds(findings) == [REVERTED]
    assert "StackUnderflowError" in findings[0].reason


def test_symbolic_jump_target_is_unsupported(args):
    code = assemble("PUSH 0 CALLDATALOAD JUMP")
    findings, _ = explore(args, EntryPoint(code, args=(None,)))
    assert kinds(findings) == [UNSUPPORTED]


#
# cancellation and errors
#


def test_cancel_during_iteration(args, process_and):
    exploration = Explorer(args).explore(process_and)
    it = iter(exploration)

    first = next(it)
    assert first.kind is FLAGGED

    exploration.cancel()
    rest = list(it)

    assert kinds(rest) == [INCOMPLETE]
    assert rest[0].reason == "cancelled"
    assert exploration.status is RunStatus.INCOMPLETE
    assert exploration.findings == [first, *rest]


def test_cancel_with_z3_in_the_chain(args):
    entry = EntryPoint(
        assemble(
            """
                PUSH 21
                PUSH 3
                PUSH 4
                CALLDATALOAD
                MUL
                EQ
                PUSH @yes
                JUMPI
                STOP
            yes:
                STOP
            """
        ),
        signature="f(uint256)",
    )
    exploration = Explorer(args.with_overrides(source="test", solver="z3")).explore(entry)
    assert exploration.explorer.solver.name == "ranges+z3"
    it = iter(exploration)

    # only z3 can solve 3 * p0 == 21
    first = next(it)
    assert first.kind is NORMAL_RETURN
    assert first.witness == {"p0": 7}

    exploration.cancel()
    rest = list(it)

    assert kinds(rest) == [INCOMPLETE]
    assert rest[0].reason == "cancelled"
    assert exploration.status is RunStatus.INCOMPLETE


class CancellingSolver(RangeSolver):
    """cancels the exploration from inside the first terminal solve"""

    def __init__(self, timeout):
        self.timeout = timeout
        self.exploration = None

    def check(self, constraints, *, timeout=None):
        if timeout == self.timeout:
            self.exploration.cancel()
            return Unknown("interrupted")
        return super().check(constraints, timeout=timeout)


def test_cancel_during_terminal_solve(args, process_and):
    solver = CancellingSolver(args.solver_timeout_assertion)
    exploration = Explorer(args, solver=solver).explore(process_and)
    solver.exploration = exploration

    findings = list(exploration)

    # the interrupted solve proves nothing, so the path is not reported as flagged
    assert kinds(findings) == [INCOMPLETE, INCOMPLETE]
    assert findings[0].reason == "cancelled"
    assert findings[0].witness is None
    assert not findings[0].confirmed
    assert exploration.stats.kinds[FLAGGED] == 0
    assert exploration.status is RunStatus.INCOMPLETE


def test_cancel_before_iteration(args, process_and):
    exploration = Explorer(args).explore(process_and)
    exploration.cancel()

    assert kinds(exploration) == [INCOMPLETE]
    assert exploration.status is RunStatus.INCOMPLETE


def test_cancel_from_another_thread(args):
    entry = EntryPoint(assemble("start: PUSH @start JUMP"), calldata=b"")
    exploration = Explorer(
        args.with_overrides(source="test", max_instructions=0)
    ).explore(entry)

    threading.Timer(0.2, exploration.cancel).start()
    findings = list(exploration)

    assert kinds(findings) == [INCOMPLETE]
    assert exploration.stats.steps > 0


def test_timeout(args):
    entry = EntryPoint(assemble("start: PUSH @start JUMP"), calldata=b"")
    findings, exploration = explore(args, entry, max_instructions=0, timeout=1)

    assert kinds(findings) == [INCOMPLETE]
    assert findings[0].reason.startswith("timeout")
    assert exploration.status is RunStatus.INCOMPLETE


def test_exploration_is_iterable_once(args, process_and):
    exploration = Explorer(args).explore(process_and)
    list(exploration)

    with pytest.raises(RuntimeError):
        iter(exploration)


def test_findings_are_lazy(args, process_and):
    exploration = Explorer(args).explore(process_and)
    assert exploration.status is RunStatus.PENDING

    it = iter(exploration)
    next(it)
    assert exploration.status is RunStatus.RUNNING
    assert len(exploration.findings) == 1


@pytest.mark.parametrize("code", [b"", b"\x60", "0xzz", "0x6", "0x73__lib__"])
def test_malformed_bytecode(code):
    with pytest.raises(MalformedBytecode):
        EntryPoint(code, calldata=b"")


def test_unavailable_external_solver():
    config = default_config().with_overrides(
        source="test",
        solver="external",
        solver_command="definitely-not-an-smt-solver --in",
    )
    with pytest.raises(SolverUnavailable):
        Explorer(config)
