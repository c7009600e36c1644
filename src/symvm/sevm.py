# SPDX-License-Identifier: AGPL-3.0

from dataclasses import dataclass
from enum import Enum
from typing import assert_never

from eth_hash.auto import keccak

from symvm.bitvec import ONE, ZERO, SymBool, Word
from symvm.constants import MAX_CALL_DEPTH, PANIC_SELECTOR
from symvm.contract import (
    OP_ADD,
    OP_ADDMOD,
    OP_ADDRESS,
    OP_AND,
    OP_BALANCE,
    OP_BASEFEE,
    OP_BLOCKHASH,
    OP_BYTE,
    OP_CALL,
    OP_CALLDATACOPY,
    OP_CALLDATALOAD,
    OP_CALLDATASIZE,
    OP_CALLER,
    OP_CALLVALUE,
    OP_CHAINID,
    OP_CODECOPY,
    OP_CODESIZE,
    OP_COINBASE,
    OP_DELEGATECALL,
    OP_DIV,
    OP_DUP1,
    OP_DUP16,
    OP_EQ,
    OP_EXP,
    OP_EXTCODECOPY,
    OP_EXTCODESIZE,
    OP_GAS,
    OP_GASLIMIT,
    OP_GASPRICE,
    OP_GT,
    OP_INVALID,
    OP_ISZERO,
    OP_JUMPDEST,
    OP_LOG0,
    OP_LT,
    OP_MCOPY,
    OP_MLOAD,
    OP_MOD,
    OP_MSIZE,
    OP_MSTORE,
    OP_MSTORE8,
    OP_MUL,
    OP_MULMOD,
    OP_NOT,
    OP_NUMBER,
    OP_OR,
    OP_ORIGIN,
    OP_PC,
    OP_POP,
    OP_PREVRANDAO,
    OP_PUSH0,
    OP_PUSH32,
    OP_RETURN,
    OP_RETURNDATACOPY,
    OP_RETURNDATASIZE,
    OP_REVERT,
    OP_SAR,
    OP_SDIV,
    OP_SELFBALANCE,
    OP_SGT,
    OP_SHL,
    OP_SHR,
    OP_SIGNEXTEND,
    OP_SLOAD,
    OP_SLT,
    OP_SMOD,
    OP_SSTORE,
    OP_STATICCALL,
    OP_STOP,
    OP_SUB,
    OP_SWAP1,
    OP_SWAP16,
    OP_TIMESTAMP,
    OP_XOR,
    Instruction,
    InsnKind,
    mnemonic,
)
from symvm.exceptions import (
    BoundExceeded,
    ExceptionalHalt,
    InvalidJumpDestError,
    NotConcreteError,
    OutOfBoundsRead,
    UnsupportedOpcode,
    WriteInStaticContext,
)
from symvm.logs import LOOP_BOUND, UNSUPPORTED_OPCODE, debug, debug_once, warn_code
from symvm.memory import Byte, bytes_to_word, data_to_expr
from symvm.state import EventLog, Exec, Frame, StackItem, int_of
from symvm.utils import CancellationToken, event_topic

ADDRESS_MASK = (1 << 160) - 1


class FindingKind(Enum):
    REVERTED = "reverted"
    NORMAL_RETURN = "normal-return"
    FLAGGED_EVENT = "flagged-event-reached"
    INVARIANT_VIOLATED = "invariant-violated"
    BOUNDED_ABORT = "bounded-abort"
    UNSUPPORTED = "unsupported"
    INCOMPLETE = "incomplete"

    def __str__(self) -> str:
        return self.value


# kinds that make the whole run incomplete
INCOMPLETE_KINDS = frozenset(
    {FindingKind.BOUNDED_ABORT, FindingKind.UNSUPPORTED, FindingKind.INCOMPLETE}
)


@dataclass(frozen=True, slots=True)
class Running:
    """the state executed one instruction and can keep going"""


@dataclass(frozen=True, slots=True)
class Branched:
    """a symbolic JUMPI forked the state; children[0] took the jump"""

    children: tuple[Exec, ...]


@dataclass(frozen=True, slots=True)
class Terminal:
    ex: Exec
    kind: FindingKind
    reason: str = ""


StepResult = Running | Branched | Terminal

RUNNING = Running()


def panic_code(data: list[Byte]) -> int | None:
    """the error code of a concrete Panic(uint256) revert payload"""

    if len(data) != 36 or not all(isinstance(b, int) for b in data):
        return None

    if bytes(data[:4]) != PANIC_SELECTOR:
        return None

    return int.from_bytes(bytes(data[4:]), "big")


def parse_topic(topic: str) -> int:
    """a raw 32-byte hex topic, or keccak256 of an event signature"""

    topic = topic.strip()
    if topic.startswith("0x") and len(topic) == 66:
        return int(topic, 16)
    return event_topic(topic)


class SEVM:
    """
    Symbolic EVM interpreter. Stateless apart from its options, so a single
    instance can step any number of independent states.
    """

    def __init__(self, options) -> None:
        self.options = options
        self.max_instructions: int = options.max_instructions
        self.max_call_depth: int = options.max_call_depth
        self.loop: int = options.loop
        self.print_steps: bool = options.print_steps

        self.watched_topics: dict[int, str] = {
            parse_topic(sig): sig for sig in options.watch_events
        }
        self.watched_pcs: frozenset[int] = frozenset(options.watch_pcs)

        # empty means any panic code
        self.panic_codes: frozenset[int] = frozenset(options.panic_error_codes)

    #
    # main loop
    #

    def run(self, ex: Exec, token: CancellationToken | None = None) -> StepResult:
        """steps ex until it branches or terminates"""

        # checked before the first step and after every step that keeps running
        while token is None or not token.cancelled:
            result = self.step(ex)

            if result is not RUNNING:
                return result

        return Terminal(ex, FindingKind.INCOMPLETE, "cancelled")

    def step(self, ex: Exec) -> StepResult:
        """executes exactly one instruction"""

        if self.max_instructions and ex.steps >= self.max_instructions:
            return Terminal(
                ex,
                FindingKind.BOUNDED_ABORT,
                f"instruction bound reached (max_instructions={self.max_instructions})",
            )

        frame = ex.frame
        insn = frame.insn

        try:
            if ex.pending is not None:
                err, ex.pending = ex.pending, None
                raise err

            ex.steps += 1

            if self.print_steps:
                print(ex.dump())

            match insn.kind:
                case InsnKind.STACK:
                    self.stack_op(ex, insn)

                case InsnKind.ARITH:
                    self.arith(ex, insn.opcode)

                case InsnKind.COMPARE:
                    self.compare(ex, insn.opcode)

                case InsnKind.BITWISE:
                    self.bitwise(ex, insn.opcode)

                case InsnKind.SHA3:
                    self.sha3(ex)

                case InsnKind.ENV:
                    self.env(ex, insn)

                case InsnKind.MEMORY:
                    self.memory_op(ex, insn.opcode)

                case InsnKind.STORAGE:
                    self.storage_op(ex, insn.opcode)

                case InsnKind.JUMP:
                    self.jump(ex)
                    return RUNNING

                case InsnKind.JUMPI:
                    return self.jumpi(ex, insn)

                case InsnKind.LOG:
                    if (flagged := self.log(ex, insn)) is not None:
                        return flagged

                case InsnKind.CALL:
                    return self.call(ex, insn)

                case InsnKind.HALT:
                    return self.halt(ex, insn)

                case InsnKind.UNSUPPORTED:
                    raise UnsupportedOpcode(insn.opcode, insn.pc, mnemonic(insn.opcode))

                case _:
                    assert_never(insn.kind)

        except ExceptionalHalt as err:
            return self.exceptional_halt(ex, err)

        except UnsupportedOpcode as err:
            warn_code(UNSUPPORTED_OPCODE, str(err), allow_duplicate=False)
            return Terminal(ex, FindingKind.UNSUPPORTED, str(err))

        except NotConcreteError as err:
            debug(f"{hex(ex.address)} pc={insn.pc} {insn}: {err}")
            return Terminal(ex, FindingKind.UNSUPPORTED, str(err))

        except BoundExceeded as err:
            return Terminal(ex, FindingKind.BOUNDED_ABORT, str(err))

        frame.pc = insn.next_pc
        return RUNNING

    #
    # instruction handlers
    #

    def stack_op(self, ex: Exec, insn: Instruction) -> None:
        opcode = insn.opcode
        st = ex.st

        if OP_PUSH0 <= opcode <= OP_PUSH32:
            st.push(insn.operand)

        elif OP_DUP1 <= opcode <= OP_DUP16:
            st.dup(opcode - OP_DUP1 + 1)

        elif OP_SWAP1 <= opcode <= OP_SWAP16:
            st.swap(opcode - OP_SWAP1 + 1)

        elif opcode == OP_POP:
            st.pop()

        elif opcode == OP_JUMPDEST:
            pass

        else:
            raise ValueError(opcode)

    def arith(self, ex: Exec, op: int) -> None:
        st = ex.st
        w1 = st.popi()
        w2 = st.popi()

        if op == OP_ADD:
            result = w1.add(w2)
        elif op == OP_SUB:
            result = w1.sub(w2)
        elif op == OP_MUL:
            result = w1.mul(w2)
        elif op == OP_DIV:
            result = w1.div(w2)
        elif op == OP_SDIV:
            result = w1.sdiv(w2)
        elif op == OP_MOD:
            result = w1.mod(w2)
        elif op == OP_SMOD:
            result = w1.smod(w2)
        elif op == OP_EXP:
            result = w1.exp(w2)
        elif op == OP_ADDMOD:
            result = w1.addmod(w2, st.popi())
        elif op == OP_MULMOD:
            result = w1.mulmod(w2, st.popi())
        elif op == OP_SIGNEXTEND:
            # w1 is the byte index, w2 the value
            result = w2.signextend(w1)
        else:
            raise ValueError(op)

        st.push(result)

    def compare(self, ex: Exec, op: int) -> None:
        st = ex.st

        if op == OP_ISZERO:
            st.push(st.pop().is_zero())
            return

        if op == OP_EQ:
            w1, w2 = st.pop(), st.pop()
            if type(w1) is SymBool and type(w2) is SymBool:
                st.push(w1.eq(w2))
            else:
                st.push(Word(w1).eq(Word(w2)))
            return

        w1 = st.popi()
        w2 = st.popi()

        if op == OP_LT:
            st.push(w1.ult(w2))  # bvult
        elif op == OP_GT:
            st.push(w1.ugt(w2))  # bvugt
        elif op == OP_SLT:
            st.push(w1.slt(w2))  # bvslt
        elif op == OP_SGT:
            st.push(w1.sgt(w2))  # bvsgt
        else:
            raise ValueError(op)

    def bitwise(self, ex: Exec, op: int) -> None:
        st = ex.st

        if op in (OP_AND, OP_OR, OP_XOR):
            st.push(bitwise(op, st.pop(), st.pop()))
            return

        if op == OP_NOT:
            st.push(st.popi().bitwise_not())
            return

        w1 = st.popi()
        w2 = st.popi()

        if op == OP_BYTE:
            st.push(w2.byte(w1))
        elif op == OP_SHL:
            st.push(w2.lshl(w1))
        elif op == OP_SHR:
            st.push(w2.lshr(w1))
        elif op == OP_SAR:
            st.push(w2.ashr(w1))
        else:
            raise ValueError(op)

    def sha3(self, ex: Exec) -> None:
        st = ex.st
        offset = st.mloc("SHA3 offset")
        size = st.mloc("SHA3 size")
        data = st.memory.slice(offset, size)

        if all(isinstance(b, int) for b in data):
            st.push(Word(keccak(bytes(data))))
            return

        arena = ex.arena
        st.push(Word(arena.sha3(data_to_expr(data, arena))))

    def env(self, ex: Exec, insn: Instruction) -> None:
        op = insn.opcode
        frame = ex.frame
        st = frame.st
        block = ex.block

        if op == OP_ADDRESS:
            st.push(Word(frame.address))
        elif op == OP_CALLER:
            st.push(frame.caller)
        elif op == OP_CALLVALUE:
            st.push(frame.callvalue)
        elif op == OP_ORIGIN:
            st.push(ex.origin)
        elif op == OP_CALLDATALOAD:
            offset = st.mloc("CALLDATALOAD offset")
            st.push(bytes_to_word(frame.calldata[offset : offset + 32], ex.arena))
        elif op == OP_CALLDATASIZE:
            st.push(Word(len(frame.calldata)))
        elif op == OP_CALLDATACOPY:
            dst, offset, size = copy_args(ex, "CALLDATACOPY")
            chunk = frame.calldata[offset : offset + size]
            st.memory.set_slice(dst, chunk + [0] * (size - len(chunk)))
        elif op == OP_CODESIZE:
            st.push(Word(len(frame.contract)))
        elif op == OP_CODECOPY:
            dst, offset, size = copy_args(ex, "CODECOPY")
            st.memory.set_slice(dst, frame.contract.slice(offset, size))
        elif op == OP_EXTCODESIZE:
            target = self.account_of(ex, st.popi(), "EXTCODESIZE")
            code = ex.accounts.get(target)
            st.push(Word(len(code) if code is not None else 0))
        elif op == OP_EXTCODECOPY:
            target = self.account_of(ex, st.popi(), "EXTCODECOPY")
            dst, offset, size = copy_args(ex, "EXTCODECOPY")
            code = ex.accounts.get(target)
            data = code.slice(offset, size) if code is not None else [0] * size
            st.memory.set_slice(dst, data)
        elif op == OP_RETURNDATASIZE:
            st.push(Word(len(frame.returndata)))
        elif op == OP_RETURNDATACOPY:
            dst, offset, size = copy_args(ex, "RETURNDATACOPY")
            if offset + size > len(frame.returndata):
                raise OutOfBoundsRead(
                    f"RETURNDATACOPY {offset=} {size=} > {len(frame.returndata)}"
                )
            st.memory.set_slice(dst, frame.returndata[offset : offset + size])
        elif op == OP_BALANCE:
            st.push(self.balance_of(ex, st.popi()))
        elif op == OP_SELFBALANCE:
            st.push(self.balance_of(ex, Word(frame.address)))
        elif op == OP_GASPRICE:
            st.push(Word(ex.arena.var("tx_gasprice")))
        elif op == OP_BLOCKHASH:
            st.popi()
            st.push(Word(ex.new_symbol("blockhash")))
        elif op == OP_COINBASE:
            st.push(block.coinbase)
        elif op == OP_TIMESTAMP:
            st.push(block.timestamp)
        elif op == OP_NUMBER:
            st.push(block.number)
        elif op == OP_PREVRANDAO:
            st.push(block.prevrandao)
        elif op == OP_GASLIMIT:
            st.push(block.gaslimit)
        elif op == OP_CHAINID:
            st.push(block.chainid)
        elif op == OP_BASEFEE:
            st.push(block.basefee)
        elif op == OP_PC:
            st.push(Word(insn.pc))
        elif op == OP_GAS:
            st.push(Word(ex.new_symbol("gas")))
        else:
            raise ValueError(op)

    def account_of(self, ex: Exec, address: Word, what: str) -> int:
        return int_of(address, f"symbolic {what} address") & ADDRESS_MASK

    def balance_of(self, ex: Exec, address: Word) -> Word:
        # one symbol per concrete account, so repeated reads agree
        if address.is_concrete:
            addr = int(address) & ADDRESS_MASK
            return Word(ex.arena.var(f"balance_{addr:040x}"))

        return Word(ex.new_symbol("balance"))

    def memory_op(self, ex: Exec, op: int) -> None:
        st = ex.st
        memory = st.memory

        if op == OP_MLOAD:
            offset = st.mloc()
            st.push(memory.get_word(offset, ex.arena))

        elif op == OP_MSTORE:
            offset = st.mloc()
            memory.set_word(offset, st.popi())

        elif op == OP_MSTORE8:
            offset = st.mloc()
            value = st.popi()
            if value.is_concrete:
                memory.set_byte(offset, int(value) & 0xFF)
            else:
                memory.set_byte(offset, ex.arena.extract(7, 0, value.expr))

        elif op == OP_MSIZE:
            st.push(Word(len(memory)))

        elif op == OP_MCOPY:
            dst = st.mloc("MCOPY destination")
            src = st.mloc("MCOPY source")
            size = st.mloc("MCOPY size")
            if size:
                memory.touch(dst, size)
                memory.set_slice(dst, memory.slice(src, size))

        else:
            raise ValueError(op)

    def storage_op(self, ex: Exec, op: int) -> None:
        st = ex.st
        storage = ex.storage_of(ex.address)

        if op == OP_SLOAD:
            st.push(storage.load(st.popi()))

        elif op == OP_SSTORE:
            if ex.frame.is_static:
                raise WriteInStaticContext(f"SSTORE in static call at pc={ex.pc}")
            slot = st.popi()
            storage.store(slot, st.popi())

        else:
            raise ValueError(op)

    def jump(self, ex: Exec) -> None:
        frame = ex.frame
        target = int_of(frame.st.popi(), "symbolic JUMP target")

        if target not in frame.contract.valid_jumpdests():
            raise InvalidJumpDestError(f"Invalid jump destination: 0x{target:X}")

        frame.pc = target

    def jumpi(self, ex: Exec, insn: Instruction) -> StepResult:
        frame = ex.frame
        st = frame.st

        target = int_of(st.popi(), "symbolic JUMPI target")
        cond = SymBool(st.pop())
        valid = target in frame.contract.valid_jumpdests()

        if cond.is_true:
            if not valid:
                raise InvalidJumpDestError(f"Invalid jump destination: 0x{target:X}")
            frame.pc = target
            return RUNNING

        if cond.is_false:
            frame.pc = insn.next_pc
            return RUNNING

        # symbolic guard: one child per direction, the guard is never split
        jid = ex.jumpid()
        taken, not_taken = ex.jumpis.get(jid, (0, 0))

        ex_true = ex.branch(cond)
        ex_true.frame.pc = target
        ex_true.jumpis[jid] = (taken + 1, not_taken)

        ex_false = ex
        ex_false.constrain(cond.is_zero())
        ex_false.forks += 1
        ex_false.frame.pc = insn.next_pc
        ex_false.jumpis[jid] = (taken, not_taken + 1)

        if not valid:
            ex_true.pending = InvalidJumpDestError(
                f"Invalid jump destination: 0x{target:X}"
            )

        for child, count in ((ex_true, taken + 1), (ex_false, not_taken + 1)):
            if self.loop and count > self.loop and child.pending is None:
                msg = f"loop bound reached at {hex(jid[0])}:{jid[1]} (loop={self.loop})"
                warn_code(LOOP_BOUND, msg, allow_duplicate=False)
                child.pending = BoundExceeded(msg)

        return Branched((ex_true, ex_false))

    def log(self, ex: Exec, insn: Instruction) -> Terminal | None:
        frame = ex.frame
        st = frame.st

        if frame.is_static:
            raise WriteInStaticContext(f"LOG in static call at pc={insn.pc}")

        num_topics = insn.opcode - OP_LOG0
        offset = st.mloc("LOG data offset")
        size = st.mloc("LOG data size")
        topics = tuple(st.popi() for _ in range(num_topics))
        data = tuple(st.memory.slice(offset, size))

        ex.emit_log(EventLog(frame.address, insn.pc, topics, data))

        if insn.pc in self.watched_pcs:
            return Terminal(ex, FindingKind.FLAGGED_EVENT, f"watched pc {insn.pc}")

        if topics and topics[0].is_concrete:
            signature = self.watched_topics.get(int(topics[0]))
            if signature is not None:
                return Terminal(ex, FindingKind.FLAGGED_EVENT, f"event {signature}")

        return None

    def call(self, ex: Exec, insn: Instruction) -> StepResult:
        op = insn.opcode
        frame = ex.frame
        st = frame.st

        st.popi()  # gas, not modeled
        to = st.popi()
        value = st.popi() if op == OP_CALL else ZERO

        arg_offset = st.mloc("call argument offset")
        arg_size = st.mloc("call argument size")
        ret_offset = st.mloc("call return offset")
        ret_size = st.mloc("call return size")

        calldata = st.memory.slice(arg_offset, arg_size)
        st.memory.touch(ret_offset, ret_size)

        if frame.is_static and value.is_concrete and int(value) != 0:
            raise WriteInStaticContext(f"CALL with value in static call at pc={insn.pc}")

        frame.pc = insn.next_pc
        frame.returndata = []

        target = int(to) & ADDRESS_MASK if to.is_concrete else None

        if target is None or target not in ex.accounts:
            debug_once(f"call to unknown target {to}, result is symbolic")
            st.push(SymBool(ex.new_symbol("call_success", 0)))
            return RUNNING

        if ex.depth > MAX_CALL_DEPTH:
            st.push(ZERO)
            return RUNNING

        if self.max_call_depth and ex.depth > self.max_call_depth:
            raise BoundExceeded(
                f"call depth bound reached (max_call_depth={self.max_call_depth})"
            )

        if op == OP_DELEGATECALL:
            address, caller, callvalue = frame.address, frame.caller, frame.callvalue
            is_static = frame.is_static
        elif op == OP_STATICCALL:
            address, caller, callvalue = target, Word(frame.address), ZERO
            is_static = True
        else:
            address, caller, callvalue = target, Word(frame.address), value
            is_static = frame.is_static

        ex.frames.append(
            Frame(
                contract=ex.accounts[target],
                address=address,
                caller=caller,
                callvalue=callvalue,
                calldata=calldata,
                is_static=is_static,
                ret_offset=ret_offset,
                ret_size=ret_size,
                storage_backup={a: s.copy() for a, s in ex.storage.items()},
            )
        )
        return RUNNING

    def halt(self, ex: Exec, insn: Instruction) -> StepResult:
        op = insn.opcode
        st = ex.st

        if op == OP_INVALID:
            ex.output = []
            return Terminal(
                ex,
                FindingKind.INVARIANT_VIOLATED,
                f"INVALID opcode at {hex(ex.address)}:{insn.pc}",
            )

        if op == OP_STOP:
            data = []
        else:
            offset = st.mloc("return data offset")
            size = st.mloc("return data size")
            data = st.memory.slice(offset, size)

        success = op != OP_REVERT

        if ex.depth > 1:
            return self.return_to_caller(ex, data, success)

        ex.output = data

        if op == OP_RETURN:
            return Terminal(ex, FindingKind.NORMAL_RETURN, "RETURN")

        if op == OP_STOP:
            return Terminal(ex, FindingKind.NORMAL_RETURN, "STOP")

        code = panic_code(data)
        if code is not None and (not self.panic_codes or code in self.panic_codes):
            return Terminal(ex, FindingKind.INVARIANT_VIOLATED, f"Panic(0x{code:02x})")

        return Terminal(ex, FindingKind.REVERTED, "REVERT")

    def exceptional_halt(self, ex: Exec, err: ExceptionalHalt) -> StepResult:
        reason = f"{type(err).__name__}: {err}" if str(err) else type(err).__name__

        if ex.depth > 1:
            debug(f"nested call halted exceptionally: {reason}")
            return self.return_to_caller(ex, [], success=False)

        ex.output = []
        return Terminal(ex, FindingKind.REVERTED, reason)

    def return_to_caller(self, ex: Exec, data: list[Byte], success: bool) -> StepResult:
        callee = ex.frames.pop()

        # state changes of a failed call are discarded; the backup may be
        # shared with forked siblings, so it is restored by copy
        if not success and callee.storage_backup is not None:
            ex.storage = {a: s.copy() for a, s in callee.storage_backup.items()}

        caller = ex.frame
        n = min(callee.ret_size, len(data))
        caller.st.memory.set_slice(callee.ret_offset, data[:n])
        caller.returndata = data
        caller.st.push(ONE if success else ZERO)
        return RUNNING


def copy_args(ex: Exec, what: str) -> tuple[int, int, int]:
    """(memory destination, source offset, size) of a *COPY instruction"""
    st = ex.st
    dst = st.mloc(f"{what} destination")
    offset = st.mloc(f"{what} offset")
    size = st.mloc(f"{what} size")
    st.memory.touch(dst, size)
    return dst, offset, size


def bitwise(op: int, x: StackItem, y: StackItem) -> StackItem:
    if type(x) is not type(y):
        return bitwise(op, Word(x), Word(y))

    # at this point, we expect x and y to be both SymBool or both Word
    if op == OP_AND:
        return x.bitwise_and(y)
    elif op == OP_OR:
        return x.bitwise_or(y)
    elif op == OP_XOR:
        return x.bitwise_xor(y)
    else:
        raise ValueError(op, x, y)
