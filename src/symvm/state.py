# SPDX-License-Identifier: AGPL-3.0

from collections.abc import Iterator
from dataclasses import dataclass, field

from symvm.bitvec import ONE, ZERO, SymBool, Word
from symvm.constants import MAX_STACK_SIZE
from symvm.contract import Contract, Instruction, mnemonic
from symvm.exceptions import (
    NotConcreteError,
    StackOverflowError,
    StackUnderflowError,
)
from symvm.expr import Expr, ExprArena, Op
from symvm.memory import Byte, Memory
from symvm.storage import Storage

StackItem = Word | SymBool

# (address, pc) of a JUMPI
JumpID = tuple[int, int]


def int_of(x: StackItem, err: str = "expected concrete value but got") -> int:
    """
    Converts a word to an int, raising NotConcreteError if it is symbolic.
    """

    try:
        return int(x)
    except NotConcreteError as e:
        raise NotConcreteError(f"{err}: {x}") from e


class PathCondition:
    """
    Persistent list of boolean constraints. Appending returns a new list that
    shares this one as its prefix, so forked states share their history.
    """

    __slots__ = ("cond", "parent", "length")

    def __init__(self, cond: Expr | None = None, parent: "PathCondition | None" = None):
        self.cond = cond
        self.parent = parent
        self.length = parent.length + 1 if parent is not None else 0

    def append(self, cond: Expr) -> "PathCondition":
        if cond.size != 0:
            raise ValueError(f"path condition must be boolean: {cond}")

        if cond.op is Op.TRUE:
            return self

        return PathCondition(cond, self)

    def conditions(self) -> tuple[Expr, ...]:
        """the constraints in the order they were appended"""
        result = []
        node = self
        while node.parent is not None:
            result.append(node.cond)
            node = node.parent
        result.reverse()
        return tuple(result)

    def __len__(self) -> int:
        return self.length

    def __iter__(self) -> Iterator[Expr]:
        return iter(self.conditions())

    def __str__(self) -> str:
        return "".join(f"\n- {c}" for c in self.conditions()) or "\n- (true)"


EMPTY_PATH = PathCondition()


class State:
    """Operand stack and memory of a single call frame."""

    __slots__ = ("stack", "memory")

    def __init__(self, stack: list[StackItem] | None = None, memory: Memory | None = None):
        self.stack = stack if stack is not None else []
        self.memory = memory if memory is not None else Memory()

    def copy(self) -> "State":
        return State(stack=self.stack.copy(), memory=self.memory.copy())

    def dump(self, print_mem=False) -> str:
        if print_mem:
            return f"Stack: {str(list(reversed(self.stack)))}\n{self.str_memory()}"
        else:
            return f"Stack: {str(list(reversed(self.stack)))}"

    def __str__(self) -> str:
        return self.dump(print_mem=True)

    def str_memory(self) -> str:
        return "Memory:\n" + self.memory.dump() + "\n"

    def push(self, v: StackItem) -> None:
        if len(self.stack) >= MAX_STACK_SIZE:
            raise StackOverflowError()
        self.stack.append(v)

    def pop(self) -> StackItem:
        try:
            return self.stack.pop()
        except IndexError as e:
            raise StackUnderflowError() from e

    def popi(self) -> Word:
        """The stack can contain Words or SymBools -- this function converts SymBools to Words"""

        val = self.pop()
        return val.as_bv() if type(val) is SymBool else val

    def peek(self, n: int = 1) -> StackItem:
        try:
            return self.stack[-n]
        except IndexError as e:
            raise StackUnderflowError() from e

    def dup(self, n: int) -> None:
        try:
            self.push(self.stack[-n])
        except IndexError as e:
            raise StackUnderflowError() from e

    def swap(self, n: int) -> None:
        try:
            stack = self.stack
            stack[-(n + 1)], stack[-1] = stack[-1], stack[-(n + 1)]
        except IndexError as e:
            raise StackUnderflowError() from e

    def mloc(self, what: str = "memory offset") -> int:
        return int_of(self.popi(), f"symbolic {what}")


@dataclass(frozen=True, slots=True)
class Block:
    basefee: Word = ZERO
    chainid: Word = ONE
    coinbase: Word = ZERO
    prevrandao: Word = ZERO
    gaslimit: Word = Word(30_000_000)
    number: Word = ONE
    timestamp: Word = ONE


@dataclass(frozen=True, slots=True, eq=False, order=False)
class EventLog:
    """
    Data record produced during the execution of a transaction.
    """

    address: int
    pc: int
    topics: tuple[Word, ...]
    data: tuple[Byte, ...]


@dataclass(slots=True, eq=False)
class Frame:
    """A call frame: the message being executed and its machine state."""

    contract: Contract
    address: int
    caller: Word
    callvalue: Word
    calldata: list[Byte]
    is_static: bool = False
    st: State = field(default_factory=State)
    pc: int = 0

    # return data of the last call made from this frame
    returndata: list[Byte] = field(default_factory=list)

    # where the caller wants the return data
    ret_offset: int = 0
    ret_size: int = 0

    # storage to restore if this frame reverts
    storage_backup: dict[int, Storage] | None = None

    def copy(self) -> "Frame":
        return Frame(
            contract=self.contract,
            address=self.address,
            caller=self.caller,
            callvalue=self.callvalue,
            calldata=self.calldata,
            is_static=self.is_static,
            st=self.st.copy(),
            pc=self.pc,
            returndata=self.returndata,
            ret_offset=self.ret_offset,
            ret_size=self.ret_size,
            storage_backup=self.storage_backup,
        )

    @property
    def insn(self) -> Instruction:
        return self.contract.decode_instruction(self.pc)


class Exec:  # an execution path
    """
    A single execution state.

    Mutable while it is being stepped, but never shared: fork() gives the
    child private copies of everything it may write (the stack, and
    copy-on-write memory and storage), while immutable parts (code,
    expressions, the path condition prefix) are shared.
    """

    __slots__ = (
        "arena",
        "accounts",
        "storage",
        "block",
        "origin",
        "frames",
        "path",
        "inputs",
        "steps",
        "forks",
        "jumpis",
        "logs",
        "unconfirmed",
        "pending",
        "output",
        "symbol_count",
    )

    def __init__(
        self,
        *,
        arena: ExprArena,
        accounts: dict[int, Contract],
        storage: dict[int, Storage],
        frames: list[Frame],
        block: Block | None = None,
        origin: Word = ZERO,
        path: PathCondition = EMPTY_PATH,
        inputs: tuple[str, ...] = (),
    ) -> None:
        self.arena = arena
        self.accounts = accounts
        self.storage = storage
        self.block = block or Block()
        self.origin = origin
        self.frames = frames
        self.path = path
        # names of the symbols a witness assigns
        self.inputs = inputs
        # instructions executed along this path
        self.steps = 0
        # symbolic JUMPIs forked along this path
        self.forks = 0
        # loop detection, direction taken -> count
        self.jumpis: dict[JumpID, tuple[int, int]] = {}
        self.logs: tuple[EventLog, ...] = ()
        # some admitted branch could not be confirmed by the solver
        self.unconfirmed = False
        # error raised on the next step, e.g. a jump to an invalid target
        self.pending: Exception | None = None
        # return or revert data of the top-level frame
        self.output: list[Byte] = []
        self.symbol_count = 0

    def fork(self) -> "Exec":
        other = Exec.__new__(Exec)
        other.arena = self.arena
        other.accounts = self.accounts
        other.storage = {addr: s.copy() for addr, s in self.storage.items()}
        other.block = self.block
        other.origin = self.origin
        other.frames = [f.copy() for f in self.frames]
        other.path = self.path
        other.inputs = self.inputs
        other.steps = self.steps
        other.forks = self.forks
        other.jumpis = dict(self.jumpis)
        other.logs = self.logs
        other.unconfirmed = self.unconfirmed
        other.pending = self.pending
        other.output = self.output
        other.symbol_count = self.symbol_count
        return other

    def branch(self, cond: SymBool) -> "Exec":
        """a forked copy with cond appended to its path condition"""
        child = self.fork()
        child.constrain(cond)
        child.forks += 1
        return child

    def constrain(self, cond: SymBool) -> None:
        self.path = self.path.append(cond.as_expr(self.arena))

    @property
    def frame(self) -> Frame:
        return self.frames[-1]

    @property
    def st(self) -> State:
        return self.frames[-1].st

    @property
    def pc(self) -> int:
        return self.frames[-1].pc

    @property
    def address(self) -> int:
        return self.frames[-1].address

    @property
    def depth(self) -> int:
        return len(self.frames)

    @property
    def insn(self) -> Instruction:
        return self.frames[-1].insn

    def storage_of(self, address: int) -> Storage:
        if address not in self.storage:
            self.storage[address] = Storage()
        return self.storage[address]

    def jumpid(self) -> JumpID:
        return (self.address, self.pc)

    def new_symbol(self, prefix: str, size: int = 256) -> Expr:
        """a fresh symbol, named deterministically along this path"""
        self.symbol_count += 1
        return self.arena.var(f"{prefix}_{self.symbol_count:02}", size)

    def emit_log(self, log: EventLog) -> None:
        self.logs = self.logs + (log,)

    def __str__(self) -> str:
        return self.dump()

    def dump(self, print_mem=False) -> str:
        frame = self.frame
        return "".join(
            [
                f"PC: {hex(frame.address)} {frame.pc} {mnemonic(frame.insn.opcode)}\n",
                frame.st.dump(print_mem=print_mem),
                f"\nDepth: {self.depth} Steps: {self.steps} Forks: {self.forks}\n",
                f"Path:{self.path}\n",
            ]
        )
