# SPDX-License-Identifier: AGPL-3.0

"""
Exceptions raised while decoding and symbolically executing EVM bytecode.

The EVM halting conditions follow the naming of execution-specs'
src/ethereum/<fork>/vm/exceptions.py.
"""


class SymvmException(Exception):
    """
    Base class for all engine errors that are not EVM halting conditions.
    """

    pass


class MalformedBytecode(SymvmException):
    """
    Raised when the input code cannot be decoded at all: invalid hex, empty
    code, a truncated PUSH immediate, unresolved library placeholders, or code
    larger than the size limit. Fatal to the whole exploration.
    """

    pass


class SolverUnavailable(SymvmException):
    """
    Raised before exploration starts when the configured solver back end
    cannot be used. Fatal to the whole exploration.
    """

    pass


class PathEndingException(SymvmException):
    """
    Base class for any exception that should stop the current path exploration.

    Stopping path exploration means stopping not only the current EVM context
    but also its parent contexts if any. The explorer converts these into
    findings; siblings keep running.
    """

    pass


class NotConcreteError(PathEndingException):
    """
    Raised when a value that the engine needs as a concrete integer (a jump
    target, a memory offset, a calldata index, ...) is symbolic.
    """

    pass


class UnsupportedOpcode(PathEndingException):
    def __init__(self, opcode: int, pc: int, mnemonic: str):
        super().__init__(f"unsupported opcode {mnemonic} (0x{opcode:02x}) at pc {pc}")
        self.opcode = opcode
        self.pc = pc
        self.mnemonic = mnemonic


class BoundExceeded(PathEndingException):
    """
    Raised when a path hits one of the configured exploration bounds.
    """

    pass


class SolverTimeout(SymvmException):
    """
    Raised internally when a solver query runs out of time. Surfaced to callers
    as an `Unknown` result, never as an infeasible path.
    """

    pass


class EvmException(Exception):
    """
    Base class for all EVM exceptions.
    """

    pass


class ExceptionalHalt(EvmException):
    """
    Indicates that the EVM has experienced an exceptional halt. This causes
    execution to immediately end with all gas being consumed.
    """

    pass


class StackUnderflowError(ExceptionalHalt):
    """
    Occurs when a pop is executed on an empty stack.
    """

    pass


class StackOverflowError(ExceptionalHalt):
    """
    Occurs when a push is executed on a stack at max capacity.
    """

    pass


class OutOfGasError(ExceptionalHalt):
    """
    Occurs when an operation costs more than the amount of gas left in the
    frame. Raised here for memory expansion past the supported size.
    """

    pass


class InvalidJumpDestError(ExceptionalHalt):
    """
    Occurs when the destination of a jump operation doesn't meet any of the
    following criteria:

      * The jump destination is less than the length of the code.
      * The jump destination should have the `JUMPDEST` opcode (0x5B).
      * The jump destination shouldn't be part of the data corresponding to
        `PUSH-N` opcodes.
    """

    pass


class WriteInStaticContext(ExceptionalHalt):
    """
    Raised when an attempt is made to modify the state while operating inside
    of a STATICCALL context.
    """

    pass


class OutOfBoundsRead(ExceptionalHalt):
    """
    Raised when an attempt was made to read data beyond the
    boundaries of the buffer.
    """

    pass
