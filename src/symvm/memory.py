# SPDX-License-Identifier: AGPL-3.0

from typing import TypeAlias

from symvm.bitvec import Word
from symvm.constants import MAX_MEMORY_SIZE
from symvm.exceptions import OutOfGasError
from symvm.expr import Expr, ExprArena

# a concrete byte value or an 8-bit expression
Byte: TypeAlias = int | Expr


def byte_expr(arena: ExprArena, b: Byte) -> Expr:
    return arena.const(b, 8) if isinstance(b, int) else b


def bytes_to_word(data: list[Byte], arena: ExprArena) -> Word:
    """big-endian word from up to 32 bytes, zero-padded on the right"""

    data = data + [0] * (32 - len(data))
    if all(isinstance(b, int) for b in data):
        return Word(bytes(data))
    return Word(arena.concat(*(byte_expr(arena, b) for b in data)))


def word_to_bytes(word: Word) -> list[Byte]:
    if word.is_concrete:
        return list(word.to_bytes())

    e = word.expr
    arena = e.arena
    return [arena.extract(255 - 8 * i, 248 - 8 * i, e) for i in range(32)]


def data_to_expr(data: list[Byte], arena: ExprArena) -> Expr:
    return arena.concat(*(byte_expr(arena, b) for b in data))


class Memory:
    """
    Sparse, byte-addressable memory. Unwritten bytes read as zero.

    Copies share the underlying dict until one of them writes, at which point
    the writer takes a private copy.
    """

    __slots__ = ("_bytes", "_shared", "_size")

    def __init__(self):
        self._bytes: dict[int, Byte] = {}
        self._shared = False
        # active size in bytes, always a multiple of 32
        self._size = 0

    def copy(self) -> "Memory":
        other = Memory.__new__(Memory)
        other._bytes = self._bytes
        other._size = self._size
        other._shared = self._shared = True
        return other

    def __len__(self) -> int:
        return self._size

    def _writable(self) -> dict[int, Byte]:
        if self._shared:
            self._bytes = dict(self._bytes)
            self._shared = False
        return self._bytes

    def touch(self, offset: int, size: int) -> None:
        """expands the active memory to cover [offset, offset + size)"""

        if size == 0:
            return

        end = offset + size
        if end > MAX_MEMORY_SIZE:
            raise OutOfGasError(f"memory access beyond {MAX_MEMORY_SIZE}: {end}")

        if end > self._size:
            self._size = (end + 31) // 32 * 32

    def get_byte(self, offset: int) -> Byte:
        return self._bytes.get(offset, 0)

    def set_byte(self, offset: int, value: Byte) -> None:
        self.touch(offset, 1)
        if isinstance(value, int):
            value &= 0xFF
        self._writable()[offset] = value

    def slice(self, offset: int, size: int) -> list[Byte]:
        self.touch(offset, size)
        get = self._bytes.get
        return [get(i, 0) for i in range(offset, offset + size)]

    def set_slice(self, offset: int, data: list[Byte]) -> None:
        if not data:
            return

        self.touch(offset, len(data))
        mem = self._writable()
        for i, b in enumerate(data):
            if b == 0 and isinstance(b, int):
                mem.pop(offset + i, None)
            else:
                mem[offset + i] = b

    def get_word(self, offset: int, arena: ExprArena) -> Word:
        return bytes_to_word(self.slice(offset, 32), arena)

    def set_word(self, offset: int, value: Word) -> None:
        self.set_slice(offset, word_to_bytes(value))

    def dump(self) -> str:
        chunks = []
        for base in range(0, self._size, 32):
            row = [self.get_byte(i) for i in range(base, base + 32)]
            if all(isinstance(b, int) for b in row):
                chunks.append(f"{base:04x}: {bytes(row).hex()}")
            else:
                chunks.append(f"{base:04x}: {row}")
        return "\n".join(chunks)
