# SPDX-License-Identifier: AGPL-3.0

from collections.abc import Iterator, Mapping

from symvm.bitvec import ZERO, Word, ite


class Storage:
    """
    Storage of a single account.

    Slots are keyed by their concrete int or by the identity of their
    symbolic key expression. Entries are kept in write order: rewriting a slot
    moves it to the end, so a symbolic read can be answered by an ite chain
    in which later writes take precedence.

    Copies share the slot dict until one of them writes.
    """

    __slots__ = ("_slots", "_shared", "_symbolic_keys")

    def __init__(self, initial: Mapping[int, int] | None = None):
        self._slots: dict = {}
        self._shared = False
        self._symbolic_keys = 0
        for key, value in (initial or {}).items():
            if value:
                self._slots[Word(key).value] = (Word(key), Word(value))

    def copy(self) -> "Storage":
        other = Storage.__new__(Storage)
        other._slots = self._slots
        other._symbolic_keys = self._symbolic_keys
        other._shared = self._shared = True
        return other

    def __len__(self) -> int:
        return len(self._slots)

    def items(self) -> Iterator[tuple[Word, Word]]:
        yield from self._slots.values()

    def load(self, key: Word) -> Word:
        # fast path: no symbolic writes can alias a concrete key
        if key.is_concrete and not self._symbolic_keys:
            entry = self._slots.get(key.value)
            return entry[1] if entry else ZERO

        result = ZERO
        for slot, value in self._slots.values():
            cond = key.eq(slot)
            if cond.is_false:
                continue
            result = ite(cond, value, result)

        return result

    def store(self, key: Word, value: Word) -> None:
        if self._shared:
            self._slots = dict(self._slots)
            self._shared = False

        previous = self._slots.pop(key.value, None)
        if key.is_symbolic and previous is None:
            self._symbolic_keys += 1

        self._slots[key.value] = (key, value)

    def concrete_items(self) -> dict[int, int]:
        """the slots whose key and value are both concrete"""
        return {
            int(k): int(v)
            for k, v in self._slots.values()
            if k.is_concrete and v.is_concrete
        }
