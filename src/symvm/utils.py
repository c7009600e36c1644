# SPDX-License-Identifier: AGPL-3.0

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from eth_hash.auto import keccak


class CancellationToken:
    """
    Cooperative cancellation flag, safe to set from any thread.

    Callbacks registered with on_cancel() run when cancel() is called, which
    is how in-flight solver calls get interrupted.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)

        for callback in callbacks:
            callback()

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        with self._lock:
            self._callbacks.append(callback)
            fire = self._event.is_set()

        if fire:
            callback()

        try:
            yield
        finally:
            with self._lock:
                self._callbacks.remove(callback)


def event_topic(signature: str) -> int:
    """topic0 of an event: keccak256 of its signature, e.g. "Bug(uint256)" """
    return int.from_bytes(keccak(signature.encode()), "big")


def selector(signature: str) -> bytes:
    """first 4 bytes of keccak256 of a function signature"""
    return keccak(signature.encode())[:4]


def hexify(x: int, width: int = 64) -> str:
    return f"0x{x:0{width}x}"
