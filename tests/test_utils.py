import threading

import pytest

from symvm.utils import CancellationToken, event_topic, hexify, selector


def test_selector():
    assert selector("transfer(address,uint256)").hex() == "a9059cbb"


def test_event_topic():
    topic = event_topic("Transfer(address,address,uint256)")
    assert hexify(topic) == (
        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    )


@pytest.mark.parametrize(
    "value,width,expected",
    [
        (0, 2, "0x00"),
        (0xBEEF, 40, "0x000000000000000000000000000000000000beef"),
        (1, 64, "0x" + "0" * 63 + "1"),
    ],
)
def test_hexify(value, width, expected):
    assert hexify(value, width) == expected


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled

    token.cancel()
    assert token.cancelled

    # cancelling twice is harmless
    token.cancel()
    assert token.cancelled


def test_on_cancel_callback():
    token = CancellationToken()
    calls = []

    with token.on_cancel(lambda: calls.append(1)):
        assert calls == []
        token.cancel()
        token.cancel()

    assert calls == [1]


def test_on_cancel_after_cancel_fires_immediately():
    token = CancellationToken()
    token.cancel()

    calls = []
    with token.on_cancel(lambda: calls.append(1)):
        assert calls == [1]


def test_on_cancel_unregisters():
    token = CancellationToken()
    calls = []

    with token.on_cancel(lambda: calls.append(1)):
        pass

    token.cancel()
    assert calls == []


def test_cancel_from_another_thread():
    token = CancellationToken()
    fired = threading.Event()

    with token.on_cancel(fired.set):
        thread = threading.Thread(target=token.cancel)
        thread.start()
        thread.join()

    assert fired.is_set()
    assert token.cancelled
