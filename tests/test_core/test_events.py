"""
Tests for piggyflow.core.events
================================

EventEmitter is shared by all three orchestration components, so these
tests pin down its delivery guarantees:
    - Listeners run synchronously, in registration order
    - once() listeners detach after their first call
    - A raising listener never stops delivery to the others
"""

from piggyflow.core.events import EventEmitter


class TestEventEmitter:

    def test_emit_delivers_arguments_in_order(self) -> None:
        emitter = EventEmitter()
        calls = []
        emitter.on("status:changed", lambda data: calls.append(("first", data)))
        emitter.on("status:changed", lambda data: calls.append(("second", data)))

        delivered = emitter.emit("status:changed", {"current": "running"})

        assert delivered is True
        assert calls == [
            ("first", {"current": "running"}),
            ("second", {"current": "running"}),
        ]

    def test_emit_without_listeners_returns_false(self) -> None:
        assert EventEmitter().emit("nothing") is False

    def test_once_fires_a_single_time(self) -> None:
        emitter = EventEmitter()
        calls = []
        emitter.once("tick", calls.append)

        emitter.emit("tick", 1)
        emitter.emit("tick", 2)

        assert calls == [1]
        assert emitter.listener_count("tick") == 0

    def test_once_wrapper_can_be_removed_early(self) -> None:
        emitter = EventEmitter()
        calls = []
        wrapper = emitter.once("tick", calls.append)

        assert emitter.off("tick", wrapper) is True
        emitter.emit("tick", 1)
        assert calls == []

    def test_off_unknown_listener(self) -> None:
        emitter = EventEmitter()
        assert emitter.off("tick", print) is False

    def test_raising_listener_does_not_block_others(self) -> None:
        emitter = EventEmitter()
        calls = []

        def broken(_):
            raise RuntimeError("listener bug")

        emitter.on("tick", broken)
        emitter.on("tick", calls.append)

        assert emitter.emit("tick", "payload") is True
        assert calls == ["payload"]

    def test_remove_all_listeners(self) -> None:
        emitter = EventEmitter()
        emitter.on("a", print)
        emitter.on("b", print)

        emitter.remove_all_listeners("a")
        assert emitter.listener_count("a") == 0
        assert emitter.listener_count("b") == 1

        emitter.remove_all_listeners()
        assert emitter.listener_count("b") == 0
