"""Tests for notification fan-out."""

import asyncio
import logging

import pytest

from kvchat.router import NotificationRouter


class TestNotificationRouter:
    """Fan-out, isolation and unsubscribe semantics."""

    def test_every_handler_receives_every_item_in_order(self) -> None:
        router: NotificationRouter[int] = NotificationRouter()
        first: list[int] = []
        second: list[int] = []
        router.subscribe(first.append)
        router.subscribe(second.append)

        for i in range(5):
            router.dispatch(i)

        assert first == [0, 1, 2, 3, 4]
        assert second == [0, 1, 2, 3, 4]

    def test_failing_handler_does_not_stop_fan_out(self, caplog) -> None:
        router: NotificationRouter[str] = NotificationRouter("test")
        received: list[str] = []

        def broken(item: str) -> None:
            raise RuntimeError("boom")

        router.subscribe(broken)
        router.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="kvchat.router"):
            invoked = router.dispatch("hello")

        assert invoked == 2
        assert received == ["hello"]
        assert "Error in test handler" in caplog.text

    def test_unsubscribe_removes_exactly_that_registration(self) -> None:
        router: NotificationRouter[int] = NotificationRouter()
        received: list[int] = []
        unsubscribe_a = router.subscribe(received.append)
        router.subscribe(received.append)

        unsubscribe_a()
        unsubscribe_a()
        router.dispatch(1)

        assert received == [1]
        assert len(router) == 1

    def test_handler_removed_during_dispatch_is_skipped(self) -> None:
        router: NotificationRouter[int] = NotificationRouter()
        late: list[int] = []
        unsubscribe_late = None

        def early(item: int) -> None:
            unsubscribe_late()

        router.subscribe(early)
        unsubscribe_late = router.subscribe(late.append)

        assert router.dispatch(1) == 1
        assert late == []

    def test_handler_added_during_dispatch_waits_for_next(self) -> None:
        router: NotificationRouter[int] = NotificationRouter()
        late: list[int] = []

        def early(item: int) -> None:
            router.subscribe(late.append)

        router.subscribe(early)
        router.dispatch(1)
        assert late == []

    def test_clear(self) -> None:
        router: NotificationRouter[int] = NotificationRouter()
        router.subscribe(lambda item: None)
        router.clear()
        assert router.dispatch(1) == 0


@pytest.mark.asyncio
class TestAsyncHandlers:
    """Coroutine handlers are scheduled and their failures logged."""

    async def test_coroutine_handler_runs(self) -> None:
        router: NotificationRouter[int] = NotificationRouter()
        received: list[int] = []

        async def handler(item: int) -> None:
            await asyncio.sleep(0)
            received.append(item)

        router.subscribe(handler)
        router.dispatch(1)
        router.dispatch(2)
        await router.drain()

        assert received == [1, 2]

    async def test_coroutine_failure_is_logged(self, caplog) -> None:
        router: NotificationRouter[int] = NotificationRouter("async")

        async def handler(item: int) -> None:
            raise ValueError("bad")

        router.subscribe(handler)
        with caplog.at_level(logging.ERROR, logger="kvchat.router"):
            router.dispatch(1)
            await router.drain()
            await asyncio.sleep(0)

        assert "Error in async async handler" in caplog.text
