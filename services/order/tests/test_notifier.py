import asyncio
import logging

from order_service.models import Notification, NotificationType
from order_service.notifier import NotificationDispatcher

from conftest import RecordingSender


def _notification(user_id: str = "user-1") -> Notification:
    return Notification(
        user_id=user_id,
        type=NotificationType.ORDER_CONFIRMATION,
        subject="Order Confirmation",
        body="Your order has been received.",
    )


async def test_notifications_are_delivered_in_order(dispatcher, sender):
    for i in range(3):
        assert dispatcher.submit(_notification(f"user-{i}"))
    await dispatcher.drain()

    assert [n.user_id for n in sender.sent] == ["user-0", "user-1", "user-2"]
    assert dispatcher.pending == 0


async def test_send_failure_is_logged_and_worker_keeps_running(dispatcher, sender, caplog):
    caplog.set_level(logging.WARNING)
    sender.fail = True
    dispatcher.submit(_notification())
    await dispatcher.drain()

    sender.fail = False
    dispatcher.submit(_notification("user-2"))
    await dispatcher.drain()

    assert "Failed to send order_confirmation notification" in caplog.text
    assert [n.user_id for n in sender.sent] == ["user-2"]


async def test_full_queue_drops_without_blocking(caplog):
    class BlockingSender(RecordingSender):
        def __init__(self):
            super().__init__()
            self.release = asyncio.Event()

        async def send(self, notification):
            await self.release.wait()
            await super().send(notification)

    sender = BlockingSender()
    dispatcher = NotificationDispatcher(sender, max_queue_size=1)
    caplog.set_level(logging.WARNING)

    assert dispatcher.submit(_notification("a"))
    await asyncio.sleep(0)  # ワーカーが 1 件目を取り出す
    assert dispatcher.submit(_notification("b"))
    assert not dispatcher.submit(_notification("c"))
    assert "Notification queue full" in caplog.text

    sender.release.set()
    await dispatcher.stop()
    assert [n.user_id for n in sender.sent] == ["a", "b"]


async def test_stop_without_start_is_noop(sender):
    dispatcher = NotificationDispatcher(sender)
    await dispatcher.stop()
    await dispatcher.drain()
