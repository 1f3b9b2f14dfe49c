"""
Order Service - 通知ディスパッチャ

通知はキューに積むだけで、送信結果を待たない (fire-and-forget)。
バックグラウンドのワーカータスクが 1 件ずつ NotificationSender に渡す。

通知の失敗は呼び出し側からは観測できない。これは契約上の仕様であり、
送信の失敗やキューあふれはログにのみ残る。
"""

import asyncio
import logging

from .contracts import NotificationSender
from .models import Notification

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(self, sender: NotificationSender, max_queue_size: int = 1000) -> None:
        self._sender = sender
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")

    def submit(self, notification: Notification) -> bool:
        """通知をキューに積む。キューが満杯なら破棄して False を返す。"""
        self.start()
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.warning(
                "Notification queue full, dropping %s",
                notification.type.value,
                extra={"user_id": notification.user_id},
            )
            return False
        return True

    async def drain(self) -> None:
        """積まれている通知がすべて処理されるまで待つ。"""
        if self._worker is None:
            return
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self.drain()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._sender.send(notification)
                logger.debug(
                    "Notification sent: %s",
                    notification.type.value,
                    extra={"user_id": notification.user_id},
                )
            except Exception:
                logger.warning(
                    "Failed to send %s notification",
                    notification.type.value,
                    exc_info=True,
                    extra={"user_id": notification.user_id},
                )
            finally:
                self._queue.task_done()
