"""
Order Mailbox - Single-Worker Order Placement

The decision engine never talks to the order boundary directly. Intents
are posted to a bounded queue and drained by exactly one worker, which
serializes order issuance without locking around placement.

A full mailbox rejects the intent immediately rather than blocking the
bar or tick callback.
"""

import logging
import queue
import threading
from typing import Callable, Optional, Protocol, Union

from .errors import OrderRejectedError
from .models import PositionIntent, ProtectiveLevels


class OrderSink(Protocol):
    """Order-placement boundary."""

    def submit(self, intent: PositionIntent) -> None:
        """Place a market order for the intent. Raise OrderRejectedError on refusal."""
        ...

    def update_protection(self, levels: ProtectiveLevels) -> None:
        """Create or move the broker stop/limit orders for a position."""
        ...


Message = Union[PositionIntent, ProtectiveLevels]
RejectHandler = Callable[[PositionIntent, str], None]

_STOP = object()


class OrderMailbox:
    """Bounded intent queue with one consumer."""

    def __init__(
        self,
        sink: OrderSink,
        on_rejected: RejectHandler,
        maxsize: int = 16,
        logger: Optional[logging.Logger] = None,
    ):
        self.sink = sink
        self.on_rejected = on_rejected
        self.logger = logger or logging.getLogger(__name__)
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._worker: Optional[threading.Thread] = None
        self.delivered = 0
        self.rejected = 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def __len__(self) -> int:
        return self._queue.qsize()

    # ========================================================================
    # PRODUCER SIDE
    # ========================================================================

    def post(self, message: Message) -> bool:
        """Enqueue without blocking. Returns False if the mailbox is full."""
        try:
            self._queue.put_nowait(message)
            return True
        except queue.Full:
            self.logger.error(f"Order mailbox full - dropping {message}")
            if isinstance(message, PositionIntent):
                self.rejected += 1
                self.on_rejected(message, "Order mailbox full")
            return False

    # ========================================================================
    # CONSUMER SIDE
    # ========================================================================

    def _deliver(self, message: Message) -> None:
        if isinstance(message, ProtectiveLevels):
            try:
                self.sink.update_protection(message)
            except Exception:
                self.logger.exception(f"Protective order update failed for {message.position_id}")
            return

        try:
            self.sink.submit(message)
            self.delivered += 1
            self.logger.info(
                f"Order submitted: {message.kind.value} {message.side.value} "
                f"x{message.quantity} @ {message.price:.2f} ({message.reason})"
            )
        except OrderRejectedError as e:
            self.rejected += 1
            self.on_rejected(message, e.reason)
        except Exception as e:
            self.rejected += 1
            self.logger.exception(f"Order submission failed: {message.to_dict()}")
            self.on_rejected(message, str(e))

    def process_pending(self) -> int:
        """Drain the queue on the calling thread. Returns messages handled."""
        handled = 0
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return handled
            if message is _STOP:
                continue
            self._deliver(message)
            handled += 1

    def _run(self) -> None:
        while True:
            message = self._queue.get()
            if message is _STOP:
                return
            self._deliver(message)

    def start(self) -> None:
        if self.is_running:
            return
        self._worker = threading.Thread(target=self._run, name="order-mailbox", daemon=True)
        self._worker.start()
        self.logger.info("Order mailbox worker started")

    def stop(self, timeout: float = 5.0) -> None:
        if not self.is_running:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None
        self.logger.info("Order mailbox worker stopped")
