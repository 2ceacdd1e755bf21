"""
identity/notifications.py -- Notification Gateway boundary.

The engine only *requests* that a message be sent. Delivery (SMTP, a queue,
a provider API) belongs to whatever implements NotificationGateway.

BackgroundNotifier wraps any gateway and hands each call to a small thread
pool, so the engine returns without waiting on delivery. Exceptions raised by
the wrapped gateway are logged from the worker thread and never reach the
engine.

LoggingNotifier is the default gateway: it logs which message would have been
sent. It never logs the token, only the recipient and the message kind.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

logger = logging.getLogger("identitycore.notify")


class NotificationGateway(Protocol):
    def send_confirmation(self, email: str, token: str, link: str) -> None: ...

    def send_reset(self, email: str, token: str, link: str) -> None: ...

    def send_welcome(self, email: str, name: str) -> None: ...


class LoggingNotifier:
    """Gateway that records intent in the log instead of delivering mail."""

    def send_confirmation(self, email: str, token: str, link: str) -> None:
        logger.info("Confirmation message requested for %s", email)

    def send_reset(self, email: str, token: str, link: str) -> None:
        logger.info("Password reset message requested for %s", email)

    def send_welcome(self, email: str, name: str) -> None:
        logger.info("Welcome message requested for %s", email)


class BackgroundNotifier:
    """Fire-and-forget dispatch of another gateway's calls.

    Usage:
        notifier = BackgroundNotifier(SmtpGateway(...))
        notifier.send_welcome("alice@example.com", "Alice")  # returns immediately
        notifier.shutdown()
    """

    def __init__(self, gateway: NotificationGateway, max_workers: int = 2) -> None:
        self._gateway = gateway
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def send_confirmation(self, email: str, token: str, link: str) -> None:
        self._dispatch("confirmation", email, self._gateway.send_confirmation, email, token, link)

    def send_reset(self, email: str, token: str, link: str) -> None:
        self._dispatch("reset", email, self._gateway.send_reset, email, token, link)

    def send_welcome(self, email: str, name: str) -> None:
        self._dispatch("welcome", email, self._gateway.send_welcome, email, name)

    def _dispatch(self, kind: str, email: str, fn, *args) -> None:
        future = self._executor.submit(fn, *args)
        future.add_done_callback(lambda f: _log_failure(f, kind, email))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_failure(future: Future, kind: str, email: str) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Delivery of %s message to %s failed: %s", kind, email, exc)
