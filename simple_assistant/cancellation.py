"""Cooperative cancellation primitive shared by requests and commands."""

import asyncio

from simple_assistant.exceptions import OperationCancelledError


class CancelToken:
    """Single-shot cancellation flag observable from async code.

    The same token is handed to the UI (cancel button, Ctrl-C) and to the
    operation it guards; every suspension point checks ``cancelled`` or
    races ``wait()``.
    """

    def __init__(self, label: str = ""):
        self.label = label
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> bool:
        await self._event.wait()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "Cancelled")

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancelToken({self.label!r}, {state})"
