"""Cooperative cancellation shared by the coordinator and its run-group tasks."""

import asyncio

from qase_migrate.exceptions import MigrationCancelledError


class CancellationToken:
    """A one-way flag set by the coordinator when it stops waiting.

    Workers call :meth:`raise_if_cancelled` before each network call and use
    :meth:`sleep` for backoff so a pending delay ends as soon as the token is
    set.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise MigrationCancelledError(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            MigrationCancelledError: If the token is set before or during the
                delay.
        """
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
