"""Run-level cancellation token."""

import asyncio

from ..errors import RunCancelled


class CancellationToken:
    """
    Cancelling stops the run from issuing new remote calls; poll loops exit at
    their next iteration. Jobs already submitted to a provider keep running
    there, their results are simply no longer awaited.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise RunCancelled()
