"""
Cancellation tokens for removalmask operations.

Each refine/apply operation gets its own token. The coordinator cancels
the token when newer input supersedes the operation; the operation checks
it before touching session state, so a stale result is dropped even when
the underlying worker thread could not be interrupted.
"""

import itertools

from removalmask.errors import CancelledOperation


_ids = itertools.count(1)


class CancellationToken:
    """A one-shot cancellation flag with an identifying generation."""

    def __init__(self, name=""):
        self.generation = next(_ids)
        self.name = name
        self._cancelled = False

    @property
    def cancelled(self):
        return self._cancelled

    def cancel(self):
        self._cancelled = True

    def raise_if_cancelled(self):
        if self._cancelled:
            raise CancelledOperation(f"{self.name or 'operation'} #{self.generation} was superseded")

    def __repr__(self):
        state = "cancelled" if self._cancelled else "live"
        return f"CancellationToken({self.name!r}, #{self.generation}, {state})"


class Operation:
    """A running asyncio task paired with its cancellation token."""

    def __init__(self, token, task):
        self.token = token
        self.task = task

    @property
    def done(self):
        return self.task.done()

    def cancel(self):
        """Cancel the token first, then the task; never awaits the task."""
        self.token.cancel()
        if not self.task.done():
            self.task.cancel()
