"""Cooperative cancellation of in-flight work on an external interrupt."""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Collection, Iterator
from contextlib import contextmanager

log = logging.getLogger(__name__)


class OperationCancelledError(Exception):
    """Raised from :meth:`CancellationToken.guard` when the run is interrupted."""


class CancellationToken:
    """A flag every task polls at its blocking point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation; idempotent."""
        self._event.set()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    async def guard[T](self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation arrives first.

        On cancellation the pending work is abandoned (its eventual result,
        if any, is dropped) and :class:`OperationCancelledError` is raised.

        """
        if self.cancelled:
            if asyncio.isfuture(awaitable):
                awaitable.cancel()
            elif asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError

        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            watcher.cancel()

        if work.done():
            return work.result()

        work.cancel()
        raise OperationCancelledError


class InterruptController:
    """Broadcasts an interrupt to every Dispatcher and joins them, bounded."""

    def __init__(self, *, grace_period: float = 10.0) -> None:
        self.token = CancellationToken()
        self.grace_period = grace_period

    @property
    def interrupted(self) -> bool:
        """Whether an interrupt has been delivered."""
        return self.token.cancelled

    def interrupt(self) -> None:
        """Deliver an interrupt to everything holding the token."""
        if not self.token.cancelled:
            log.warning("Interrupt received, cancelling running tests")
        self.token.cancel()

    @contextmanager
    def handle_signals(self) -> Iterator[None]:
        """Route SIGINT to :meth:`interrupt` while the block runs."""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.interrupt)
            installed = True
        except (NotImplementedError, RuntimeError):
            # Windows event loops and non-main threads cannot install handlers
            log.debug("SIGINT handler not installed; relying on KeyboardInterrupt")
            installed = False
        try:
            yield
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    async def join(self, tasks: Collection[asyncio.Task[None]]) -> bool:
        """Wait for every task to finish.

        Without an interrupt this waits as long as the tasks run and
        re-raises the first task failure. After an interrupt it waits at
        most ``grace_period`` seconds for tasks to acknowledge, then cancels
        the rest.

        Returns:
            True if every task finished on its own

        """
        if not tasks:
            return True

        gathered = asyncio.gather(*tasks)
        # Failures are re-raised from the tasks themselves below
        gathered.add_done_callback(lambda f: f.cancelled() or f.exception())
        try:
            await self.token.guard(asyncio.shield(gathered))
            return True
        except OperationCancelledError:
            pass

        _, pending = await asyncio.wait(tasks, timeout=self.grace_period)
        for task in pending:
            task.cancel()
        if pending:
            log.warning(
                "%d dispatcher(s) did not stop within %.1fs, cancelled",
                len(pending),
                self.grace_period,
            )
            await asyncio.wait(pending)

        for task in tasks:
            if not task.cancelled() and (exc := task.exception()) is not None:
                raise exc
        return not pending
