# jobrelay/core/utils/loop_runner.py
from __future__ import annotations
import asyncio
import contextlib
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable
from jobrelay.core.logging import get_logger


class LoopRunnerError(RuntimeError):
    """Infrastructure failure in the sync->async bridge."""


class LoopRunner:
    """Run coroutines from synchronous callers on one background loop thread.

    The store's engine and listener are loop-affine, so every sync facade
    call for a given store goes through the same runner.
    """

    def __init__(self, name: str = 'jobrelay-loop') -> None:
        self.logger = get_logger('loop_runner')
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._closed = False
        self._state_lock = threading.RLock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._state_lock:
            if self._closed:
                raise LoopRunnerError('Loop runner has been stopped and cannot be restarted')
            if self._thread is not None:
                return
            loop = asyncio.new_event_loop()
            thread = threading.Thread(target=loop.run_forever, name=self._name, daemon=True)
            try:
                thread.start()
            except RuntimeError as exc:
                loop.close()
                raise LoopRunnerError(
                    f'Failed to start loop runner thread: {type(exc).__name__}: {exc}',
                ) from exc
            self._loop = loop
            self._thread = thread

    def stop(self) -> None:
        with self._state_lock:
            self._closed = True
            loop, thread = self._loop, self._thread
            if loop is None or thread is None:
                return
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=2)
            if thread.is_alive():
                self.logger.warning('Loop runner thread did not stop within timeout; leaving loop open')
                return
            loop.close()
            self._loop = None
            self._thread = None

    def call(
        self, coro_fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """Run ``coro_fn(*args, **kwargs)`` on the runner loop and block for its result."""
        self.start()
        with self._state_lock:
            loop = self._loop
            if loop is None:
                raise LoopRunnerError('Loop runner is not running')
        self.logger.debug(f'Calling {getattr(coro_fn, "__name__", coro_fn)!s}')
        coro: Awaitable[Any] | None = None
        try:
            coro = coro_fn(*args, **kwargs)
            fut: Future[Any] = asyncio.run_coroutine_threadsafe(coro, loop)  # type: ignore[arg-type]
        except Exception as exc:
            # Avoid "coroutine was never awaited" when scheduling fails
            if asyncio.iscoroutine(coro):
                with contextlib.suppress(RuntimeError):
                    coro.close()
            raise LoopRunnerError(
                f'Failed to schedule coroutine on loop runner: {type(exc).__name__}: {exc}',
            ) from exc
        return fut.result()
