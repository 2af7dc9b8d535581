from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import threading
from collections.abc import Coroutine
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

import structlog

from .config import RuntimeSettings
from .errors import ConfigurationError, UsageError

logger = structlog.get_logger()


class Transport(Protocol):
    async def call(self, operation: str, **kwargs: Any) -> dict[str, Any]: ...


class ThreadedTransport:
    """Runs a blocking boto3 client call on a worker pool and awaits its completion."""

    def __init__(self, client: Any, executor: concurrent.futures.Executor | None = None) -> None:
        self._client = client
        self._executor = executor

    async def call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        method = getattr(self._client, operation)
        executor = self._executor or default_executor()
        return await loop.run_in_executor(executor, functools.partial(method, **kwargs))


class AsyncClientTransport:
    """Awaits an aiobotocore (or any coroutine-method) client directly."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        method = getattr(self._client, operation)
        return await method(**kwargs)


def select_transports(
    client: Any | None,
    async_client: Any | None,
    executor: concurrent.futures.Executor | None = None,
) -> tuple[Transport, Transport]:
    """Returns ``(blocking, nonblocking)`` transports for the configured handles.

    Each mode prefers its native handle and bridges to the other one when only that is
    configured.
    """
    if client is None and async_client is None:
        raise ConfigurationError("a client or an async_client is required")

    if client is None:
        native = AsyncClientTransport(async_client)
        return native, native
    threaded = ThreadedTransport(client, executor)
    if async_client is None:
        return threaded, threaded
    return threaded, AsyncClientTransport(async_client)


class BackgroundLoop:
    """An event loop running forever on a daemon thread.

    Blocking entry points submit their coroutine here and wait on the returned
    ``concurrent.futures.Future``.
    """

    def __init__(self, name: str = "ctdynamo-loop") -> None:
        self._name = name
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is not None and self._thread is not None and self._thread.is_alive():
                return self._loop

            loop = asyncio.new_event_loop()
            ready = threading.Event()
            thread = threading.Thread(target=self._run, args=(loop, ready), name=self._name, daemon=True)
            thread.start()
            ready.wait()

            self._loop = loop
            self._thread = thread
            logger.debug("background_loop_started", thread=thread.name)
            return loop

    @staticmethod
    def _run(loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
        asyncio.set_event_loop(loop)
        loop.call_soon(ready.set)
        loop.run_forever()

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def submit[R](self, coro: Coroutine[Any, Any, R]) -> concurrent.futures.Future[R]:
        if self.in_loop_thread():
            coro.close()
            raise UsageError("blocking call made from the background loop thread; use the *_async variant")
        loop = self._ensure_started()
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def run[R](self, coro: Coroutine[Any, Any, R]) -> R:
        return self.submit(coro).result()

    def stop(self) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None or thread is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        thread.join()
        loop.close()


class ClientLoop:
    """The caller's event loop, owner of an async-only client.

    An aiobotocore client is bound to the loop it was opened in, so blocking calls that
    can only reach such a client are submitted to that loop from another thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def submit[R](self, coro: Coroutine[Any, Any, R]) -> concurrent.futures.Future[R]:
        if running_loop() is self._loop:
            coro.close()
            raise UsageError("blocking call made on the event loop that owns async_client; use the *_async variant")
        if not self._loop.is_running():
            coro.close()
            raise UsageError("the event loop that owns async_client is no longer running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run[R](self, coro: Coroutine[Any, Any, R]) -> R:
        return self.submit(coro).result()


class BlockingRunner(Protocol):
    def submit[R](self, coro: Coroutine[Any, Any, R]) -> concurrent.futures.Future[R]: ...

    def run[R](self, coro: Coroutine[Any, Any, R]) -> R: ...


def running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


_background = BackgroundLoop()
_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def background_loop() -> BackgroundLoop:
    return _background


def default_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            settings = RuntimeSettings.from_env()
            _executor = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="ctdynamo-io")
        return _executor
