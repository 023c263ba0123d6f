"""
Python client SDK: capture errors, buffer them and ship them in batches.

Usage:
    client = SpectraOpsClient(signals=ProcessSignals())
    client.initialize(SpectraOpsConfig(endpoint="http://localhost:3000", api_key="..."))
    ...
    client.capture_error(exc)
    await client.flush()        # or client.flush_sync() from plain threads
"""

import asyncio
import math
import platform
import threading
import traceback
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import httpx
import orjson
import structlog

from ..errors import TransportError
from ..receiver.sanitizer import sanitize
from .signals import HostSignalSource

logger = structlog.get_logger(__name__)

SDK_NAME = "spectraops-python"
SDK_VERSION = "1.0.0"
BATCH_PATH = "/api/errors/batch"

# Server-side limits; anything larger would reject the whole batch.
MAX_MESSAGE_LENGTH = 10_000
MAX_STACK_LENGTH = 50_000
MAX_BATCH_ITEMS = 100

SEVERITIES = frozenset({"info", "warning", "error", "fatal"})

# Statuses meaning the batch content itself was refused; resending cannot help.
REJECTED_BATCH_STATUSES = frozenset({400, 413, 422})

SHUTDOWN_TIMEOUT = 5.0


@dataclass
class SpectraOpsConfig:
    endpoint: str
    api_key: Optional[str] = None
    batch_size: int = 10
    flush_interval: float = 5.0
    debug: bool = False
    timeout: float = 10.0
    environment: Optional[str] = None
    source_url: Optional[str] = None


def default_user_agent() -> str:
    return f"{SDK_NAME}/{SDK_VERSION} Python/{platform.python_version()} ({platform.system()})"


def check_response(response: httpx.Response) -> None:
    """Raise ``TransportError`` for non-2xx; a rejected batch is not retryable."""
    status = response.status_code
    if 200 <= status < 300:
        return
    raise TransportError(f"Server responded with {status}", retryable=status not in REJECTED_BATCH_STATUSES)


class SpectraOpsClient:
    """
    Buffers captured errors and flushes them to ``{endpoint}/api/errors/batch``.

    Inside an asyncio application the timer and size-triggered flushes run on
    the loop that was running when ``initialize`` was called. Without one the
    client starts a private loop on a daemon thread, so synchronous hosts get
    the same behavior.

    A flush takes at most ``MAX_BATCH_ITEMS`` errors per request. A batch that
    fails is appended back to the buffer, except when the server refuses the
    content itself (400, 413, 422); resending that batch can never succeed.
    """

    def __init__(
        self,
        signals: Optional[HostSignalSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_transport: Optional[httpx.BaseTransport] = None,
        user_agent: Optional[str] = None,
    ):
        self.signals = signals
        self.transport = transport
        self.sync_transport = sync_transport
        self.user_agent = user_agent or default_user_agent()

        self._config: Optional[SpectraOpsConfig] = None
        self._buffer: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._timer_task = None
        self._pending_flush: Optional[asyncio.Task] = None

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    @property
    def runs_own_loop(self) -> bool:
        return self._thread is not None

    def initialize(self, config: SpectraOpsConfig) -> None:
        """Start (or restart) the client with ``config``."""
        self.destroy()
        self._config = config

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        if self._loop is not None:
            self._timer_task = self._loop.create_task(self._flush_loop(config.flush_interval))
        else:
            self._start_background_loop(config)

        if self.signals is not None:
            self.signals.install(self._on_host_error, self.flush_on_unload)

        if config.debug:
            logger.debug(
                "sdk_initialized",
                endpoint=config.endpoint,
                batch_size=config.batch_size,
                background_thread=self.runs_own_loop,
            )

    def capture_error(self, error: Union[BaseException, str], severity: Optional[str] = None) -> None:
        """Queue one error; triggers a flush once the buffer reaches ``batch_size``."""
        config = self._config
        if config is None:
            logger.warning("sdk_not_initialized", detail="call initialize() before capture_error()")
            return

        payload = self._build_payload(config, error, severity)
        with self._lock:
            self._buffer.append(payload)
            pending = len(self._buffer)

        if config.debug:
            logger.debug(
                "sdk_error_captured",
                message=payload["message"][:200],
                severity=payload.get("severity"),
                pending=pending,
            )

        if pending >= config.batch_size:
            self._schedule_flush()

    async def flush(self) -> None:
        """Send everything buffered, ``MAX_BATCH_ITEMS`` per request. Never raises."""
        config = self._config
        if config is None:
            return

        for _ in range(self._chunks_pending()):
            batch = self._take_batch()
            if not batch:
                return
            try:
                await self._send(config, batch)
            except TransportError as e:
                if not self._handle_failure(config, batch, e):
                    return
            else:
                if config.debug:
                    logger.debug("sdk_flushed", count=len(batch))

    def flush_sync(self) -> None:
        """Blocking counterpart of ``flush`` for code without an event loop."""
        config = self._config
        if config is None:
            return

        with httpx.Client(timeout=config.timeout, transport=self.sync_transport) as http:
            for _ in range(self._chunks_pending()):
                batch = self._take_batch()
                if not batch:
                    return
                try:
                    self._send_sync(http, config, batch)
                except TransportError as e:
                    if not self._handle_failure(config, batch, e):
                        return
                else:
                    if config.debug:
                        logger.debug("sdk_flushed", count=len(batch))

    def flush_on_unload(self) -> None:
        """Best-effort synchronous send at process exit. The outcome is ignored."""
        config = self._config
        if config is None:
            return

        with self._lock:
            pending = self._buffer
            self._buffer = []
        if not pending:
            return

        try:
            with httpx.Client(timeout=config.timeout, transport=self.sync_transport) as http:
                for start in range(0, len(pending), MAX_BATCH_ITEMS):
                    batch = pending[start:start + MAX_BATCH_ITEMS]
                    http.post(self._batch_url(config), content=self._encode(batch), headers=self._headers(config))
        except httpx.HTTPError as e:
            if config.debug:
                logger.warning("sdk_unload_flush_failed", error=str(e), dropped=len(pending))

    def destroy(self) -> None:
        """Stop timers, unhook the host and forget buffer and config."""
        if self._thread is not None:
            self._stop_background_loop()
        else:
            if self._timer_task is not None:
                self._timer_task.cancel()
            if self._pending_flush is not None:
                self._pending_flush.cancel()
        self._timer_task = None
        self._pending_flush = None

        if self.signals is not None:
            self.signals.uninstall()

        with self._lock:
            self._buffer = []
        self._config = None
        self._loop = None

    def _start_background_loop(self, config: SpectraOpsConfig) -> None:
        loop = asyncio.new_event_loop()
        thread = threading.Thread(target=loop.run_forever, name="spectraops-flush", daemon=True)
        thread.start()
        self._loop = loop
        self._thread = thread
        self._timer_task = asyncio.run_coroutine_threadsafe(self._flush_loop(config.flush_interval), loop)

    def _stop_background_loop(self) -> None:
        loop, thread = self._loop, self._thread
        self._thread = None
        if loop is None or thread is None or loop.is_closed():
            return

        if threading.current_thread() is not thread:
            try:
                asyncio.run_coroutine_threadsafe(_cancel_tasks(), loop).result(SHUTDOWN_TIMEOUT)
            except FuturesTimeoutError:
                logger.warning("sdk_shutdown_timeout", thread=thread.name)

        loop.call_soon_threadsafe(loop.stop)
        if threading.current_thread() is not thread:
            thread.join(SHUTDOWN_TIMEOUT)
            if not thread.is_alive():
                loop.close()

    async def _flush_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await self.flush()
            except asyncio.CancelledError:
                break

    def _schedule_flush(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._start_pending_flush()
        elif loop.is_running() or self._thread is not None:
            loop.call_soon_threadsafe(self._start_pending_flush)

    def _start_pending_flush(self) -> None:
        if self._pending_flush is not None and not self._pending_flush.done():
            return
        if self._loop is None:
            return
        self._pending_flush = self._loop.create_task(self.flush())

    def _on_host_error(self, error: BaseException) -> None:
        self.capture_error(error, severity="fatal")

    def _chunks_pending(self) -> int:
        return math.ceil(len(self._buffer) / MAX_BATCH_ITEMS)

    def _take_batch(self) -> List[Dict[str, Any]]:
        with self._lock:
            batch = self._buffer[:MAX_BATCH_ITEMS]
            del self._buffer[:len(batch)]
        return batch

    def _handle_failure(self, config: SpectraOpsConfig, batch: List[Dict[str, Any]], error: TransportError) -> bool:
        """Drop or re-queue a failed batch. Returns True when flushing may go on."""
        if not error.retryable:
            if config.debug:
                logger.debug("sdk_batch_rejected", error=str(error), dropped=len(batch))
            return True

        # destroy() may have run while the request was in flight
        if self._config is config:
            with self._lock:
                self._buffer.extend(batch)
        if config.debug:
            logger.warning("sdk_flush_failed", error=str(error), requeued=len(batch))
        return False

    def _build_payload(
        self,
        config: SpectraOpsConfig,
        error: Union[BaseException, str],
        severity: Optional[str],
    ) -> Dict[str, Any]:
        if isinstance(error, BaseException):
            fallback = type(error).__name__
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            fallback = "Error"
            stack = None

        # The server strips markup and rejects what is left blank.
        message = str(error).strip()
        if not sanitize(message[:MAX_MESSAGE_LENGTH]):
            message = fallback

        payload: Dict[str, Any] = {
            "message": message[:MAX_MESSAGE_LENGTH],
            "stack": stack[:MAX_STACK_LENGTH] if stack else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_agent": self.user_agent,
        }
        if config.source_url:
            payload["source_url"] = config.source_url
        if config.environment:
            payload["environment"] = config.environment
        if severity in SEVERITIES:
            payload["severity"] = severity
        elif severity and config.debug:
            logger.debug("sdk_unknown_severity", severity=severity)
        return payload

    async def _send(self, config: SpectraOpsConfig, batch: List[Dict[str, Any]]) -> None:
        try:
            async with httpx.AsyncClient(timeout=config.timeout, transport=self.transport) as http:
                response = await http.post(
                    self._batch_url(config),
                    content=self._encode(batch),
                    headers=self._headers(config),
                )
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}") from e
        check_response(response)

    def _send_sync(self, http: httpx.Client, config: SpectraOpsConfig, batch: List[Dict[str, Any]]) -> None:
        try:
            response = http.post(self._batch_url(config), content=self._encode(batch), headers=self._headers(config))
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}") from e
        check_response(response)

    @staticmethod
    def _batch_url(config: SpectraOpsConfig) -> str:
        return config.endpoint.rstrip("/") + BATCH_PATH

    @staticmethod
    def _encode(batch: List[Dict[str, Any]]) -> bytes:
        return orjson.dumps({"errors": batch})

    @staticmethod
    def _headers(config: SpectraOpsConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["x-api-key"] = config.api_key
        return headers


async def _cancel_tasks() -> None:
    current = asyncio.current_task()
    tasks = [task for task in asyncio.all_tasks() if task is not current]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
