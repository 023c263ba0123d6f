"""Host signal sources: where uncaught errors and process exit come from."""

import asyncio
import atexit
import sys
import threading
from typing import Any, Callable, Dict, Optional, Protocol

ErrorCallback = Callable[[BaseException], None]
UnloadCallback = Callable[[], None]


class HostSignalSource(Protocol):
    """Something that can report uncaught errors and process shutdown."""

    def install(self, on_error: ErrorCallback, on_unload: UnloadCallback) -> None:
        ...

    def uninstall(self) -> None:
        ...


class ProcessSignals:
    """
    Hooks the current Python process.

    Installs ``sys.excepthook``, ``threading.excepthook``, the exception
    handler of an asyncio loop (unhandled task failures) and an ``atexit``
    callback. Previous hooks keep running after ours and are restored on
    ``uninstall``.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._on_error: Optional[ErrorCallback] = None
        self._on_unload: Optional[UnloadCallback] = None
        self._prev_excepthook = None
        self._prev_threading_hook = None
        self._prev_loop_handler = None
        self._hooked_loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed = False

    def install(self, on_error: ErrorCallback, on_unload: UnloadCallback) -> None:
        if self._installed:
            self.uninstall()

        self._on_error = on_error
        self._on_unload = on_unload

        self._prev_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

        self._prev_threading_hook = threading.excepthook
        threading.excepthook = self._threading_excepthook

        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is not None:
            self._prev_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._loop_exception_handler)
            self._hooked_loop = loop

        atexit.register(self._atexit)
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return

        if sys.excepthook == self._excepthook:
            sys.excepthook = self._prev_excepthook
        if threading.excepthook == self._threading_excepthook:
            threading.excepthook = self._prev_threading_hook
        if self._hooked_loop is not None and not self._hooked_loop.is_closed():
            self._hooked_loop.set_exception_handler(self._prev_loop_handler)

        atexit.unregister(self._atexit)

        self._hooked_loop = None
        self._prev_loop_handler = None
        self._on_error = None
        self._on_unload = None
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def _report(self, exc: Optional[BaseException]) -> None:
        if exc is None or self._on_error is None:
            return
        if isinstance(exc, (KeyboardInterrupt, SystemExit)):
            return
        self._on_error(exc)

    def _excepthook(self, exc_type, exc, tb) -> None:
        try:
            self._report(exc)
        finally:
            self._prev_excepthook(exc_type, exc, tb)

    def _threading_excepthook(self, args: Any) -> None:
        try:
            self._report(args.exc_value)
        finally:
            self._prev_threading_hook(args)

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        try:
            self._report(context.get("exception"))
        finally:
            if self._prev_loop_handler is not None:
                self._prev_loop_handler(loop, context)
            else:
                loop.default_exception_handler(context)

    def _atexit(self) -> None:
        if self._on_unload is not None:
            self._on_unload()
