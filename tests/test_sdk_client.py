"""Tests for the batching SDK client."""

import asyncio
import sys
import threading
import time
from unittest.mock import patch

import httpx
import orjson
import pytest

from spectraops.sdk import client as client_module
from spectraops.sdk.client import SpectraOpsClient, SpectraOpsConfig
from spectraops.sdk.signals import ProcessSignals


class RecordingTransport:
    """Collects requests and answers with queued status codes (default 201)."""

    def __init__(self, statuses=None, fail=False):
        self.requests = []
        self.statuses = list(statuses or [])
        self.fail = fail

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        status = self.statuses.pop(0) if self.statuses else 201
        return httpx.Response(status, json={"status": "ok"})

    def batches(self):
        return [orjson.loads(r.content)["errors"] for r in self.requests]


def make_client(handler, **config):
    sdk = SpectraOpsClient(transport=httpx.MockTransport(handler), sync_transport=httpx.MockTransport(handler))
    return sdk, SpectraOpsConfig(endpoint="http://collector.test", api_key="key-123", **config)


class TestSpectraOpsClient:
    """Test cases for SpectraOpsClient."""

    def test_capture_before_initialize_warns(self):
        transport = RecordingTransport()
        sdk, _ = make_client(transport)

        with patch.object(client_module, "logger") as logger:
            sdk.capture_error(ValueError("too early"))

        logger.warning.assert_called_once()
        assert sdk.pending_count == 0
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_flush_sends_batch_in_order(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        for i in range(3):
            sdk.capture_error(RuntimeError(f"error {i}"))
        await sdk.flush()

        assert len(transport.requests) == 1
        request = transport.requests[0]
        assert request.url == "http://collector.test/api/errors/batch"
        assert request.headers["x-api-key"] == "key-123"
        assert [e["message"] for e in transport.batches()[0]] == ["error 0", "error 1", "error 2"]
        assert sdk.pending_count == 0
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_batch_size_triggers_single_flush(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=3, flush_interval=60)
        sdk.initialize(config)

        for i in range(3):
            sdk.capture_error(RuntimeError(f"error {i}"))
        await asyncio.sleep(0.05)

        assert len(transport.requests) == 1
        assert [e["message"] for e in transport.batches()[0]] == ["error 0", "error 1", "error 2"]
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_failed_flush_requeues_batch(self):
        transport = RecordingTransport(statuses=[503])
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("a"))
        sdk.capture_error(RuntimeError("b"))
        await sdk.flush()
        assert sdk.pending_count == 2

        sdk.capture_error(RuntimeError("c"))
        await sdk.flush()

        batches = transport.batches()
        assert len(batches) == 2
        assert [e["message"] for e in batches[1]] == ["a", "b", "c"]
        assert sdk.pending_count == 0
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_capture_during_failed_flush_keeps_both(self):
        """Test that the failed batch goes to the back, behind captures made while it was in flight."""
        sdk = None

        def handler(request):
            sdk.capture_error(RuntimeError("during"))
            return httpx.Response(500)

        sdk, config = make_client(handler, batch_size=50)
        sdk.initialize(config)
        sdk.capture_error(RuntimeError("before"))
        await sdk.flush()

        assert sdk.pending_count == 2
        assert [e["message"] for e in sdk._buffer] == ["during", "before"]
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_transport_error_never_raises(self):
        transport = RecordingTransport(fail=True)
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("offline"))
        await sdk.flush()

        assert sdk.pending_count == 1
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_periodic_flush(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=50, flush_interval=0.02)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("tick"))
        await asyncio.sleep(0.1)

        assert len(transport.requests) == 1
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_payload_fields(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, environment="staging", source_url="http://app.test/page")
        sdk.initialize(config)

        try:
            raise KeyError("missing")
        except KeyError as e:
            sdk.capture_error(e, severity="warning")
        await sdk.flush()

        payload = transport.batches()[0][0]
        assert payload["message"] == "'missing'"
        assert "KeyError" in payload["stack"]
        assert payload["environment"] == "staging"
        assert payload["source_url"] == "http://app.test/page"
        assert payload["severity"] == "warning"
        assert payload["timestamp"].endswith("+00:00")
        assert payload["user_agent"].startswith("spectraops-python/")
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_destroy_clears_state(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)
        sdk.capture_error(RuntimeError("dropped"))

        sdk.destroy()
        await sdk.flush()

        assert not sdk.is_initialized
        assert sdk.pending_count == 0
        assert transport.requests == []

    def test_destroy_without_initialize(self):
        sdk, _ = make_client(RecordingTransport())
        sdk.destroy()
        assert not sdk.is_initialized

    @pytest.mark.asyncio
    async def test_reinitialize_resets_buffer(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)
        sdk.capture_error(RuntimeError("old"))

        sdk.initialize(config)
        assert sdk.pending_count == 0
        assert sdk.is_initialized
        sdk.destroy()

    def test_flush_on_unload_is_fire_and_forget(self):
        transport = RecordingTransport(statuses=[500])
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("bye"))
        sdk.flush_on_unload()

        assert len(transport.requests) == 1
        assert sdk.pending_count == 0
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_blank_and_markup_messages_fall_back_to_type_name(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        sdk.capture_error(Exception("   "))
        sdk.capture_error(ValueError("<br>"))
        sdk.capture_error("<b></b>")
        sdk.capture_error(ValueError("<b>kept</b>"))
        await sdk.flush()

        messages = [e["message"] for e in transport.batches()[0]]
        assert messages == ["Exception", "ValueError", "Error", "<b>kept</b>"]
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_unknown_severity_is_omitted(self):
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("odd"), severity="catastrophic")
        await sdk.flush()

        assert "severity" not in transport.batches()[0][0]
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_rejected_batch_is_dropped_not_requeued(self):
        """Test that a 4xx rejection does not block later batches."""
        transport = RecordingTransport(statuses=[400])
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("rejected"))
        await sdk.flush()
        assert sdk.pending_count == 0

        sdk.capture_error(RuntimeError("next"))
        await sdk.flush()

        batches = transport.batches()
        assert len(batches) == 2
        assert [e["message"] for e in batches[1]] == ["next"]
        sdk.destroy()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 408, 429])
    async def test_transient_failure_is_requeued(self, status):
        transport = RecordingTransport(statuses=[status])
        sdk, config = make_client(transport, batch_size=50)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("later"))
        await sdk.flush()

        assert sdk.pending_count == 1
        sdk.destroy()

    @pytest.mark.asyncio
    async def test_backlog_is_sent_in_bounded_batches(self):
        """Test that a backlog larger than one request drains after the server recovers."""
        transport = RecordingTransport(statuses=[503])
        sdk, config = make_client(transport, batch_size=1000, flush_interval=60)
        sdk.initialize(config)

        for i in range(150):
            sdk.capture_error(RuntimeError(f"error {i}"))
        await sdk.flush()
        assert sdk.pending_count == 150

        await sdk.flush()

        batches = transport.batches()
        assert all(len(batch) <= client_module.MAX_BATCH_ITEMS for batch in batches)
        delivered = [e["message"] for batch in batches[1:] for e in batch]
        assert sorted(delivered) == sorted(f"error {i}" for i in range(150))
        assert sdk.pending_count == 0
        sdk.destroy()

    def test_capture_logs_in_debug_mode(self):
        sdk, config = make_client(RecordingTransport(), batch_size=50, flush_interval=60, debug=True)
        sdk.initialize(config)

        with patch.object(client_module, "logger") as logger:
            sdk.capture_error(RuntimeError("noted"), severity="error")

        logger.debug.assert_any_call("sdk_error_captured", message="noted", severity="error", pending=1)
        sdk.destroy()

    def test_sync_host_flushes_from_background_thread(self):
        """Test that timer and batch-size flushes work without a running event loop."""
        transport = RecordingTransport()
        sdk, config = make_client(transport, batch_size=2, flush_interval=0.05)
        sdk.initialize(config)
        assert sdk.runs_own_loop

        for i in range(5):
            sdk.capture_error(RuntimeError(f"error {i}"))
        time.sleep(0.3)

        delivered = [e["message"] for batch in transport.batches() for e in batch]
        assert sorted(delivered) == [f"error {i}" for i in range(5)]
        assert sdk.pending_count == 0

        sdk.destroy()
        assert not sdk.runs_own_loop

    def test_flush_sync(self):
        transport = RecordingTransport(statuses=[201, 503])
        sdk, config = make_client(transport, batch_size=50, flush_interval=60)
        sdk.initialize(config)

        sdk.capture_error(RuntimeError("one"))
        sdk.capture_error(RuntimeError("two"))
        sdk.flush_sync()
        assert [e["message"] for e in transport.batches()[0]] == ["one", "two"]
        assert sdk.pending_count == 0

        sdk.capture_error(RuntimeError("three"))
        sdk.flush_sync()
        assert sdk.pending_count == 1
        sdk.destroy()


class TestProcessSignals:
    """Test cases for ProcessSignals hook management."""

    def test_install_and_restore_hooks(self):
        original_excepthook = sys.excepthook
        original_threading_hook = threading.excepthook
        signals = ProcessSignals()

        signals.install(lambda exc: None, lambda: None)
        assert sys.excepthook != original_excepthook
        assert threading.excepthook != original_threading_hook

        signals.uninstall()
        assert sys.excepthook == original_excepthook
        assert threading.excepthook == original_threading_hook
        assert not signals.installed

    def test_excepthook_reports_and_chains(self):
        seen = []
        chained = []
        with patch.object(sys, "excepthook", lambda *args: chained.append(args)):
            signals = ProcessSignals()
            signals.install(seen.append, lambda: None)
            try:
                error = RuntimeError("uncaught")
                sys.excepthook(RuntimeError, error, None)
            finally:
                signals.uninstall()

        assert seen == [error]
        assert len(chained) == 1

    def test_keyboard_interrupt_not_reported(self):
        seen = []
        with patch.object(sys, "excepthook", lambda *args: None):
            signals = ProcessSignals()
            signals.install(seen.append, lambda: None)
            try:
                sys.excepthook(KeyboardInterrupt, KeyboardInterrupt(), None)
            finally:
                signals.uninstall()
        assert seen == []

    def test_thread_exception_reported(self):
        seen = []
        with patch.object(threading, "excepthook", lambda args: None):
            signals = ProcessSignals()
            signals.install(seen.append, lambda: None)
            try:
                thread = threading.Thread(target=lambda: 1 / 0)
                thread.start()
                thread.join()
            finally:
                signals.uninstall()

        assert len(seen) == 1
        assert isinstance(seen[0], ZeroDivisionError)

    @pytest.mark.asyncio
    async def test_loop_exception_handler(self):
        seen = []
        loop = asyncio.get_running_loop()
        signals = ProcessSignals(loop=loop)
        signals.install(seen.append, lambda: None)
        try:
            with patch.object(loop, "default_exception_handler"):
                loop.call_exception_handler({"message": "task failed", "exception": ValueError("lost")})
        finally:
            signals.uninstall()

        assert isinstance(seen[0], ValueError)
        assert loop.get_exception_handler() is None

    @pytest.mark.asyncio
    async def test_client_routes_host_errors(self):
        transport = RecordingTransport()
        signals = ProcessSignals()
        sdk = SpectraOpsClient(signals=signals, transport=httpx.MockTransport(transport))
        with patch.object(sys, "excepthook", lambda *args: None):
            sdk.initialize(SpectraOpsConfig(endpoint="http://collector.test", batch_size=50))
            sys.excepthook(RuntimeError, RuntimeError("crash"), None)
            assert sdk.pending_count == 1
            sdk.destroy()

        assert not signals.installed
