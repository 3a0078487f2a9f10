"""Tests for cdc_testcluster.retry: backoff, RetryingProxy and poll_until."""

from __future__ import annotations

import io
import logging
from unittest.mock import MagicMock, call

import pytest

from cdc_testcluster.errors import CommandError, ReadinessTimeoutError
from cdc_testcluster.retry import ConstantBackoff, RetryContext, RetryingProxy, poll_until


class TestConstantBackoff:
    def test_delay_is_constant(self):
        strategy = ConstantBackoff(delay=2.5)
        assert [strategy.next_delay(i) for i in range(3)] == [2.5, 2.5, 2.5]

    def test_stops_at_max_retries(self):
        strategy = ConstantBackoff(max_retries=3)
        assert strategy.should_retry(2) is True
        assert strategy.should_retry(3) is False

    def test_retryable_errors_filter(self):
        strategy = ConstantBackoff(retryable_errors=(ConnectionError,))
        assert strategy.should_retry(1, ConnectionError()) is True
        assert strategy.should_retry(1, ValueError()) is False


class TestRetryContext:
    def test_returns_first_success(self):
        func = MagicMock(side_effect=[OSError("flaky"), "ok"])
        sleep = MagicMock()
        ctx = RetryContext(ConstantBackoff(max_retries=3, delay=0.5), sleep=sleep)

        assert ctx.run(func, "a", key="b") == "ok"
        assert ctx.attempt == 2
        func.assert_called_with("a", key="b")
        sleep.assert_called_once_with(0.5)

    def test_raises_last_error_when_exhausted(self):
        func = MagicMock(side_effect=OSError("down"))
        ctx = RetryContext(ConstantBackoff(max_retries=3), sleep=MagicMock())
        with pytest.raises(OSError, match="down"):
            ctx.run(func)
        assert func.call_count == 3
        assert ctx.attempt == 3

    def test_on_retry_callback(self):
        on_retry = MagicMock()
        error = OSError("once")
        ctx = RetryContext(ConstantBackoff(max_retries=2, delay=1.0), on_retry=on_retry, sleep=MagicMock())
        ctx.run(MagicMock(side_effect=[error, None]))
        on_retry.assert_called_once_with(1, error, 1.0)


class TestRetryingProxy:
    def test_retries_command_errors(self):
        target = MagicMock()
        target.port.side_effect = [CommandError(["port"], 1), CommandError(["port"], 1), "0.0.0.0:32768"]
        sleep = MagicMock()
        proxy = RetryingProxy(target, retries=4, sleep=sleep)

        assert proxy.port("postgres", 5432) == "0.0.0.0:32768"
        assert target.port.call_count == 3
        assert sleep.call_args_list == [call(1.0), call(1.0)]

    def test_gives_up_after_retries(self):
        target = MagicMock()
        target.stop.side_effect = CommandError(["stop"], 1, "daemon down")
        proxy = RetryingProxy(target, retries=4, sleep=MagicMock())
        with pytest.raises(CommandError, match="daemon down"):
            proxy.stop()
        assert target.stop.call_count == 4

    def test_other_errors_not_retried(self):
        target = MagicMock()
        target.up.side_effect = ValueError("bad args")
        proxy = RetryingProxy(target, sleep=MagicMock())
        with pytest.raises(ValueError):
            proxy.up(["kafka"])
        target.up.assert_called_once_with(["kafka"])

    def test_attributes_pass_through(self):
        target = MagicMock()
        target.environment = {"A": "1"}
        proxy = RetryingProxy(target)
        assert proxy.environment == {"A": "1"}
        assert proxy.target is target

    def test_retry_logged(self, caplog):
        target = MagicMock()
        target.inspect.side_effect = [CommandError(["inspect"], 1), "record"]
        proxy = RetryingProxy(target, sleep=MagicMock())
        with caplog.at_level(logging.WARNING, logger="cdc_testcluster.retry"):
            proxy.inspect("abc")
        assert caplog.records[0].getMessage() == "command.retry"
        assert caplog.records[0].call == "inspect"
        assert caplog.records[0].attempt == 1


class TestPollUntil:
    def test_returns_first_truthy_result(self):
        probe = MagicMock(side_effect=[None, False, 32768])
        sleep = MagicMock()
        assert poll_until(probe, service="postgres", max_tries=5, sleep=sleep) == 32768
        assert probe.call_count == 3
        assert sleep.call_args_list == [call(1.0)] * 3

    def test_sleeps_before_each_probe(self):
        events = []
        sleep = MagicMock(side_effect=lambda _: events.append("sleep"))
        poll_until(lambda: events.append("probe") or True, service="kafka", max_tries=1, sleep=sleep)
        assert events == ["sleep", "probe"]

    def test_timeout_after_max_tries(self):
        probe = MagicMock(return_value=False)
        with pytest.raises(ReadinessTimeoutError) as excinfo:
            poll_until(probe, service="kafka", max_tries=5, sleep=MagicMock())
        assert probe.call_count == 5
        assert excinfo.value.service == "kafka"
        assert excinfo.value.attempts == 5
        assert excinfo.value.last_error is None

    def test_probe_errors_tolerated(self):
        probe = MagicMock(side_effect=[ConnectionRefusedError("refused"), "ready"])
        assert poll_until(probe, service="zookeeper", max_tries=3, sleep=MagicMock()) == "ready"

    def test_last_error_reported(self):
        probe = MagicMock(side_effect=ConnectionRefusedError("refused"))
        with pytest.raises(ReadinessTimeoutError, match="last error: ConnectionRefusedError: refused") as excinfo:
            poll_until(probe, service="zookeeper", max_tries=2, sleep=MagicMock())
        assert isinstance(excinfo.value.last_error, ConnectionRefusedError)

    def test_errors_propagate_when_not_tolerated(self):
        probe = MagicMock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            poll_until(probe, service="x", max_tries=3, tolerate_errors=False, sleep=MagicMock())
        probe.assert_called_once_with()

    def test_progress_output(self):
        progress = io.StringIO()
        probe = MagicMock(side_effect=[None, OSError("refused"), True])
        poll_until(probe, service="kafka", message="kafka on port 32770", max_tries=3, sleep=MagicMock(), progress=progress)
        assert progress.getvalue() == "Waiting for kafka on port 32770....not ready: refused  OK\n"

    def test_progress_on_failure(self):
        progress = io.StringIO()
        with pytest.raises(ReadinessTimeoutError):
            poll_until(lambda: None, service="kafka", max_tries=2, sleep=MagicMock(), progress=progress)
        assert progress.getvalue() == "Waiting for kafka..... FAILED\n"
