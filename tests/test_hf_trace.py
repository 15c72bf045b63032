"""Unit tests for hf_trace.py: request-scoped tracing.

Tests cover: stage timing and error capture, API call attribution,
summary outcomes, and thread-local storage.
"""

import threading
import time

import pytest

from hf_trace import TraceContext, clear_trace, get_trace, set_trace


class TestStages:
    def test_stage_recorded(self):
        ctx = TraceContext(trace_id="t-1")
        with ctx.stage("text_match") as rec:
            rec.result_count = 3

        assert len(ctx.stages) == 1
        stage = ctx.stages[0]
        assert stage.stage_name == "text_match"
        assert stage.result_count == 3
        assert stage.error_class == ""
        assert stage.elapsed_ms >= 0

    def test_error_recorded_and_reraised(self):
        ctx = TraceContext(trace_id="t-1")
        with pytest.raises(ValueError):
            with ctx.stage("geocode"):
                raise ValueError("boom")
        assert ctx.stages[0].error_class == "ValueError"

    def test_current_stage_restored(self):
        ctx = TraceContext(trace_id="t-1")
        with ctx.stage("geocode"):
            assert ctx._current_stage == "geocode"
        assert ctx._current_stage == ""

    def test_api_calls_attributed_to_stage(self):
        ctx = TraceContext(trace_id="t-1")
        with ctx.stage("geocode"):
            ctx.record_api_call("locationiq", "geocode", 120, 200)
        ctx.record_api_call("locationiq", "autocomplete", 80, 200)

        assert ctx.stages[0].api_calls_made == 1
        assert ctx.api_calls[0].stage == "geocode"
        assert ctx.api_calls[1].stage == ""


class TestSummary:
    def test_success(self):
        ctx = TraceContext(trace_id="t-1")
        with ctx.stage("text_match"):
            pass
        with ctx.stage("geocode"):
            ctx.record_api_call("locationiq", "geocode", 50, 200)

        s = ctx.summary_dict()
        assert s["trace_id"] == "t-1"
        assert s["final_outcome"] == "success"
        assert s["stages"] == ["text_match", "geocode"]
        assert s["total_api_calls"] == 1
        assert s["stages_errored"] == 0

    def test_error(self):
        ctx = TraceContext(trace_id="t-1")
        with pytest.raises(RuntimeError):
            with ctx.stage("nearby"):
                raise RuntimeError("db")
        s = ctx.summary_dict()
        assert s["final_outcome"] == "error"
        assert s["stages_errored"] == 1

    def test_empty(self):
        assert TraceContext(trace_id="t-1").summary_dict()["final_outcome"] == "empty"

    def test_log_summary(self, caplog):
        ctx = TraceContext(trace_id="t-log")
        with caplog.at_level("INFO", logger="hf_trace"):
            ctx.log_summary()
        assert "trace=t-log" in caplog.text


class TestThreadLocal:
    def test_set_and_get(self):
        ctx = TraceContext(trace_id="tls")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()
        assert get_trace() is None

    def test_isolation_between_threads(self):
        results = {}

        def worker(name):
            set_trace(TraceContext(trace_id=name))
            time.sleep(0.01)
            results[name] = get_trace().trace_id
            clear_trace()

        threads = [threading.Thread(target=worker, args=(f"thread-{i}",)) for i in (1, 2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == {"thread-1": "thread-1", "thread-2": "thread-2"}
