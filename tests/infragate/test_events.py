"""Tests for pipeline event emitters and Prometheus metrics."""

import asyncio
import logging

import pytest
from prometheus_client import CollectorRegistry

from infragate.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from infragate.events.metrics import (
    MetricsEventEmitter,
    PipelineMetrics,
    generate_metrics_output,
)
from infragate.events.models import EventType, PipelineEvent
from infragate.gates.models import Finding, Severity


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type: EventType, **kwargs) -> PipelineEvent:
    kwargs.setdefault("run_id", "run-1")
    kwargs.setdefault("target_state_id", "prod/network")
    return PipelineEvent(event_type=event_type, **kwargs)


class FailingEmitter(EventEmitter):
    async def emit(self, event):
        raise RuntimeError("sink unavailable")

    async def close(self):
        raise RuntimeError("close failed")


class CollectingEmitter(EventEmitter):
    def __init__(self):
        self.events = []
        self.closed = False

    async def emit(self, event):
        self.events.append(event)

    async def close(self):
        self.closed = True


class TestPipelineEvent:
    def test_log_dict_flattens_details(self):
        event = _event(
            EventType.ERROR,
            stage="plan",
            status="failed",
            findings=[Finding(rule_id="R1", severity=Severity.BLOCKING)],
            details={"error_kind": "timeout", "attempt": 2},
        )

        data = event.to_log_dict()

        assert data["event_type"] == "error"
        assert data["stage"] == "plan"
        assert data["error_kind"] == "timeout"
        assert data["attempt"] == 2
        assert data["findings"][0]["severity"] == "blocking"


class TestLoggingEventEmitter:
    def test_log_levels_by_event_type(self, caplog):
        emitter = LoggingEventEmitter(logger_name="infragate.test_events")

        with caplog.at_level(logging.DEBUG, logger="infragate.test_events"):
            run_async(emitter.emit(_event(EventType.STAGE_TRANSITION)))
            run_async(emitter.emit(_event(EventType.TIMEOUT)))
            run_async(emitter.emit(_event(EventType.ERROR)))

        assert [r.levelno for r in caplog.records] == [
            logging.INFO,
            logging.WARNING,
            logging.ERROR,
        ]

    def test_structured_fields_on_record(self, caplog):
        emitter = LoggingEventEmitter(logger_name="infragate.test_events")

        with caplog.at_level(logging.INFO, logger="infragate.test_events"):
            run_async(
                emitter.emit(
                    _event(
                        EventType.COMPLETION,
                        status="succeeded",
                        details={"duration_seconds": 12.5},
                    )
                )
            )

        record = caplog.records[0]
        assert record.run_id == "run-1"
        assert record.target_state_id == "prod/network"
        assert record.duration_seconds == 12.5
        assert "completion" in record.getMessage()


class TestCompositeEventEmitter:
    def test_failing_sink_does_not_affect_others(self):
        collector = CollectingEmitter()
        composite = CompositeEventEmitter([FailingEmitter(), collector])

        run_async(composite.emit(_event(EventType.STAGE_RESULT)))

        assert len(collector.events) == 1

    def test_close_reaches_every_sink(self):
        collector = CollectingEmitter()
        composite = CompositeEventEmitter([FailingEmitter(), collector])

        run_async(composite.close())

        assert collector.closed

    def test_add_emitter(self):
        composite = CompositeEventEmitter()
        composite.add_emitter(NullEventEmitter())

        assert len(composite.emitters) == 1


class TestCreateEventEmitter:
    def test_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_single_sink(self):
        emitter = create_event_emitter(["metrics"], registry=CollectorRegistry())

        assert isinstance(emitter, MetricsEventEmitter)

    def test_multiple_sinks(self):
        emitter = create_event_emitter(
            ["logging", "metrics"], registry=CollectorRegistry()
        )

        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(e) for e in emitter.emitters] == [
            LoggingEventEmitter,
            MetricsEventEmitter,
        ]

    def test_unknown_sinks_are_skipped(self):
        assert isinstance(create_event_emitter(["kafka"]), LoggingEventEmitter)


class TestMetricsEventEmitter:
    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    @pytest.fixture
    def emitter(self, registry):
        return MetricsEventEmitter(metrics=PipelineMetrics(registry))

    def test_transitions_move_status_gauge(self, emitter, registry):
        run_async(
            emitter.emit(
                _event(
                    EventType.STAGE_TRANSITION,
                    details={"from_status": "created", "to_status": "validating"},
                )
            )
        )
        run_async(
            emitter.emit(
                _event(
                    EventType.STAGE_TRANSITION,
                    details={"from_status": "validating", "to_status": "linting"},
                )
            )
        )

        def gauge(status):
            return registry.get_sample_value(
                "infragate_runs_by_status", {"status": status}
            )

        assert gauge("created") == 0
        assert gauge("validating") == 0
        assert gauge("linting") == 1

    def test_terminal_status_not_tracked_in_gauge(self, emitter, registry):
        run_async(
            emitter.emit(
                _event(
                    EventType.STAGE_TRANSITION,
                    details={"from_status": "applying", "to_status": "succeeded"},
                )
            )
        )

        assert (
            registry.get_sample_value("infragate_runs_by_status", {"status": "succeeded"})
            is None
        )

    def test_stage_results_and_failures(self, emitter, registry):
        run_async(emitter.emit(_event(EventType.STAGE_RESULT, stage="lint", status="passed")))
        run_async(
            emitter.emit(
                _event(EventType.TIMEOUT, stage="plan", details={"error_kind": "timeout"})
            )
        )
        run_async(
            emitter.emit(
                _event(
                    EventType.ERROR,
                    stage="plan",
                    details={"error_kind": "execution_error"},
                )
            )
        )

        assert registry.get_sample_value(
            "infragate_stage_results_total", {"stage": "lint", "status": "passed"}
        ) == 1
        assert registry.get_sample_value(
            "infragate_stage_failures_total", {"stage": "plan", "error_kind": "timeout"}
        ) == 1
        assert registry.get_sample_value(
            "infragate_stage_failures_total",
            {"stage": "plan", "error_kind": "execution_error"},
        ) == 1

    def test_completion_records_count_and_duration(self, emitter, registry):
        run_async(
            emitter.emit(
                _event(
                    EventType.COMPLETION,
                    status="succeeded",
                    details={"duration_seconds": 42.0},
                )
            )
        )

        assert registry.get_sample_value(
            "infragate_runs_completed_total",
            {"target_state_id": "prod/network", "status": "succeeded"},
        ) == 1
        assert registry.get_sample_value(
            "infragate_run_duration_seconds_sum", {"target_state_id": "prod/network"}
        ) == 42.0

    def test_approval_actions(self, emitter, registry):
        run_async(emitter.emit(_event(EventType.APPROVAL, details={"action": "approve"})))

        assert registry.get_sample_value(
            "infragate_approval_decisions_total", {"action": "approve"}
        ) == 1

    def test_output_is_prometheus_text(self, registry):
        PipelineMetrics(registry).record_run_completed("prod/network", "failed")

        output = generate_metrics_output(registry).decode("utf-8")

        assert "infragate_runs_completed_total" in output
        assert 'status="failed"' in output
