import json
import logging

from hub_common.logging_config import (
    RegistryContextFilter,
    RegistryJSONFormatter,
    cycle_context,
    setup_logging,
    step_context,
)


def _record(message="key %s", args=("nA",)):
    return logging.LogRecord("manifest_svc.test", logging.WARNING, __file__, 10, message, args, None)


def test_json_formatter_includes_service_name():
    record = _record()
    RegistryContextFilter("manifest-service").filter(record)

    entry = json.loads(RegistryJSONFormatter().format(record))

    assert entry["service"] == "manifest-service"
    assert entry["level"] == "WARNING"
    assert entry["message"] == "key nA"
    assert "cycle_id" not in entry
    assert "trace_id" not in entry


def test_cycle_and_step_are_stamped_inside_context():
    log_filter = RegistryContextFilter("manifest-service")

    with cycle_context(42), step_context("fetch_lists"):
        inside = _record()
        log_filter.filter(inside)
    outside = _record()
    log_filter.filter(outside)

    entry = json.loads(RegistryJSONFormatter().format(inside))
    assert (entry["cycle_id"], entry["step"]) == ("42", "fetch_lists")
    assert (outside.cycle_id, outside.step) == ("-", "-")


def test_setup_logging_off(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "OFF")

    setup_logging("manifest-service")

    assert logging.getLogger().level > logging.CRITICAL
    setup_logging("manifest-service", log_level="debug")
    assert logging.getLogger().level == logging.DEBUG
