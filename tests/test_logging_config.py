import json
import logging
import sys

from contract_service.audit import AUDIT_LOGGER_NAME, AuditLog
from contract_service.logging_config import JsonFormatter


def make_record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("contract_service.workflow", logging.INFO, __file__, 1, msg, args, None)
    record.__dict__.update(extra)
    return record


def test_json_line_shape():
    payload = json.loads(JsonFormatter().format(make_record()))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "contract_service.workflow"
    assert payload["message"] == "hello world"
    assert "traceId" not in payload


def test_trace_id_is_a_top_level_field():
    record = make_record(traceId="trace-7", contractId="CONTRACT-1A2B3C4D")
    payload = json.loads(JsonFormatter().format(record))

    assert payload["traceId"] == "trace-7"
    assert payload["contractId"] == "CONTRACT-1A2B3C4D"


def test_exception_is_included():
    try:
        raise ValueError("bad value")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))
    assert "ValueError: bad value" in payload["exception"]


def test_audit_records_carry_structured_fields(caplog):
    with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER_NAME):
        AuditLog().log_contract_retrieved("CONTRACT-1A2B3C4D", trace_id="trace-8")

    payload = json.loads(JsonFormatter().format(caplog.records[-1]))
    assert payload["traceId"] == "trace-8"
    assert payload["auditEvent"] == "CONTRACT_RETRIEVED"
    assert payload["auditStatus"] == "SUCCESS"
