import logging

from kidledger.core.logging import BindRequestId, CurrentRequestId, RequestIdFilter, ResetRequestId
from kidledger.core.migrations import BuildAlembicConfig, HeadRevision


def _Record() -> logging.LogRecord:
    return logging.LogRecord("ledger.mutations", logging.INFO, __file__, 1, "posted", None, None)


def test_records_outside_a_request_get_placeholder_id():
    record = _Record()
    assert RequestIdFilter().filter(record) is True
    assert record.request_id == "-"


def test_bound_request_id_is_stamped_and_reset():
    token = BindRequestId("req-42")
    try:
        record = _Record()
        RequestIdFilter().filter(record)
        assert record.request_id == "req-42"
    finally:
        ResetRequestId(token)
    assert CurrentRequestId() == "-"


def test_alembic_config_escapes_percent_in_url():
    config = BuildAlembicConfig(url="mssql+pyodbc://ledger:p%40ss@db:1433/family")
    assert config.get_main_option("sqlalchemy.url") == "mssql+pyodbc://ledger:p%40ss@db:1433/family"
    assert config.attributes["configure_logger"] is False


def test_head_revision_is_ledger_core():
    assert HeadRevision() == "0001_ledger_core"
