"""
Unit tests for worker logging helpers and the failure taxonomy.
"""
import asyncio
import json
import logging

import pytest

from app.core.exceptions import DuplicateEvent, TransientInfraError, ValidationError
from app.services.payments.exceptions import InvalidPaymentPayloadError
from app.services.subscriptions.exceptions import GrantRefusedError
from app.utils.logging_helpers import (
    classify_error,
    get_correlation_id,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

LOGGER = "app.utils.logging_helpers"


class TestClassifyError:
    @pytest.mark.parametrize("exc", [
        ValidationError("bad"),
        InvalidPaymentPayloadError("bad"),
        DuplicateEvent("prodamus", "E1"),
        GrantRefusedError(0, 30),
    ])
    def test_domain(self, exc):
        assert classify_error(exc) == "domain_error"

    @pytest.mark.parametrize("exc", [
        TransientInfraError("db"),
        ConnectionError("reset"),
        asyncio.TimeoutError(),
    ])
    def test_infra(self, exc):
        assert classify_error(exc) == "infra_error"

    def test_unexpected(self):
        assert classify_error(KeyError("x")) == "unexpected_error"


class TestWorkerIterationLogs:
    def test_start_sets_correlation_id(self, caplog):
        with caplog.at_level(logging.INFO, logger=LOGGER):
            correlation_id = log_worker_iteration_start("membership_enforcer", iteration_number=3)
        assert get_correlation_id() == correlation_id
        data = json.loads(caplog.records[-1].getMessage())
        assert data["event"] == "ITERATION_START"
        assert data["iteration_number"] == 3
        assert data["correlation_id"] == correlation_id

    @pytest.mark.parametrize("outcome,level", [
        ("success", logging.INFO),
        ("skipped", logging.INFO),
        ("degraded", logging.WARNING),
        ("failed", logging.ERROR),
    ])
    def test_end_level_follows_outcome(self, caplog, outcome, level):
        with caplog.at_level(logging.INFO, logger=LOGGER):
            log_worker_iteration_end("membership_enforcer", outcome=outcome, items_processed=2, duration_ms=12.34)
        record = caplog.records[-1]
        data = json.loads(record.getMessage())
        assert record.levelno == level
        assert data["outcome"] == outcome
        assert data["items_processed"] == 2
        assert data["duration_ms"] == 12.3
        assert "error_type" not in data
