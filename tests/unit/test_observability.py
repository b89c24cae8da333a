"""
Unit tests for structured logging and metric helpers.
"""

import io
import json
import logging

import pytest

from market_etl.observability.logger import EtlJsonFormatter, get_logger, log_operation, setup_logger
from market_etl.observability.metrics import (
    cache_purged_total,
    generate_metrics,
    get_counter_value,
    increment_counter,
)


def capture(name: str) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        EtlJsonFormatter(fmt="%(timestamp)s %(level)s %(logger)s %(message)s")
    )
    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, stream


def records(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


@pytest.mark.unit
class TestLogging:

    def test_json_fields(self):
        logger, stream = capture("test_json_fields")

        logger.warning("Cache hit", extra={"source": "coingecko", "cache_key": "COINS_BITCOIN"})

        [record] = records(stream)
        assert record["message"] == "Cache hit"
        assert record["level"] == "WARNING"
        assert record["logger"] == "test_json_fields"
        assert record["source"] == "coingecko"
        assert record["cache_key"] == "COINS_BITCOIN"
        assert "timestamp" in record

    def test_log_operation_success_and_failure(self):
        logger, stream = capture("test_log_operation")

        with log_operation("sweep", logger=logger, pending=3):
            pass
        with pytest.raises(RuntimeError):
            with log_operation("sweep", logger=logger):
                raise RuntimeError("db down")

        started, completed, _, failed = records(stream)
        assert started["message"] == "Starting: sweep"
        assert completed["status"] == "success"
        assert completed["pending"] == 3
        assert failed["status"] == "error"
        assert failed["error_type"] == "RuntimeError"
        assert failed["error_message"] == "db down"

    def test_package_loggers_share_root_handler(self):
        root = get_logger()
        child = get_logger("market_etl.cache.repository")

        assert root.handlers
        assert not child.handlers
        assert child.getEffectiveLevel() == root.level

    def test_text_format(self):
        logger = setup_logger("test_text_format", level="debug", format_type="text")

        assert logger.level == logging.DEBUG
        assert not isinstance(logger.handlers[0].formatter, EtlJsonFormatter)


@pytest.mark.unit
class TestMetrics:

    def test_counter_value_helper(self):
        before = get_counter_value(cache_purged_total, source="metrics_test")

        increment_counter(cache_purged_total, value=3, source="metrics_test")

        assert get_counter_value(cache_purged_total, source="metrics_test") == before + 3

    def test_generate_metrics(self):
        increment_counter(cache_purged_total, source="metrics_test")

        output = generate_metrics().decode("utf-8")

        assert "etl_cache_purged_total" in output
