import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from shared.core import ServiceHealth, get_logger
from shared.core.health import HealthStatus
from shared.core.logging_config import SecurityFilter, StructuredFormatter

def _client(**kwargs):
    health = ServiceHealth("pharmacy-checkout", "1.2.3", engine=create_engine("sqlite://"), **kwargs)
    app = FastAPI()
    app.include_router(health.create_health_router())
    return TestClient(app)

def test_readiness_reports_dependency_checks():
    client = _client(dependency_checks={"gateway:credentials": lambda: {"componentType": "gateway"}})

    body = client.get("/health/ready").json()

    assert body["checks"]["database:connectivity"]["status"] == "pass"
    assert body["checks"]["gateway:credentials"]["status"] == "pass"

def test_failed_dependency_makes_service_unready():
    def broken():
        raise RuntimeError("credentials rejected")

    response = _client(dependency_checks={"gateway:credentials": broken}).get("/health/ready")

    assert response.status_code == 503
    assert response.json()["checks"]["gateway:credentials"]["output"] == "credentials rejected"

def test_startup_requires_configured_credentials(monkeypatch):
    monkeypatch.delenv("MPESA_PASSKEY", raising=False)

    response = _client(required_env=["MPESA_PASSKEY"]).get("/health/startup")

    assert response.status_code == 503
    assert "MPESA_PASSKEY" in response.json()["checks"]["config:environment"]["output"]

def test_overall_status_takes_the_worst_check():
    checks = {"a": {"status": HealthStatus.PASS}, "b": {"status": HealthStatus.WARN}}
    assert ServiceHealth.calculate_overall_status(checks) is HealthStatus.WARN
    checks["c"] = {"status": HealthStatus.FAIL}
    assert ServiceHealth.calculate_overall_status(checks) is HealthStatus.FAIL

def _record(msg, extra_fields=None):
    record = logging.LogRecord("test", logging.INFO, __file__, 1, msg, None, None)
    if extra_fields is not None:
        record.extra_fields = extra_fields
    return record

def test_security_filter_redacts_credentials_and_phones():
    record = _record("token exchange passkey=bfb279f9aa9b for 254712345678", {"Authorization": "Bearer abc", "note": "Bearer xyz"})

    SecurityFilter().filter(record)
    formatted = json.loads(StructuredFormatter("pharmacy-checkout").format(record))

    assert "bfb279f9aa9b" not in formatted["message"]
    assert formatted["message"].endswith("for ***678")
    assert formatted["custom"] == {"Authorization": "***REDACTED***", "note": "Bearer ***REDACTED***"}

def test_payment_ids_are_grouped():
    record = _record("Transaction 3 marked COMPLETED", {"checkout_request_id": "ws_CO_1", "transaction_id": 3, "source": "CALLBACK"})

    formatted = json.loads(StructuredFormatter("pharmacy-checkout").format(record))

    assert formatted["payment"] == {"checkout_request_id": "ws_CO_1", "transaction_id": 3}
    assert formatted["custom"] == {"source": "CALLBACK"}
    assert formatted["service"] == "pharmacy-checkout"

def test_bound_logger_fields_are_merged(caplog):
    logger = get_logger("pharmacy_checkout.test", component="gateway").bind(order_id=9)

    with caplog.at_level(logging.INFO, logger="pharmacy_checkout.test"):
        logger.info("push sent", extra={'extra_fields': {'amount': "500"}})

    assert caplog.records[-1].extra_fields == {"component": "gateway", "order_id": 9, "amount": "500"}
