import pytest

from dora_metrics.exceptions import (
    ErrorCode,
    InvalidOrganizationFormatError,
    MissingOrganizationError,
    OrganizationAccessError,
    ValidationError,
    classify_exception,
    error_body,
)
from dora_metrics.services.databricks import DatabaseError, QueryTimeoutError, WarehouseConnectionError


@pytest.mark.parametrize(
    "exc, status_code, code",
    [
        (QueryTimeoutError("query timed out after 30s"), 504, ErrorCode.TIMEOUT_ERROR),
        (WarehouseConnectionError("invalid token"), 503, ErrorCode.DATABASE_UNAVAILABLE),
        (DatabaseError("syntax error"), 503, ErrorCode.DATABASE_UNAVAILABLE),
        (TimeoutError(), 504, ErrorCode.TIMEOUT_ERROR),
        (RuntimeError("operation timed out"), 504, ErrorCode.TIMEOUT_ERROR),
        (RuntimeError("connect ECONNREFUSED 10.0.0.1:443"), 503, ErrorCode.DATABASE_UNAVAILABLE),
        (RuntimeError("Databricks session expired"), 503, ErrorCode.DATABASE_UNAVAILABLE),
        (KeyError("deployment_date"), 500, ErrorCode.INTERNAL_ERROR),
    ],
)
def test_classify_exception(exc, status_code, code):
    assert classify_exception(exc)[:2] == (status_code, code)


def test_error_body():
    body = error_body(ErrorCode.VALIDATION_ERROR, "bad", [{"field": "endDate", "message": "bad"}])

    assert body["error"] is True
    assert body["code"] == "VALIDATION_ERROR"
    assert body["message"] == "bad"
    assert body["details"] == [{"field": "endDate", "message": "bad"}]
    assert body["timestamp"]
    assert "details" not in error_body(ErrorCode.INTERNAL_ERROR, "boom")


def test_http_errors():
    assert MissingOrganizationError().status_code == 401
    assert InvalidOrganizationFormatError("a!").code == ErrorCode.INVALID_ORGANIZATION_FORMAT
    denied = OrganizationAccessError("ghost-org")
    assert denied.status_code == 403
    assert denied.detail == "Access denied to organization: ghost-org"
    invalid = ValidationError("endDate must be after startDate", field="endDate")
    assert invalid.status_code == 400
    assert invalid.details == [{"field": "endDate", "message": "endDate must be after startDate"}]
