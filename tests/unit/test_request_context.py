"""Tests for request context helpers: bearer extraction, tenant hints, redaction."""

import pytest
from starlette.requests import Request

from gatehouse.common.exceptions import InvalidTenantError, Unauthorized
from gatehouse.common.security import (
    REDACTED,
    build_context,
    extract_bearer,
    get_context,
    parse_tenant_id,
    sanitize,
    tenant_hint,
)


def make_request(headers=None, query=b"", method="GET", path="/auth/profile"):
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("10.0.0.9", 4242),
        "server": ("test", 80),
        "scheme": "http",
    }
    return Request(scope)


class TestExtractBearer:
    def test_bearer_token(self):
        assert extract_bearer(make_request({"Authorization": "Bearer abc.def.ghi"})) == "abc.def.ghi"

    def test_missing_header(self):
        with pytest.raises(Unauthorized, match="Access token required"):
            extract_bearer(make_request())

    @pytest.mark.parametrize("value", ["Basic abc", "Bearer", "Bearer   ", "token abc"])
    def test_wrong_format(self, value):
        with pytest.raises(Unauthorized, match="Invalid authorization format"):
            extract_bearer(make_request({"Authorization": value}))


class TestTenantHint:
    def test_body_wins(self):
        request = make_request({"X-Tenant-ID": "2"}, query=b"tenantId=3")
        assert tenant_hint(request, {"tenantId": 4}) == 4

    def test_header_before_query(self):
        request = make_request({"X-Tenant-ID": "2"}, query=b"tenantId=3")
        assert tenant_hint(request) == 2

    def test_query(self):
        assert tenant_hint(make_request(query=b"tenantId=3")) == 3

    def test_none(self):
        assert tenant_hint(make_request(), {"email": "a@x.io"}) is None

    @pytest.mark.parametrize("value", ["abc", 0, -1, True, "1.5"])
    def test_invalid(self, value):
        with pytest.raises(InvalidTenantError):
            parse_tenant_id(value)

    def test_parse(self):
        assert parse_tenant_id("12") == 12
        assert parse_tenant_id(None) is None
        assert parse_tenant_id("") is None


class TestContext:
    def test_build_context(self):
        ctx = build_context(make_request(
            {"User-Agent": "pytest", "X-Request-ID": "req-1"}, query=b"limit=5",
        ))
        assert ctx.request_id == "req-1"
        assert ctx.ip_address == "10.0.0.9"
        assert ctx.user_agent == "pytest"
        assert ctx.query == {"limit": "5"}
        assert ctx.audit_tenant_id is None

    def test_context_is_cached_on_request(self):
        request = make_request()
        assert get_context(request) is get_context(request)

    def test_audit_tenant_prefers_resolved(self):
        ctx = build_context(make_request())
        ctx.tenant_hint = 2
        assert ctx.audit_tenant_id == 2
        ctx.tenant_id = 1
        assert ctx.audit_tenant_id == 1


class TestSanitize:
    def test_redacts_credentials(self):
        body = {
            "email": "a@x.io",
            "password": "Passw0rd!",
            "signature": "0xabc",
            "nested": {"apiKey": "k", "items": [{"token": "t", "name": "n"}]},
        }
        assert sanitize(body) == {
            "email": "a@x.io",
            "password": REDACTED,
            "signature": REDACTED,
            "nested": {"apiKey": REDACTED, "items": [{"token": REDACTED, "name": "n"}]},
        }

    def test_leaves_input_untouched(self):
        body = {"password": "x"}
        sanitize(body)
        assert body == {"password": "x"}
