"""Integration tests for password registration, login, profile and logout."""

import pytest

REGISTER = {"email": "a@x.io", "password": "Passw0rd!", "name": "A", "tenantId": 1}
LOGIN = {"email": "a@x.io", "password": "Passw0rd!"}


async def _register_and_login(client) -> str:
    resp = await client.post("/auth/register", json=REGISTER)
    assert resp.status_code == 201
    resp = await client.post("/auth/login", json=LOGIN)
    assert resp.status_code == 200
    return resp.json()["token"]


class TestHappyPath:
    async def test_register_login_profile(self, client, auth_headers):
        resp = await client.post("/auth/register", json=REGISTER)
        assert resp.status_code == 201
        data = resp.json()
        assert data["message"] == "User registered successfully"
        assert data["user"]["email"] == "a@x.io"
        assert data["user"]["isVerified"] is False
        assert data["token"]
        assert data["sessionId"]

        resp = await client.post("/auth/login", json=LOGIN)
        assert resp.status_code == 200
        assert resp.json()["message"] == "Login successful"
        token = resp.json()["token"]

        resp = await client.get("/auth/profile", headers=auth_headers(token))
        assert resp.status_code == 200
        assert resp.json()["profile"]["email"] == "a@x.io"
        assert resp.json()["profile"]["tenantId"] == 1

    async def test_api_prefix(self, client, auth_headers):
        token = await _register_and_login(client)
        resp = await client.get("/api/auth/profile", headers=auth_headers(token))
        assert resp.status_code == 200

    async def test_introspection(self, client, auth_headers):
        token = await _register_and_login(client)
        resp = await client.get("/auth/verify", headers=auth_headers(token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Token is valid"
        assert data["user"]["email"] == "a@x.io"
        assert data["user"]["authMethod"] == "password"

    async def test_update_profile(self, client, auth_headers):
        token = await _register_and_login(client)
        resp = await client.put("/auth/profile", json={"name": "Alicia"}, headers=auth_headers(token))
        assert resp.status_code == 200
        assert resp.json()["user"]["name"] == "Alicia"
        resp = await client.get("/auth/profile", headers=auth_headers(token))
        assert resp.json()["profile"]["name"] == "Alicia"

    async def test_login_refreshes_cached_profile(self, client, auth_headers):
        resp = await client.post("/auth/register", json=REGISTER)
        token = resp.json()["token"]
        resp = await client.get("/auth/profile", headers=auth_headers(token))
        assert resp.json()["profile"]["lastLoginAt"] is None

        resp = await client.post("/auth/login", json=LOGIN)
        token = resp.json()["token"]
        resp = await client.get("/auth/profile", headers=auth_headers(token))
        assert resp.json()["profile"]["lastLoginAt"] is not None

    async def test_rate_limit_headers(self, client):
        resp = await client.post("/auth/register", json=REGISTER)
        assert resp.headers["RateLimit-Limit"] == "100"
        assert resp.headers["RateLimit-Remaining"] == "99"
        assert "X-Request-ID" in resp.headers

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestLoginFailures:
    async def test_unknown_user_and_bad_password_identical(self, client):
        await client.post("/auth/register", json=REGISTER)
        unknown = await client.post("/auth/login", json={"email": "unknown@x.io", "password": "whatever"})
        wrong = await client.post("/auth/login", json={"email": "a@x.io", "password": "wrong"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == {"error": "Invalid email or password"}
        assert unknown.content == wrong.content

    async def test_duplicate_registration(self, client):
        await client.post("/auth/register", json=REGISTER)
        resp = await client.post("/auth/register", json={**REGISTER, "email": "A@X.io"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "User already exists with this email or wallet address"

    async def test_unknown_tenant(self, client):
        resp = await client.post("/auth/register", json={**REGISTER, "tenantId": 99})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid tenant", "message": "Tenant not found"}

    async def test_malformed_tenant_header(self, client):
        resp = await client.post("/auth/login", json=LOGIN, headers={"X-Tenant-ID": "abc"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid tenant"


class TestValidation:
    @pytest.mark.parametrize("body,field", [
        ({**REGISTER, "email": "not-an-email"}, "email"),
        ({**REGISTER, "password": "short"}, "password"),
        ({**REGISTER, "password": "p" * 73}, "password"),
        ({**REGISTER, "name": ""}, "name"),
    ])
    async def test_register_validation(self, client, body, field):
        resp = await client.post("/auth/register", json=body)
        assert resp.status_code == 400
        data = resp.json()
        assert data["error"] == "Validation failed"
        assert field in [d["field"] for d in data["details"]]

    async def test_missing_fields(self, client):
        resp = await client.post("/auth/login", json={})
        assert resp.status_code == 400
        fields = {d["field"] for d in resp.json()["details"]}
        assert {"email", "password"} <= fields


class TestBearer:
    async def test_missing_token(self, client):
        resp = await client.get("/auth/profile")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Access token required"}

    async def test_wrong_scheme(self, client):
        resp = await client.get("/auth/profile", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid authorization format"}

    async def test_garbage_token(self, client, auth_headers):
        resp = await client.get("/auth/profile", headers=auth_headers("abc.def.ghi"))
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid or expired token"}

    async def test_logout_revokes_token(self, client, auth_headers):
        token = await _register_and_login(client)
        resp = await client.post("/auth/logout", headers=auth_headers(token))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logout successful"

        resp = await client.get("/auth/profile", headers=auth_headers(token))
        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid or expired token"

    async def test_token_from_other_tenant(self, client, auth_headers):
        token = await _register_and_login(client)
        resp = await client.get("/auth/profile", headers=auth_headers(token, **{"X-Tenant-ID": "2"}))
        assert resp.status_code == 403
        assert resp.json() == {"error": "Tenant access denied"}

    async def test_token_matching_tenant_header(self, client, auth_headers):
        token = await _register_and_login(client)
        resp = await client.get("/auth/profile", headers=auth_headers(token, **{"X-Tenant-ID": "1"}))
        assert resp.status_code == 200
