"""
API-level tests: envelope, error mapping, health and key discovery.
"""

import base64

import pytest
from httpx import AsyncClient
from jose import jwt

from conftest import TEST_PASSWORD, login


def _b64url_to_int(value: str) -> int:
    return int.from_bytes(base64.urlsafe_b64decode(value + "=" * (-len(value) % 4)), "big")


# ============== Health ==============


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "1.0.0"
        assert "timestamp" in data


# ============== JWKS ==============


class TestJwks:
    @pytest.mark.asyncio
    async def test_jwks_is_public(self, client: AsyncClient, key_pair):
        response = await client.get("/api/auth/.well-known/jwks")

        assert response.status_code == 200
        keys = response.json()["keys"]
        assert len(keys) == 1
        assert keys[0]["kty"] == "RSA"
        assert keys[0]["alg"] == "RS256"
        numbers = key_pair.private_key.public_key().public_numbers()
        assert _b64url_to_int(keys[0]["n"]) == numbers.n
        assert _b64url_to_int(keys[0]["e"]) == numbers.e

    @pytest.mark.asyncio
    async def test_jwks_verifies_issued_tokens(self, client: AsyncClient, regular_user):
        tokens = await login(client, "fan@arenaops.io")
        jwk = (await client.get("/api/auth/.well-known/jwks")).json()["keys"][0]

        claims = jwt.decode(
            tokens["accessToken"],
            jwk,
            algorithms=["RS256"],
            audience="ArenaOps",
            issuer="ArenaOps",
        )

        assert claims["sub"] == regular_user.id

    @pytest.mark.asyncio
    async def test_stale_bearer_does_not_block_public_endpoints(self, client: AsyncClient):
        response = await client.get(
            "/api/auth/.well-known/jwks", headers={"Authorization": "Bearer expired.or.bogus"}
        )

        assert response.status_code == 200


# ============== Envelope & Errors ==============


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_success_envelope(self, client: AsyncClient, regular_user):
        response = await client.post(
            "/api/auth/login", json={"email": "fan@arenaops.io", "password": TEST_PASSWORD}
        )

        body = response.json()
        assert set(body) == {"success", "data", "message", "error"}
        assert body["success"] is True
        assert body["error"] is None
        assert body["message"] == "Login successful"

    @pytest.mark.asyncio
    async def test_unknown_route_is_not_found(self, client: AsyncClient):
        response = await client.get("/api/does-not-exist")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_wrong_method(self, client: AsyncClient):
        response = await client.get("/api/auth/login")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "METHOD_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_malformed_json_is_validation_error(self, client: AsyncClient):
        response = await client.post(
            "/api/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_missing_fields_listed_in_message(self, client: AsyncClient):
        response = await client.post("/api/auth/login", json={})

        assert response.status_code == 400
        message = response.json()["error"]["message"]
        assert "email" in message
        assert "password" in message


# ============== Middleware Wiring ==============


class TestMiddlewareWiring:
    @pytest.mark.asyncio
    async def test_rate_limit_headers_on_success(self, client: AsyncClient, regular_user):
        response = await client.post(
            "/api/auth/login", json={"email": "fan@arenaops.io", "password": TEST_PASSWORD}
        )

        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    @pytest.mark.asyncio
    async def test_global_rule_applies_to_other_paths(self, client: AsyncClient):
        response = await client.get("/api/auth/.well-known/jwks")

        assert response.headers["X-RateLimit-Limit"] == "100"

    @pytest.mark.asyncio
    async def test_request_id_header_in_dev(self, client: AsyncClient):
        response = await client.get("/api/auth/.well-known/jwks")

        assert len(response.headers["X-Request-ID"]) == 8

    @pytest.mark.asyncio
    async def test_cors_exposes_rate_limit_headers(self, client: AsyncClient):
        response = await client.get(
            "/api/auth/.well-known/jwks", headers={"Origin": "http://localhost:3000"}
        )

        exposed = response.headers["access-control-expose-headers"]
        assert "X-RateLimit-Remaining" in exposed
        assert "Retry-After" in exposed
