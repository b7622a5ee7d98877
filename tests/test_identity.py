"""Tests for bearer token validation."""

import httpx
import pytest

from task_package.services.identity import Identity, IdentityGate, build_userinfo_url
from task_package.services.result import Err, ErrorKind, Ok


@pytest.mark.parametrize(
    ("base_url", "expected"),
    [
        ("https://acme.auth0.com/", "https://acme.auth0.com/userinfo"),
        ("https://login.microsoftonline.com/tenant", "https://graph.microsoft.com/v1.0/me"),
        ("https://acme.okta.com", "https://acme.okta.com/oauth2/v1/userinfo"),
        ("https://accounts.google.com", "https://www.googleapis.com/oauth2/v1/userinfo"),
        (
            "https://acme.auth.eu-west-1.amazoncognito.com",
            "https://acme.auth.eu-west-1.amazoncognito.com/oauth2/userInfo",
        ),
        (
            "https://sso.example.com/realms/main/",
            "https://sso.example.com/realms/main/protocol/openid-connect/userinfo",
        ),
    ],
)
def test_build_userinfo_url(base_url, expected):
    assert build_userinfo_url(base_url) == expected


class TestIdentity:
    def test_empty_allow_list_permits_everything(self):
        identity = Identity(principal="alice")
        assert identity.permits("tp01")

    def test_allow_list_restricts(self):
        identity = Identity(principal="alice", allow_list=["tp01"])
        assert identity.permits("tp01")
        assert not identity.permits("tp02")
        assert identity.visible(["tp01", "tp02"]) == ["tp01"]


class TestIdentityGate:
    """Tests for IdentityGate against a mocked provider."""

    def setup_method(self):
        self.calls: list[httpx.Request] = []

    def _gate(self, handler) -> IdentityGate:
        def record(request: httpx.Request) -> httpx.Response:
            self.calls.append(request)
            return handler(request)

        return IdentityGate(
            "https://sso.example.com/realms/main",
            transport=httpx.MockTransport(record),
        )

    async def test_no_provider_runs_as_admin(self):
        result = await IdentityGate(None).validate(None)

        assert isinstance(result, Ok)
        assert result.value.principal == "admin"
        assert result.value.allow_list == []

    async def test_missing_header_is_unauthenticated(self):
        gate = self._gate(lambda request: httpx.Response(200, json={"sub": "x"}))

        result = await gate.validate(None)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.UNAUTHENTICATED
        assert self.calls == []

    async def test_valid_token(self):
        claims = {"preferred_username": "alice", "email": "a@example.com", "allow_list": ["tp01"]}
        gate = self._gate(lambda request: httpx.Response(200, json=claims))

        result = await gate.validate("Bearer token-123")

        assert isinstance(result, Ok)
        assert result.value.principal == "alice"
        assert result.value.allow_list == ["tp01"]
        assert self.calls[0].headers["Authorization"] == "Bearer token-123"
        assert str(self.calls[0].url).endswith("/protocol/openid-connect/userinfo")

    async def test_principal_falls_back_to_sub(self):
        gate = self._gate(lambda request: httpx.Response(200, json={"sub": "user-7"}))

        result = await gate.validate("Bearer t")

        assert isinstance(result, Ok)
        assert result.value.principal == "user-7"

    async def test_rejected_token_is_forbidden(self):
        gate = self._gate(lambda request: httpx.Response(401, json={"error": "invalid_token"}))

        result = await gate.validate("Bearer expired")

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.FORBIDDEN
        assert len(self.calls) == 1

    async def test_unreachable_provider_is_retried_then_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gate = self._gate(handler)

        result = await gate.validate("Bearer t")

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PROVIDER_UNAVAILABLE
        assert result.http_status == 503
        assert len(self.calls) == 2
