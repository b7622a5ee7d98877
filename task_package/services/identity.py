"""Bearer token validation against an OpenID Connect userinfo endpoint."""

import logging
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel, Field

from task_package.services.result import Err, ErrorKind, Ok

logger = logging.getLogger(__name__)

ADMIN_PRINCIPAL = "admin"

# Host fragment(s) -> userinfo URL built from the base URL without trailing slash
USERINFO_RULES: list[tuple[tuple[str, ...], Callable[[str], str]]] = [
    (("auth0.com",), lambda base: f"{base}/userinfo"),
    (
        ("microsoftonline.com", "login.microsoft"),
        lambda base: "https://graph.microsoft.com/v1.0/me",
    ),
    (("okta.com", "oktapreview.com"), lambda base: f"{base}/oauth2/v1/userinfo"),
    (
        ("googleapis.com", "accounts.google.com"),
        lambda base: "https://www.googleapis.com/oauth2/v1/userinfo",
    ),
    (("amazoncognito.com",), lambda base: f"{base}/oauth2/userInfo"),
]

DEFAULT_USERINFO_PATH = "/protocol/openid-connect/userinfo"

PRINCIPAL_CLAIMS = ("preferred_username", "email", "name", "sub")
ALLOW_LIST_CLAIMS = ("allow_list", "tp_allowed")


def build_userinfo_url(base_url: str) -> str:
    """Derive the userinfo endpoint for a provider base URL."""
    base = base_url.rstrip("/")
    lowered = base.lower()
    for fragments, build in USERINFO_RULES:
        if any(fragment in lowered for fragment in fragments):
            return build(base)
    return f"{base}{DEFAULT_USERINFO_PATH}"


class Identity(BaseModel):
    """Caller identity. An empty allow-list permits every definition."""

    principal: str
    allow_list: list[str] = Field(default_factory=list)

    def permits(self, definition_id: str) -> bool:
        return not self.allow_list or definition_id in self.allow_list

    def visible(self, definition_ids: list[str]) -> list[str]:
        return [d for d in definition_ids if self.permits(d)]


def _identity_from_claims(claims: dict[str, Any]) -> Identity | None:
    principal = next((claims[c] for c in PRINCIPAL_CLAIMS if claims.get(c)), None)
    if principal is None:
        return None

    allow_list: list[str] = []
    for claim in ALLOW_LIST_CLAIMS:
        value = claims.get(claim)
        if isinstance(value, list):
            allow_list = [str(v) for v in value]
            break
        if isinstance(value, str) and value:
            allow_list = [v.strip() for v in value.split(",") if v.strip()]
            break

    return Identity(principal=str(principal), allow_list=allow_list)


class IdentityGate:
    """Validates bearer tokens against a configured identity provider.

    Without a provider every request runs as the administrative principal
    with an empty allow-list.
    """

    def __init__(
        self,
        provider_url: str | None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        attempts: int = 2,
    ) -> None:
        self.provider_url = provider_url
        self.userinfo_url = build_userinfo_url(provider_url) if provider_url else None
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self._transport = transport

    async def validate(self, authorization: str | None) -> Ok[Identity] | Err:
        """Resolve the caller from an ``Authorization`` header value."""
        if self.userinfo_url is None:
            return Ok(Identity(principal=ADMIN_PRINCIPAL))

        if not authorization or not authorization.lower().startswith("bearer "):
            return Err(ErrorKind.UNAUTHENTICATED, "Missing or invalid authorization header")

        token = authorization[len("bearer "):].strip()
        if not token:
            return Err(ErrorKind.UNAUTHENTICATED, "Missing or invalid authorization header")

        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.get(
                        self.userinfo_url,
                        headers={"Authorization": f"Bearer {token}"},
                    )
            except httpx.HTTPError as e:
                last_error = e
                logger.warning(f"Identity provider request failed (attempt {attempt}): {e}")
                continue

            if response.status_code >= 500:
                last_error = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}", request=response.request, response=response
                )
                logger.warning(
                    f"Identity provider returned HTTP {response.status_code} (attempt {attempt})"
                )
                continue
            if response.status_code in (401, 403):
                return Err(ErrorKind.FORBIDDEN, "Invalid or expired token")
            if response.status_code >= 400:
                logger.warning(f"Identity provider returned HTTP {response.status_code}")
                return Err(ErrorKind.FORBIDDEN, "Token validation failed")

            try:
                claims = response.json()
            except ValueError:
                logger.warning("Identity provider returned a non-JSON userinfo body")
                return Err(ErrorKind.FORBIDDEN, "Token validation failed")

            identity = _identity_from_claims(claims) if isinstance(claims, dict) else None
            if identity is None:
                return Err(ErrorKind.FORBIDDEN, "Token did not resolve to a principal")
            return Ok(identity)

        return Err(
            ErrorKind.PROVIDER_UNAVAILABLE,
            f"Identity provider unavailable: {last_error}",
        )
