"""Async client for the Hunter.io email finder and account APIs."""

from __future__ import annotations

import os
import re
from typing import Any

import httpx

from app.services.errors import UpstreamError
from app.services.sourcing.verification import AccountStatus, EmailMatch

_NON_ALNUM = re.compile(r"[^a-z0-9]")
MAX_DOMAIN_STEM = 30


class HunterError(UpstreamError):
    """Base error for Hunter client failures."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str = "HUNTER_ERROR") -> None:
        super().__init__(message, status_code=status_code, code=code)


class HunterAuthError(HunterError):
    """Raised when Hunter rejects the API key (HTTP 401)."""

    def __init__(self, message: str = "Invalid Hunter.io API key") -> None:
        super().__init__(message, status_code=401, code="HUNTER_401")


class HunterRateLimitError(HunterError):
    """Raised when Hunter responds with HTTP 429."""

    def __init__(self, message: str = "Hunter.io rate limit exceeded") -> None:
        super().__init__(message, status_code=429, code="HUNTER_429")


class HunterQuotaError(HunterError):
    """Raised when the account has no searches left (HTTP 402)."""

    def __init__(self, message: str = "Hunter.io quota exhausted") -> None:
        super().__init__(message, status_code=402, code="HUNTER_402")


class HunterSchemaError(HunterError):
    """Raised when Hunter response schema does not match expectations."""

    def __init__(self, message: str = "Unexpected Hunter response schema", *, status_code: int = 200) -> None:
        super().__init__(message, status_code=status_code, code="HUNTER_SCHEMA_ERR")


def split_full_name(full_name: str | None) -> tuple[str | None, str | None]:
    """First token is the first name; everything after it is the last name."""
    parts = (full_name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


def company_domain(company: str | None) -> str | None:
    """Guess a domain from a company name: lowercase alphanumerics, capped, plus ``.com``."""
    stem = _NON_ALNUM.sub("", (company or "").lower())[:MAX_DOMAIN_STEM]
    return f"{stem}.com" if stem else None


class HunterClient:
    """Minimal Hunter.io API client wrapper."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.hunter.io",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("HUNTER_API_KEY is required to create a HunterClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> "HunterClient":
        """Instantiate the client using the HUNTER_API_KEY environment variable."""
        return cls(api_key=os.getenv("HUNTER_API_KEY", ""))

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def find(
        self,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        full_name: str | None = None,
        company: str | None = None,
        domain: str | None = None,
    ) -> EmailMatch:
        """Look up the most likely address for a person at a company.

        A lookup with no hit returns an empty match rather than raising.
        """
        if not first_name and full_name:
            first_name, split_last = split_full_name(full_name)
            last_name = last_name or split_last
        if not first_name:
            raise ValueError("First name is required")

        params: dict[str, str] = {"api_key": self._api_key, "first_name": first_name}
        search_domain = domain or company_domain(company)
        if search_domain:
            params["domain"] = search_domain
        elif company:
            params["company"] = company
        else:
            raise ValueError("Either domain or company is required")
        if last_name:
            params["last_name"] = last_name

        data = await self._get("/v2/email-finder", params)
        email = data.get("email")
        if not email:
            return EmailMatch(email=None, confidence=0)
        sources = data.get("sources") or []
        return EmailMatch(
            email=str(email),
            confidence=int(data.get("score") or 0),
            sources=[str(item.get("domain")) for item in sources if isinstance(item, dict) and item.get("domain")],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            position=data.get("position"),
        )

    async def account_status(self) -> AccountStatus:
        data = await self._get("/v2/account", {"api_key": self._api_key})
        requests = data.get("requests") or {}
        searches = requests.get("searches") or {}
        verifications = requests.get("verifications") or {}
        return AccountStatus(
            verifications_available=int(searches.get("available") or 0),
            searches_used=int(searches.get("used") or 0),
            verifier_checks_available=int(verifications.get("available") or 0),
            plan_name=data.get("plan_name"),
        )

    async def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._http.get(path, params=params)
        except httpx.HTTPError as exc:
            raise HunterError(f"HTTP error calling Hunter: {type(exc).__name__}") from exc

        if response.status_code == 401:
            raise HunterAuthError()
        if response.status_code == 402:
            raise HunterQuotaError()
        if response.status_code == 429:
            raise HunterRateLimitError()
        if response.status_code >= 400:
            detail = response.text[:200]
            try:
                errors = response.json().get("errors") or []
                if errors and isinstance(errors[0], dict):
                    detail = errors[0].get("details") or detail
            except Exception:  # pragma: no cover - best effort
                pass
            raise HunterError(
                f"Hunter request failed: {response.status_code} - {detail}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise HunterSchemaError("Failed to decode Hunter response JSON.", status_code=response.status_code) from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise HunterSchemaError("`data` missing from Hunter response.", status_code=response.status_code)
        return data

    async def __aenter__(self) -> "HunterClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
