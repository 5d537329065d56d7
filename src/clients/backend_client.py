"""
REST adapter for the operations dashboard backend.

THIS FILE CONTAINS BACKEND-SPECIFIC LOGIC:
- endpoint paths and query parameter names
- response envelopes ({"sales": [...]}, {"data": ...}, bare lists)
- mapping of HTTP failures onto livesync.errors

Timeouts, transport errors and 5xx responses are retried with linear
backoff (delay * attempt). Return creation is retried too: the request
carries a clientEventId, so the server answers a replay with the original
result.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any
import asyncio
import logging

import httpx

from livesync.errors import (
    AuthorizationError,
    ConflictError,
    DashboardError,
    IssueCode,
    LineIssue,
    NetworkError,
    NotFoundError,
    ValidationError,
)

from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

REVIEW_STATUSES = ("approved", "rejected")


@dataclass(frozen=True)
class QueryFilters:
    """Filters a dashboard page applies to a read."""

    branch: str | None = None
    department: str | None = None
    product_search: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    group_by: str | None = None

    def to_params(self, include_client_filters: bool = False) -> dict:
        """
        Query parameters for the backend.

        Department and product search are applied locally to raw records, so
        they are only sent when asking the server for its own rollups.
        """
        params = {
            "branch": self.branch,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "groupBy": self.group_by,
        }
        if include_client_filters:
            params["department"] = self.department
            params["search"] = (self.product_search or "").strip() or None
        return {k: v for k, v in params.items() if v not in (None, "")}

    def fingerprint_filters(self) -> dict:
        """The filters that change what the backend returns for a raw read."""
        return {
            "branch": self.branch,
            "startDate": self.start_date,
            "endDate": self.end_date,
        }


def _unwrap(body: Any, *keys: str) -> Any:
    if isinstance(body, dict):
        for key in keys + ("data",):
            if key in body:
                return body[key]
    return body


def _message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or response.reason_phrase)
    return response.reason_phrase


def _issues(response: httpx.Response) -> list[LineIssue]:
    try:
        body = response.json()
    except ValueError:
        return []
    errors = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list):
        return []

    issues = []
    for error in errors:
        if isinstance(error, dict):
            issues.append(
                LineIssue(
                    IssueCode.INVALID,
                    str(error.get("field") or error.get("path") or error.get("param") or ""),
                    str(error.get("message") or error.get("msg") or ""),
                    error.get("index"),
                )
            )
        else:
            issues.append(LineIssue(IssueCode.INVALID, "", str(error)))
    return issues


class BackendClient:
    """
    Async client for the dashboard REST API.

    Usage:
        async with BackendClient(settings) as client:
            rows = await client.get_sales(QueryFilters(branch="b1"))
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        token: str | None = None,
    ):
        self.settings = settings or get_settings()
        self.language = self.settings.language

        headers = {"Accept": "application/json"}
        token = token or self.settings.api_token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        if http_client is None:
            http_client = httpx.AsyncClient(
                base_url=self.settings.api_base_url,
                timeout=self.settings.api_timeout,
            )
        http_client.headers.update(headers)
        self._http = http_client

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        params = {**(params or {}), "lang": self.language}
        attempts = self.settings.api_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                response = await self._http.request(method, path, params=params, json=json)
            except httpx.TransportError as exc:
                error = NetworkError(f"{method} {path} failed: {exc.__class__.__name__}")
            else:
                if response.status_code < 500:
                    return self._handle(response)
                error = NetworkError(_message(response), status=response.status_code)

            if attempt < attempts:
                delay = self.settings.api_retry_delay * attempt
                logger.warning(
                    "%s %s failed (%s), retry %d/%d in %.1fs",
                    method, path, error.message, attempt, attempts - 1, delay,
                )
                await asyncio.sleep(delay)

        logger.error("%s %s failed after %d attempts: %s", method, path, attempts, error.message)
        raise error

    def _handle(self, response: httpx.Response) -> Any:
        status = response.status_code
        if status < 400:
            if status == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise NetworkError("Response body is not valid JSON", status=status) from exc

        message = _message(response)
        if status in (400, 422):
            raise ValidationError(message, issues=_issues(response), status=status)
        if status in (401, 403):
            raise AuthorizationError(message, status=status)
        if status == 404:
            raise NotFoundError(message, status=status)
        if status == 409:
            try:
                body = response.json()
            except ValueError:
                body = None
            raise ConflictError(message, result=_unwrap(body, "return", "result"), status=status)
        if status == 429:
            raise NetworkError(message or "Too many requests", status=status)
        raise DashboardError(message, status=status)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_sales(self, filters: QueryFilters | None = None) -> list[dict]:
        body = await self._request("GET", "/sales", (filters or QueryFilters()).to_params())
        return _unwrap(body, "sales") or []

    async def get_orders(self, filters: QueryFilters | None = None) -> list[dict]:
        body = await self._request("GET", "/orders", (filters or QueryFilters()).to_params())
        return _unwrap(body, "orders") or []

    async def get_returns(self, filters: QueryFilters | None = None) -> list[dict]:
        body = await self._request("GET", "/returns", (filters or QueryFilters()).to_params())
        return _unwrap(body, "returns") or []

    async def get_sales_analytics(self, filters: QueryFilters | None = None) -> dict:
        """Server-side rollups (productSales, branchSales, departmentSales, ...)."""
        params = (filters or QueryFilters()).to_params(include_client_filters=True)
        body = await self._request("GET", "/sales/analytics", params)
        return body if isinstance(body, dict) else {}

    async def get_inventory(self, branch_id: str) -> list[dict]:
        body = await self._request("GET", f"/inventory/branch/{branch_id}")
        return _unwrap(body, "inventory") or []

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_return(self, payload: dict) -> dict:
        body = await self._request("POST", "/returns", json=payload)
        return _unwrap(body, "return") or {}

    async def update_return_status(self, return_id: str, status: str, review_notes: str = "") -> dict:
        if status not in REVIEW_STATUSES:
            raise ValueError(f"status must be one of {', '.join(REVIEW_STATUSES)}")
        body = await self._request(
            "PUT", f"/returns/{return_id}", json={"status": status, "reviewNotes": review_notes}
        )
        return _unwrap(body, "return") or {}
