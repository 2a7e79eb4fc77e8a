from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Protocol

import httpx

PORTFOLIO_API_TIMEOUT_SEC = float(os.getenv("PORTFOLIO_API_TIMEOUT_SEC", "15"))


class PortfolioBackendError(RuntimeError):
    """Raised when a portfolio backend request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PortfolioBackend(Protocol):
    async def get_details(self, user_id: str) -> Dict[str, Any]:
        ...

    async def get_performance(self, user_id: str, date_range: str) -> Dict[str, Any]:
        ...

    async def get_report(self, user_id: str) -> Dict[str, Any]:
        ...

    async def get_activities(
        self,
        user_id: str,
        *,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        symbol: Optional[str] = None,
        account_id: Optional[str] = None,
        take: int = 20,
    ) -> List[Dict[str, Any]]:
        ...

    async def get_accounts(self, user_id: str) -> List[Dict[str, Any]]:
        ...

    async def update_account_balance(
        self, user_id: str, account_id: str, amount: float, currency: str
    ) -> None:
        ...


class PortfolioApiClient:
    """
    Thin async client for the portfolio backend. The agent acts on behalf of
    the user via a service token plus the `X-User-Id` header.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout_s: float = PORTFOLIO_API_TIMEOUT_SEC,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self._token = token
        self._timeout = httpx.Timeout(timeout_s)
        self._client = client

    def _headers(self, user_id: str) -> Dict[str, str]:
        headers = {"Accept": "application/json", "X-User-Id": str(user_id)}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        user_id: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, params=clean_params, json=json, headers=self._headers(user_id)
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(
                        method, url, params=clean_params, json=json, headers=self._headers(user_id)
                    )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PortfolioBackendError(
                f"{method} {path} failed with status {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise PortfolioBackendError(f"{method} {path} failed: {type(exc).__name__}") from exc

        if not response.content:
            return None
        return response.json()

    async def get_details(self, user_id: str) -> Dict[str, Any]:
        data = await self._request(
            "GET", "/api/v1/portfolio/details", user_id, params={"withMarkets": "false"}
        )
        return data if isinstance(data, dict) else {}

    async def get_performance(self, user_id: str, date_range: str) -> Dict[str, Any]:
        data = await self._request(
            "GET", "/api/v2/portfolio/performance", user_id, params={"range": date_range}
        )
        return data if isinstance(data, dict) else {}

    async def get_report(self, user_id: str) -> Dict[str, Any]:
        data = await self._request("GET", "/api/v1/portfolio/report", user_id)
        return data if isinstance(data, dict) else {}

    async def get_activities(
        self,
        user_id: str,
        *,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        symbol: Optional[str] = None,
        account_id: Optional[str] = None,
        take: int = 20,
    ) -> List[Dict[str, Any]]:
        params = {
            "startDate": start_date,
            "endDate": end_date,
            "query": symbol.lower() if symbol else None,
            "accounts": account_id,
            "take": int(take),
        }
        data = await self._request("GET", "/api/v1/order", user_id, params=params)
        if isinstance(data, dict):
            items = data.get("activities")
            return [a for a in items if isinstance(a, dict)] if isinstance(items, list) else []
        return []

    async def get_accounts(self, user_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/v1/account", user_id)
        if isinstance(data, dict):
            items = data.get("accounts")
            return [a for a in items if isinstance(a, dict)] if isinstance(items, list) else []
        return []

    async def update_account_balance(
        self, user_id: str, account_id: str, amount: float, currency: str
    ) -> None:
        await self._request(
            "POST",
            f"/api/v1/account/{account_id}/balance",
            user_id,
            json={"amount": amount, "currency": currency},
        )
