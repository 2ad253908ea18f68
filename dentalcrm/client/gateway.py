# dentalcrm/client/gateway.py
import logging
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"


class TokenStore:
    """In-memory bearer token holder. Swap for a persistent store in a real UI shell."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: Optional[str]) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class SecureApiClient:
    """Thin async wrapper over the REST API.

    Adds the bearer token (and an optional required-role header) to every
    call. A 401 drops the stored token and hands the login path to
    ``on_unauthorized``. Any non-2xx response raises ``httpx.HTTPStatusError``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000/api/v1",
        token_store: Optional[TokenStore] = None,
        on_unauthorized: Optional[Callable[[str], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_store = token_store or TokenStore()
        self.on_unauthorized = on_unauthorized
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=timeout,
        )

    def _headers(self, required_role: Optional[str] = None) -> Dict[str, str]:
        headers = {}
        token = self.token_store.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if required_role:
            headers["X-Required-Role"] = required_role
        return headers

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        required_role: Optional[str] = None,
    ) -> httpx.Response:
        if params:
            # "all" is the UI's "no filter" value
            params = {k: v for k, v in params.items() if v is not None and v != "" and v != "all"}
        response = await self._client.request(
            method, path, params=params, json=json, data=data, headers=self._headers(required_role)
        )

        if response.status_code == 401:
            logger.warning(f"Unauthorized response for {method} {path}; clearing token")
            self.token_store.clear()
            if self.on_unauthorized:
                self.on_unauthorized(LOGIN_PATH)
        response.raise_for_status()
        return response

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        response = await self.request("GET", path, params=params, **kwargs)
        return response.json()

    async def post(self, path: str, json: Any = None, **kwargs) -> Any:
        response = await self.request("POST", path, json=json, **kwargs)
        return response.json() if response.content else None

    async def put(self, path: str, json: Any = None, **kwargs) -> Any:
        response = await self.request("PUT", path, json=json, **kwargs)
        return response.json() if response.content else None

    async def patch(self, path: str, json: Any = None, **kwargs) -> Any:
        response = await self.request("PATCH", path, json=json, **kwargs)
        return response.json() if response.content else None

    async def delete(self, path: str, **kwargs) -> None:
        await self.request("DELETE", path, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()
