from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from .config import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_S
from .errors import NetworkError, SkillsyncError


class AuthRequiredError(SkillsyncError):
    kind = "auth"


class AccountHTTPError(NetworkError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}", status_code=status_code, retryable=status_code >= 500)
        self.body = body


@dataclass(frozen=True)
class Account:
    email: str | None
    username: str | None


class AccountClient:
    """
    Minimal client for the account endpoints the CLI needs (`whoami`, `logout`).
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "AccountClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def request(self, method: str, path: str, *, json_body: Any | None = None) -> httpx.Response:
        if not self.token:
            raise AuthRequiredError("Not logged in. Set a token with `sk config set token ...` or SK_TOKEN.")
        if not path.startswith("/"):
            path = "/" + path
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            resp = self._http.request(method.upper(), f"{self.base_url}{path}", json=json_body, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed: {e}", retryable=True) from e

        if resp.status_code == 401:
            raise AuthRequiredError("The stored token was rejected (HTTP 401).")
        if resp.status_code >= 400:
            raise AccountHTTPError(resp.status_code, resp.text)
        return resp

    def me(self) -> Account:
        data = self.request("GET", "/api/me").json()
        if not isinstance(data, dict):
            raise SkillsyncError("Unexpected /api/me response.")
        email = data.get("email")
        username = data.get("username")
        return Account(
            email=email if isinstance(email, str) else None,
            username=username if isinstance(username, str) else None,
        )

    def revoke_token(self) -> None:
        self.request("POST", "/api/tokens/revoke")
