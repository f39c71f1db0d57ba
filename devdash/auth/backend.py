"""
Client for the DevDash backend auth endpoints.

Calls are blocking (requests); async callers run them with `asyncio.to_thread`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from devdash.auth.errors import ExpiredSessionError, NetworkError, ValidationError
from devdash.auth.models import User

logger = logging.getLogger(__name__)

# Gateway errors mean the backend itself is unreachable.
_UNREACHABLE_STATUSES = (502, 503, 504)


class TokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1)
    user: Dict[str, Any]


class GitHubUserInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    login: str = Field(min_length=1)
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")
    name: Optional[str] = None


class GitHubOAuthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1)
    token_type: str = Field(default="bearer", alias="tokenType")
    scope: str = ""
    github_user: GitHubUserInfo = Field(alias="gitHubUser")


class GitHubConnectionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connected: bool
    github_username: str = Field(default="", alias="gitHubUsername")
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")
    connection_method: str = Field(default="pat", alias="connectionMethod")


class BackendClient:
    """Token exchange, refresh and GitHub link endpoints of the backend API."""

    def __init__(self, base_url: str, *, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, *, payload: Optional[Dict[str, Any]] = None, bearer: Optional[str] = None) -> requests.Response:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        url = f"{self.base_url}{path}"
        try:
            r = requests.post(url, json=payload or {}, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Backend request failed: POST %s (%s)", path, type(e).__name__)
            raise NetworkError(f"Backend unreachable: {type(e).__name__}") from e
        if r.status_code in _UNREACHABLE_STATUSES:
            logger.warning("Backend unavailable: POST %s status=%d", path, r.status_code)
            raise NetworkError(f"Backend unavailable (status={r.status_code})")
        return r

    @staticmethod
    def _json(r: requests.Response) -> Any:
        try:
            return r.json()
        except ValueError:
            return None

    def exchange_code(self, code: str, redirect_uri: str) -> Tuple[str, User]:
        """
        Exchange an authorization code for `{accessToken, user}`.

        Raises:
            NetworkError: backend unreachable
            ValidationError: exchange rejected or malformed response
        """
        r = self._post("/auth/token", payload={"code": code, "redirectUri": redirect_uri})
        if r.status_code != 200:
            # Avoid leaking sensitive info; include minimal context.
            raise ValidationError(f"Token exchange failed (status={r.status_code})")
        try:
            data = TokenResponse.model_validate(self._json(r))
            return data.access_token, User.from_dict(data.user)
        except (SchemaError, ValueError) as e:
            raise ValidationError("Invalid token response") from e

    def refresh(self, token: str) -> Tuple[str, User]:
        """
        Refresh the current bearer token.

        Raises:
            NetworkError: backend unreachable
            ExpiredSessionError: refresh rejected
        """
        r = self._post("/auth/refresh", bearer=token)
        if r.status_code != 200:
            raise ExpiredSessionError(f"Token refresh failed (status={r.status_code})")
        try:
            data = TokenResponse.model_validate(self._json(r))
            return data.access_token, User.from_dict(data.user)
        except (SchemaError, ValueError) as e:
            raise ExpiredSessionError("Invalid refresh response") from e

    def exchange_github_code(self, code: str, redirect_uri: str, *, bearer: Optional[str]) -> GitHubOAuthResponse:
        r = self._post("/auth/github/oauth/token", payload={"code": code, "redirectUri": redirect_uri}, bearer=bearer)
        if r.status_code != 200:
            raise ValidationError(f"GitHub authorization failed (status={r.status_code})")
        try:
            return GitHubOAuthResponse.model_validate(self._json(r))
        except SchemaError as e:
            raise ValidationError("Invalid GitHub authorization response") from e

    def connect_github(self, pat: str, *, bearer: Optional[str]) -> GitHubConnectionResponse:
        r = self._post("/auth/github/connect", payload={"personalAccessToken": pat}, bearer=bearer)
        if r.status_code != 200:
            raise ValidationError("Invalid token")
        try:
            data = GitHubConnectionResponse.model_validate(self._json(r))
        except SchemaError as e:
            raise ValidationError("Invalid token") from e
        if not data.connected or not data.github_username:
            raise ValidationError("Invalid token")
        return data
