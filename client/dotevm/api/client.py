"""HTTP client for the dotevm remote store."""

import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from dotevm.config import get_server_url
from dotevm.errors import (
    AuthExpiredError,
    ConnectivityError,
    ConstraintError,
    NotFoundError,
    RemoteError,
    ValidationError,
)

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
HEALTH_TIMEOUT = 3.0
TOKEN_EXPIRED = "Token expired"

TokenCallback = Callable[[str, str], None]


def _detail(response: httpx.Response) -> str:
    """Error message from a JSON error body ({detail} or {error}), else the reason phrase."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


class EvmAPI:
    """
    Client for the remote store: auth, env file upsert, version and rollback
    push, project listing, rename and delete.

    Transport failures and timeouts surface as ConnectivityError so callers can
    queue the operation. A 401 whose detail is "Token expired" triggers one
    refresh and one retry; if that fails the call raises AuthExpiredError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        on_tokens_refreshed: Optional[TokenCallback] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = (base_url or get_server_url()).rstrip("/")
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._on_tokens_refreshed = on_tokens_refreshed
        self._timeout = timeout
        log.debug("API client base_url=%s", self._base_url)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self, auth: bool) -> Dict[str, str]:
        out = {"Accept": "application/json", "Content-Type": "application/json"}
        if auth and self._access_token:
            out["Authorization"] = f"Bearer {self._access_token}"
        return out

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token

    def _send(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        auth: bool,
        timeout: Optional[float],
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            with httpx.Client(timeout=timeout or self._timeout) as client:
                return client.request(method, url, json=body, headers=self._headers(auth))
        except httpx.TimeoutException as e:
            log.warning("%s %s timed out", method, path)
            raise ConnectivityError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            log.warning("%s %s failed: %s", method, path, e)
            raise ConnectivityError(f"Cannot reach server at {self._base_url}") from e

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        auth: bool = True,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and return the decoded JSON body, mapping failures to dotevm errors."""
        log.debug("%s %s", method, path)
        r = self._send(method, path, body, auth, timeout)
        if auth and r.status_code == 401 and _detail(r) == TOKEN_EXPIRED:
            log.info("Access token expired; refreshing once")
            self._refresh_session()
            r = self._send(method, path, body, auth, timeout)
        self._raise_for_status(r, auth)
        if not r.content:
            return None
        return r.json()

    def _raise_for_status(self, r: httpx.Response, auth: bool) -> None:
        code = r.status_code
        if code < 400:
            return
        detail = _detail(r)
        if code == 401:
            if auth:
                raise AuthExpiredError(detail)
            raise RemoteError(detail, code)
        if code == 404:
            raise NotFoundError(detail)
        if code == 409:
            raise ConstraintError(detail)
        if code in (400, 422):
            raise ValidationError(detail)
        if code in (502, 503, 504):
            raise ConnectivityError(f"Server unavailable ({code})")
        raise RemoteError(detail, code)

    def _refresh_session(self) -> None:
        if not self._refresh_token:
            raise AuthExpiredError("Session expired, please log in again")
        try:
            self.refresh(self._refresh_token)
        except (RemoteError, NotFoundError, ValidationError, AuthExpiredError) as e:
            log.warning("Token refresh failed: %s", e)
            raise AuthExpiredError("Session expired, please log in again") from e

    # --- Auth ---

    def health(self) -> bool:
        """GET /health. False when the server cannot be reached."""
        try:
            self._request("GET", "/health", auth=False, timeout=HEALTH_TIMEOUT)
            return True
        except (ConnectivityError, RemoteError) as e:
            log.debug("Health check failed: %s", e)
            return False

    def register(self, email: str, password: str, encryption_salt: str) -> Dict[str, Any]:
        """POST /auth/register. Returns token pair and the stored encryption salt."""
        data = self._request(
            "POST",
            "/auth/register",
            {"email": email, "password": password, "encryption_salt": encryption_salt},
            auth=False,
        )
        self.set_tokens(data["access_token"], data["refresh_token"])
        return data

    def login(self, email: str, password: str) -> Dict[str, Any]:
        """POST /auth/login. Returns {access_token, refresh_token, encryption_salt, ...}."""
        data = self._request(
            "POST", "/auth/login", {"email": email, "password": password}, auth=False
        )
        self.set_tokens(data["access_token"], data["refresh_token"])
        return data

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        """POST /auth/refresh. Stores and reports the new token pair."""
        data = self._request(
            "POST", "/auth/refresh", {"refresh_token": refresh_token}, auth=False
        )
        self.set_tokens(data["access_token"], data["refresh_token"])
        if self._on_tokens_refreshed:
            self._on_tokens_refreshed(data["access_token"], data["refresh_token"])
        return data

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/auth/me")

    # --- Env files, versions, rollbacks ---

    def upsert_env_file(
        self,
        project_name: str,
        file_name: str,
        encrypted_content: str,
        iv: str,
        tag: str,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """POST /env-files. Creates the remote project on first use."""
        return self._request(
            "POST",
            "/env-files",
            {
                "project_name": project_name,
                "file_name": file_name,
                "encrypted_content": encrypted_content,
                "iv": iv,
                "tag": tag,
                "created_at": created_at,
                "updated_at": updated_at,
            },
        )

    def push_version(self, project_name: str, file_name: str, version: Dict[str, Any]) -> Dict[str, Any]:
        """POST /env-versions. Insert-if-absent keyed by version token."""
        return self._request(
            "POST",
            "/env-versions",
            {"project_name": project_name, "file_name": file_name, **version},
        )

    def push_rollback(self, project_name: str, file_name: str, rollback: Dict[str, Any]) -> Dict[str, Any]:
        """POST /rollback-history. Insert-if-absent."""
        return self._request(
            "POST",
            "/rollback-history",
            {"project_name": project_name, "file_name": file_name, **rollback},
        )

    def list_projects(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/projects")

    def list_project_files(self, project_name: str) -> List[Dict[str, Any]]:
        """GET /projects/{name}/files. Each file embeds its versions and rollbacks."""
        encoded = quote(project_name, safe="")
        return self._request("GET", f"/projects/{encoded}/files")

    # --- Rename / delete ---

    def rename_project(self, project_name: str, new_name: str) -> Dict[str, Any]:
        return self._request(
            "PUT", "/projects/rename", {"project_name": project_name, "new_name": new_name}
        )

    def rename_env_file(self, project_name: str, old_file_name: str, new_file_name: str) -> Dict[str, Any]:
        return self._request(
            "PUT",
            "/env-files/rename",
            {
                "project_name": project_name,
                "old_file_name": old_file_name,
                "new_file_name": new_file_name,
            },
        )

    def delete_project(self, project_name: str) -> Dict[str, Any]:
        """DELETE /projects. Treats 404 as success (already gone)."""
        try:
            return self._request("DELETE", "/projects", {"project_name": project_name})
        except NotFoundError:
            log.debug("delete_project %s: already gone (404)", project_name)
            return {"deleted": False}

    def delete_env_file(self, project_name: str, file_name: str) -> Dict[str, Any]:
        """DELETE /env-files. Treats 404 as success (already gone)."""
        try:
            return self._request(
                "DELETE", "/env-files", {"project_name": project_name, "file_name": file_name}
            )
        except NotFoundError:
            log.debug("delete_env_file %s/%s: already gone (404)", project_name, file_name)
            return {"deleted": False}
