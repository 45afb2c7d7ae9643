"""Typed client for the Box Content API.

Replaces the loosely-typed request bags of a generic HTTP helper with explicit
method calls that are easy to mock, test, and type-check. One client is bound
to one authenticated identity: the enterprise service account for
administrative calls, or a single user for work inside that user's account.

The client does **not** retry. Every non-2xx response is raised as
:class:`~box_migrator.exceptions.BoxAPIError` and timeouts or dropped
connections surface as the underlying ``requests`` exceptions; the step
executor classifies them and the retry policy decides what happens next.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Iterator

import requests

from box_migrator.constants import (
    COLLABORATION_PAGE_LIMIT,
    DEFAULT_PAGE_LIMIT,
    GROUP_MEMBER_ROLE,
    HTTP_UNAUTHORIZED,
)
from box_migrator.core.config import BoxConfig, MigratorConfig, TimeoutConfig
from box_migrator.exceptions import BoxAPIError
from box_migrator.types import BoxCollaboration, BoxItem, BoxUser
from box_migrator.utils.logging import log_api_request, log_api_response

# Refresh a cached token this many seconds before Box says it expires
_TOKEN_EXPIRY_MARGIN = 60


class BoxAuth:
    """Client Credentials Grant token source for one Box identity.

    Args:
        box_config: Application credentials
        subject_type: ``"enterprise"`` for the service account, ``"user"`` for
            a specific user
        subject_id: Enterprise id or user id matching ``subject_type``
        session: Optional session used for the token request
        timeout: Timeout for the token request, in seconds
    """

    def __init__(
        self,
        box_config: BoxConfig,
        subject_type: str,
        subject_id: str,
        session: requests.Session | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._config = box_config
        self.subject_type = subject_type
        self.subject_id = subject_id
        self._session = session or requests.Session()
        self._timeout = timeout
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def token(self, force_refresh: bool = False) -> str:
        """Return a valid access token, requesting a new one when needed."""
        with self._lock:
            if (
                force_refresh
                or self._token is None
                or time.monotonic() >= self._expires_at
            ):
                self._fetch_token()
            assert self._token is not None
            return self._token

    def _fetch_token(self) -> None:
        data = {
            "grant_type": "client_credentials",
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "box_subject_type": self.subject_type,
            "box_subject_id": self.subject_id,
        }
        log_api_request("POST", self._config.token_url, data)
        response = self._session.post(
            self._config.token_url, data=data, timeout=self._timeout
        )
        log_api_response(response.status_code, self._config.token_url)
        if not response.ok:
            raise BoxAPIError(
                response.status_code,
                response.text,
                method="POST",
                url=self._config.token_url,
            )
        payload = response.json()
        self._token = payload["access_token"]
        expires_in = float(payload.get("expires_in", 3600))
        self._expires_at = time.monotonic() + max(
            expires_in - _TOKEN_EXPIRY_MARGIN, 0.0
        )


class BoxClient:
    """Thin typed wrapper around the Box REST API for one identity."""

    def __init__(
        self,
        auth: BoxAuth,
        api_base_url: str,
        timeouts: TimeoutConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._auth = auth
        self._base_url = api_base_url.rstrip("/")
        self._timeouts = timeouts or TimeoutConfig()
        self._session = session or requests.Session()

    @property
    def subject_id(self) -> str:
        return self._auth.subject_id

    # -- Transport ------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        bulk: bool = False,
    ) -> Any:
        """Send one request and return the decoded JSON body (or None).

        Retries exactly once with a fresh token when Box answers 401, which
        happens when a cached token is revoked early.
        """
        url = f"{self._base_url}{path}"
        timeout = self._timeouts.bulk_seconds if bulk else self._timeouts.item_seconds

        log_api_request(method, url, json, params=params)
        response = self._send(method, url, params, json, timeout, refresh=False)
        if response.status_code == HTTP_UNAUTHORIZED:
            response = self._send(method, url, params, json, timeout, refresh=True)

        if not response.ok:
            log_api_response(response.status_code, url, response.text)
            raise BoxAPIError(response.status_code, response.text, method=method, url=url)

        if not response.content:
            log_api_response(response.status_code, url)
            return None
        body = response.json()
        log_api_response(response.status_code, url, body)
        return body

    def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
        timeout: float,
        refresh: bool,
    ) -> requests.Response:
        headers = {"Authorization": f"Bearer {self._auth.token(force_refresh=refresh)}"}
        return self._session.request(
            method, url, params=params, json=json, headers=headers, timeout=timeout
        )

    def _iter_offset(
        self, path: str, params: dict[str, Any] | None = None, limit: int = DEFAULT_PAGE_LIMIT
    ) -> Iterator[dict[str, Any]]:
        """Yield every entry of an offset-paginated collection."""
        offset = 0
        while True:
            page_params = dict(params or {})
            page_params.update({"limit": limit, "offset": offset})
            page = self._request("GET", path, params=page_params, bulk=True) or {}
            entries = page.get("entries", [])
            yield from entries
            offset += len(entries)
            total = page.get("total_count")
            if not entries or (total is not None and offset >= int(total)):
                return

    def _iter_marker(
        self, path: str, params: dict[str, Any] | None = None, limit: int = COLLABORATION_PAGE_LIMIT
    ) -> Iterator[dict[str, Any]]:
        """Yield every entry of a marker-paginated collection."""
        marker: str | None = None
        while True:
            page_params = dict(params or {})
            page_params.update({"limit": limit, "usemarker": "true"})
            if marker:
                page_params["marker"] = marker
            page = self._request("GET", path, params=page_params, bulk=True) or {}
            yield from page.get("entries", [])
            marker = page.get("next_marker")
            if not marker:
                return

    # -- Users ----------------------------------------------------------------

    def find_users_by_login(self, login: str) -> list[BoxUser]:
        """Search enterprise users whose name or login starts with ``login``."""
        return list(
            self._iter_offset(
                "/users",
                {"filter_term": login, "fields": "id,name,login,status"},
                limit=100,
            )
        )

    def get_user(self, user_id: str, fields: str = "id,name,login,status") -> BoxUser:
        result: BoxUser = self._request(
            "GET", f"/users/{user_id}", params={"fields": fields}
        )
        return result

    def update_user(self, user_id: str, **changes: Any) -> BoxUser:
        """Update account attributes such as ``status`` or ``space_amount``."""
        result: BoxUser = self._request("PUT", f"/users/{user_id}", json=changes)
        return result

    def detach_from_enterprise(self, user_id: str, notify: bool = True) -> BoxUser:
        """Roll a user out of the enterprise into a standalone personal account.

        Must be called on an enterprise (admin) client.
        """
        result: BoxUser = self._request(
            "PUT",
            f"/users/{user_id}",
            json={"notify": notify, "enterprise": None},
        )
        return result

    # -- Folders and files ----------------------------------------------------

    def create_folder(self, name: str, parent_id: str) -> BoxItem:
        result: BoxItem = self._request(
            "POST", "/folders", json={"name": name, "parent": {"id": parent_id}}
        )
        return result

    def list_folder_items(
        self, folder_id: str, fields: str = "id,type,name"
    ) -> Iterator[BoxItem]:
        """Yield every item directly inside a folder."""
        return self._iter_offset(f"/folders/{folder_id}/items", {"fields": fields})  # type: ignore[return-value]

    def get_file(self, file_id: str, fields: str = "id,name,parent") -> BoxItem:
        result: BoxItem = self._request(
            "GET", f"/files/{file_id}", params={"fields": fields}
        )
        return result

    def get_folder(self, folder_id: str, fields: str = "id,name,parent") -> BoxItem:
        result: BoxItem = self._request(
            "GET", f"/folders/{folder_id}", params={"fields": fields}
        )
        return result

    def update_file_parent(self, file_id: str, parent_id: str) -> BoxItem:
        result: BoxItem = self._request(
            "PUT", f"/files/{file_id}", json={"parent": {"id": parent_id}}
        )
        return result

    def update_folder_parent(self, folder_id: str, parent_id: str) -> BoxItem:
        result: BoxItem = self._request(
            "PUT", f"/folders/{folder_id}", json={"parent": {"id": parent_id}}
        )
        return result

    def delete_file(self, file_id: str) -> None:
        self._request("DELETE", f"/files/{file_id}")

    def delete_folder(self, folder_id: str, recursive: bool = True) -> None:
        params = {"recursive": "true"} if recursive else None
        self._request("DELETE", f"/folders/{folder_id}", params=params)

    def purge_trashed_file(self, file_id: str) -> None:
        self._request("DELETE", f"/files/{file_id}/trash")

    def purge_trashed_folder(self, folder_id: str) -> None:
        self._request("DELETE", f"/folders/{folder_id}/trash")

    def list_trashed_items(
        self, fields: str = "id,type,name,owned_by"
    ) -> Iterator[BoxItem]:
        return self._iter_offset("/folders/trash/items", {"fields": fields})  # type: ignore[return-value]

    # -- Groups ---------------------------------------------------------------

    def create_group(self, name: str) -> dict[str, Any]:
        result: dict[str, Any] = self._request("POST", "/groups", json={"name": name})
        return result

    def list_groups(self, filter_term: str | None = None) -> Iterator[dict[str, Any]]:
        params: dict[str, Any] = {"fields": "id,name"}
        if filter_term is not None:
            params["filter_term"] = filter_term
        return self._iter_offset("/groups", params)

    def delete_group(self, group_id: str) -> None:
        self._request("DELETE", f"/groups/{group_id}")

    def list_group_memberships(self, group_id: str) -> Iterator[dict[str, Any]]:
        return self._iter_offset(f"/groups/{group_id}/memberships", limit=100)

    def list_user_memberships(self, user_id: str) -> Iterator[dict[str, Any]]:
        return self._iter_offset(f"/users/{user_id}/memberships", limit=100)

    def add_group_member(self, group_id: str, user_id: str) -> dict[str, Any]:
        result: dict[str, Any] = self._request(
            "POST",
            "/group_memberships",
            json={
                "user": {"id": user_id},
                "group": {"id": group_id},
                "role": GROUP_MEMBER_ROLE,
            },
        )
        return result

    # -- Collaborations -------------------------------------------------------

    def list_file_collaborations(self, file_id: str) -> Iterator[BoxCollaboration]:
        return self._iter_marker(f"/files/{file_id}/collaborations")  # type: ignore[return-value]

    def list_folder_collaborations(self, folder_id: str) -> Iterator[BoxCollaboration]:
        page = self._request(
            "GET", f"/folders/{folder_id}/collaborations", bulk=True
        ) or {}
        return iter(page.get("entries", []))

    def create_collaboration(
        self,
        item_type: str,
        item_id: str,
        accessible_by_type: str,
        accessible_by_id: str,
        role: str,
        notify: bool = False,
    ) -> BoxCollaboration:
        result: BoxCollaboration = self._request(
            "POST",
            "/collaborations",
            params={"notify": "true" if notify else "false"},
            json={
                "item": {"type": item_type, "id": item_id},
                "accessible_by": {"type": accessible_by_type, "id": accessible_by_id},
                "role": role,
            },
        )
        return result

    def update_collaboration_role(self, collaboration_id: str, role: str) -> BoxCollaboration:
        result: BoxCollaboration = self._request(
            "PUT", f"/collaborations/{collaboration_id}", json={"role": role}
        )
        return result

    def remove_collaboration(self, collaboration_id: str) -> None:
        self._request("DELETE", f"/collaborations/{collaboration_id}")


class BoxClientFactory:
    """Builds freshly-authenticated clients for the admin and per-user identities.

    Every job and every deprovisioned account gets its own client, so there is
    no token or session shared across concurrent runs.
    """

    def __init__(self, config: MigratorConfig) -> None:
        self._config = config

    def _build(self, subject_type: str, subject_id: str) -> BoxClient:
        session = requests.Session()
        auth = BoxAuth(
            self._config.box,
            subject_type,
            subject_id,
            session=session,
            timeout=self._config.timeouts.item_seconds,
        )
        return BoxClient(
            auth,
            self._config.box.api_base_url,
            timeouts=self._config.timeouts,
            session=session,
        )

    def admin(self) -> BoxClient:
        return self._build("enterprise", self._config.box.enterprise_id)

    def for_user(self, user_id: str) -> BoxClient:
        return self._build("user", user_id)
