"""MantisBT REST client: the remote source the index is synced from."""

from __future__ import annotations

import logging
from typing import Any

import requests
from pydantic import ValidationError

from errors import IssueFetchError
from models import IssueHeader, MantisIssue

logger = logging.getLogger(__name__)

HEADER_PAGE_SIZE = 200
HEADER_FIELDS = "id,summary,updated_at,created_at,project"
MAX_PAGE_SIZE = 200


def _is_not_found(error: requests.RequestException) -> bool:
    response = getattr(error, "response", None)
    return response is not None and response.status_code == 404


def _as_list(payload: Any, key: str) -> list[dict[str, Any]]:
    """Unwrap `{key: [...]}` or a bare list; anything else is empty."""
    if isinstance(payload, dict):
        payload = payload.get(key)
    return payload if isinstance(payload, list) else []


class MantisClient:
    """Thin wrapper over the MantisBT REST API.

    All calls are blocking; async callers should use `asyncio.to_thread`.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {"Authorization": api_key, "Content-Type": "application/json"}
        )

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = self.session.get(
            f"{self.base_url}{path}", params=params, timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def fetch_all_issue_headers(self, project_id: int | None = None) -> list[IssueHeader]:
        """Fetch `{id, updated_at, ...}` for every visible issue, page by page."""
        headers: list[IssueHeader] = []
        page = 1
        while True:
            params: dict[str, Any] = {
                "page_size": HEADER_PAGE_SIZE,
                "page": page,
                "select": HEADER_FIELDS,
            }
            if project_id:
                params["project_id"] = project_id
            issues = self._get("/issues", params).get("issues") or []
            headers.extend(IssueHeader.model_validate(i) for i in issues)
            logger.debug(
                "Fetched page %d: %d headers (total: %d)", page, len(issues), len(headers)
            )
            if len(issues) < HEADER_PAGE_SIZE:
                break
            page += 1
        return headers

    def get_issue(self, issue_id: int) -> MantisIssue:
        """Fetch one issue with notes, tags and custom fields.

        Raises:
            IssueFetchError: on transport, HTTP or payload errors. `not_found`
                is set when MantisBT reports that the issue does not exist.
        """
        try:
            payload = self._get(f"/issues/{issue_id}")
            issues = payload.get("issues") or []
            if not issues:
                raise IssueFetchError(issue_id, "issue not found in response", not_found=True)
            return MantisIssue.model_validate(issues[0])
        except requests.RequestException as e:
            raise IssueFetchError(issue_id, str(e), not_found=_is_not_found(e)) from e
        except ValidationError as e:
            raise IssueFetchError(issue_id, f"invalid payload: {e}") from e

    def get_issues(
        self,
        page: int = 1,
        page_size: int = 50,
        project_id: int | None = None,
        filter_id: int | None = None,
        select: str | None = None,
    ) -> dict[str, Any]:
        """One page of issues, optionally narrowed to a project or saved filter."""
        params: dict[str, Any] = {"page": page, "page_size": page_size}
        if project_id:
            params["project_id"] = project_id
        if filter_id:
            params["filter_id"] = filter_id
        if select:
            params["select"] = select
        return self._get("/issues", params)

    def get_projects(self) -> list[dict[str, Any]]:
        """List all projects accessible with the configured API key."""
        return self._get("/projects").get("projects") or []

    def get_user(self, username: str) -> dict[str, Any] | None:
        """Look up a user by username. Returns None if there is no such user."""
        try:
            users = _as_list(self._get("/users", {"username": username}), "users")
        except requests.HTTPError as e:
            if _is_not_found(e):
                return None
            raise
        return users[0] if users else None

    def get_users_by_project_id(self, project_id: int) -> list[dict[str, Any]]:
        """List the members of a project."""
        return _as_list(self._get(f"/projects/{project_id}/users"), "users")

    def close(self) -> None:
        self.session.close()
