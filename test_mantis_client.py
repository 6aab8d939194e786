"""Tests for the MantisBT REST client (HTTP layer faked)."""

import pytest
import requests

from errors import IssueFetchError
from mantis_client import HEADER_PAGE_SIZE, MantisClient


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self.payload


def header(i):
    return {"id": i, "updated_at": f"2024-01-{i % 28 + 1:02d}", "project": {"id": 1, "name": "P"}}


@pytest.fixture
def client():
    return MantisClient("https://mantis.example.com/api/rest/", "token")


class TestHeaders:
    def test_paginates_until_short_page(self, client, monkeypatch):
        pages = {1: [header(i) for i in range(HEADER_PAGE_SIZE)], 2: [header(999)]}
        requested = []

        def fake_get(url, params=None, timeout=None):
            requested.append(params)
            return FakeResponse({"issues": pages[params["page"]]})

        monkeypatch.setattr(client.session, "get", fake_get)
        headers = client.fetch_all_issue_headers(project_id=7)

        assert len(headers) == HEADER_PAGE_SIZE + 1
        assert [p["page"] for p in requested] == [1, 2]
        assert all(p["project_id"] == 7 for p in requested)
        assert requested[0]["select"] == "id,summary,updated_at,created_at,project"

    def test_no_project_filter(self, client, monkeypatch):
        seen = {}

        def fake_get(url, params=None, timeout=None):
            seen.update(params)
            return FakeResponse({"issues": []})

        monkeypatch.setattr(client.session, "get", fake_get)
        assert client.fetch_all_issue_headers() == []
        assert "project_id" not in seen

    def test_auth_header(self, client):
        assert client.session.headers["Authorization"] == "token"


class TestGetIssue:
    def test_parses_full_issue(self, client, monkeypatch):
        payload = {
            "issues": [
                {
                    "id": 12,
                    "summary": "Crash",
                    "project": {"id": 1, "name": "Core"},
                    "created_at": "c",
                    "updated_at": "u",
                    "notes": [{"id": 3, "reporter": {"name": "bob"}, "text": "hi"}],
                    "severity": {"id": 50, "name": "major"},
                }
            ]
        }
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse(payload))
        issue = client.get_issue(12)
        assert issue.id == 12
        assert issue.notes[0].reporter.name == "bob"
        assert issue.model_dump()["severity"]["name"] == "major"

    def test_http_error_wrapped(self, client, monkeypatch):
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse({}, 404))
        with pytest.raises(IssueFetchError) as exc_info:
            client.get_issue(5)
        assert exc_info.value.issue_id == 5
        assert exc_info.value.not_found

    def test_server_error_is_not_a_missing_issue(self, client, monkeypatch):
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse({}, 503))
        with pytest.raises(IssueFetchError) as exc_info:
            client.get_issue(5)
        assert not exc_info.value.not_found

    def test_connection_error_wrapped(self, client, monkeypatch):
        def boom(url, **kw):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(client.session, "get", boom)
        with pytest.raises(IssueFetchError) as exc_info:
            client.get_issue(5)
        assert not exc_info.value.not_found

    def test_invalid_payload_wrapped(self, client, monkeypatch):
        monkeypatch.setattr(
            client.session, "get", lambda url, **kw: FakeResponse({"issues": [{"id": 1}]})
        )
        with pytest.raises(IssueFetchError, match="invalid payload"):
            client.get_issue(1)

    def test_empty_response(self, client, monkeypatch):
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse({"issues": []}))
        with pytest.raises(IssueFetchError, match="not found") as exc_info:
            client.get_issue(1)
        assert exc_info.value.not_found


class TestLookups:
    def test_get_issues_passes_only_given_filters(self, client, monkeypatch):
        seen = {}

        def fake_get(url, params=None, timeout=None):
            seen.update(url=url, params=params)
            return FakeResponse({"issues": [{"id": 1}]})

        monkeypatch.setattr(client.session, "get", fake_get)
        result = client.get_issues(page=2, page_size=10, filter_id=4)

        assert result == {"issues": [{"id": 1}]}
        assert seen["url"].endswith("/issues")
        assert seen["params"] == {"page": 2, "page_size": 10, "filter_id": 4}

    def test_get_user(self, client, monkeypatch):
        users = [{"id": 3, "name": "alice"}]
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse(users))
        assert client.get_user("alice") == {"id": 3, "name": "alice"}

    def test_get_user_wrapped_list(self, client, monkeypatch):
        payload = {"users": [{"id": 3, "name": "alice"}]}
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse(payload))
        assert client.get_user("alice")["id"] == 3

    def test_unknown_user(self, client, monkeypatch):
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse({}, 404))
        assert client.get_user("nobody") is None

    def test_user_lookup_server_error_raised(self, client, monkeypatch):
        monkeypatch.setattr(client.session, "get", lambda url, **kw: FakeResponse({}, 500))
        with pytest.raises(requests.HTTPError):
            client.get_user("alice")

    def test_get_users_by_project_id(self, client, monkeypatch):
        seen = []

        def fake_get(url, params=None, timeout=None):
            seen.append(url)
            return FakeResponse({"users": [{"id": 1}, {"id": 2}]})

        monkeypatch.setattr(client.session, "get", fake_get)
        assert [u["id"] for u in client.get_users_by_project_id(7)] == [1, 2]
        assert seen[0].endswith("/projects/7/users")
