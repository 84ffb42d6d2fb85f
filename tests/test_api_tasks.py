"""
HTTP tests for the task, star, me and system routes, including the
end-to-end collaboration scenarios.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import auth_headers, signup
from taskboard.main import create_app


@pytest.fixture
def alice(client):
    return signup(client, "Alice", "alice@example.com")


@pytest.fixture
def bob(client):
    return signup(client, "Bob", "bob@example.com")


def create_task(client, user, title="Plan sprint", **extra):
    response = client.post("/tasks", json={"title": title, **extra}, headers=auth_headers(user))
    assert response.status_code == 201, response.text
    return response


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------
class TestGuards:
    def test_listing_requires_session(self, client):
        response = client.get("/tasks")
        assert response.status_code == 401
        assert set(response.json()["error"]) >= {"code", "message", "requestId"}

    def test_mutation_without_csrf_is_403(self, client, alice):
        headers = auth_headers(alice)
        del headers["X-CSRF-Token"]
        assert client.post("/tasks", json={"title": "x"}, headers=headers).status_code == 403

    def test_mutation_with_wrong_csrf_is_403(self, client, alice):
        headers = {**auth_headers(alice), "X-CSRF-Token": "forged"}
        assert client.post("/tasks", json={"title": "x"}, headers=headers).status_code == 403

    def test_malformed_id_is_400(self, client, alice):
        response = client.get("/tasks/not-a-valid-id", headers=auth_headers(alice))
        assert response.status_code == 400
        assert response.json()["error"]["field"] == "id"

    def test_unknown_id_is_404(self, client, alice):
        assert client.get(f"/tasks/{'0' * 32}", headers=auth_headers(alice)).status_code == 404

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_write_rate_limit(self, settings):
        settings.rate_limit_write_max_requests = 2
        with TestClient(create_app(settings)) as client:
            user = signup(client, "Alice", "alice@example.com")
            statuses = [
                client.post("/tasks", json={"title": f"T{n}"}, headers=auth_headers(user)).status_code
                for n in range(3)
            ]
        assert statuses == [201, 201, 429]


# -----------------------------------------------------------------------------
# CRUD
# -----------------------------------------------------------------------------
class TestTaskRoutes:
    def test_create_returns_task_and_etag(self, client, alice):
        response = create_task(client, alice, title="  Padded  ", description="Details")
        task = response.json()["data"]

        assert task["title"] == "Padded"
        assert task["version"] == 1
        assert task["createdBy"]["id"] == alice["_user_id"]
        assert response.headers["ETag"].startswith('"1-')

    @pytest.mark.parametrize("payload", [{"title": ""}, {"title": "x" * 121}, {}])
    def test_invalid_create_is_400(self, client, alice, payload):
        assert client.post("/tasks", json=payload, headers=auth_headers(alice)).status_code == 400

    def test_get_returns_etag(self, client, alice):
        created = create_task(client, alice)
        task_id = created.json()["data"]["id"]
        response = client.get(f"/tasks/{task_id}", headers=auth_headers(alice))

        assert response.status_code == 200
        assert response.headers["ETag"] == created.headers["ETag"]

    def test_patch_requires_some_field(self, client, alice):
        task = create_task(client, alice).json()["data"]
        response = client.patch(f"/tasks/{task['id']}", json={}, headers=auth_headers(alice))
        assert response.status_code == 400

    def test_patch_with_current_etag(self, client, alice):
        created = create_task(client, alice)
        task_id = created.json()["data"]["id"]
        headers = {**auth_headers(alice), "If-Match": created.headers["ETag"]}

        response = client.patch(f"/tasks/{task_id}", json={"title": "Renamed"}, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["version"] == 2
        assert response.headers["ETag"].startswith('"2-')

    def test_patch_with_stale_etag_is_409(self, client, alice):
        created = create_task(client, alice)
        task_id = created.json()["data"]["id"]
        stale = {**auth_headers(alice), "If-Match": created.headers["ETag"]}
        client.patch(f"/tasks/{task_id}", json={"title": "First"}, headers=stale)

        response = client.patch(f"/tasks/{task_id}", json={"title": "Second"}, headers=stale)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == 409

    def test_unparsable_if_match_is_ignored(self, client, alice):
        task_id = create_task(client, alice).json()["data"]["id"]
        headers = {**auth_headers(alice), "If-Match": "*"}
        response = client.patch(f"/tasks/{task_id}", json={"title": "Whatever"}, headers=headers)
        assert response.status_code == 200

    def test_delete_returns_undo_token_and_hides_task(self, client, alice):
        task_id = create_task(client, alice).json()["data"]["id"]

        response = client.delete(f"/tasks/{task_id}", headers=auth_headers(alice))

        assert response.status_code == 202
        assert response.json()["data"]["undoToken"]
        assert client.get(f"/tasks/{task_id}", headers=auth_headers(alice)).status_code == 404
        assert client.delete(f"/tasks/{task_id}", headers=auth_headers(alice)).status_code == 404

    def test_duplicate(self, client, alice):
        task_id = create_task(client, alice, title="Original").json()["data"]["id"]
        response = client.post(f"/tasks/{task_id}/duplicate", headers=auth_headers(alice))

        assert response.status_code == 201
        assert response.json()["data"]["title"] == "Original (copy)"

    def test_assign_me_is_idempotent(self, client, alice, bob):
        task_id = create_task(client, alice).json()["data"]["id"]
        for _ in range(2):
            assert client.put(f"/tasks/{task_id}/assign/me", headers=auth_headers(bob)).status_code == 204

        task = client.get(f"/tasks/{task_id}", headers=auth_headers(bob)).json()["data"]
        assert [a["id"] for a in task["assignees"]] == [bob["_user_id"]]
        assert task["version"] == 2

    def test_star_and_unstar(self, client, alice):
        task_id = create_task(client, alice).json()["data"]["id"]
        headers = auth_headers(alice)

        assert client.put(f"/tasks/{task_id}/star", headers=headers).status_code == 204
        assert client.put(f"/tasks/{task_id}/star", headers=headers).status_code == 204
        assert client.get(f"/tasks/{task_id}", headers=headers).json()["data"]["isStarred"] is True

        assert client.delete(f"/tasks/{task_id}/star", headers=headers).status_code == 204
        assert client.get(f"/tasks/{task_id}", headers=headers).json()["data"]["isStarred"] is False

    def test_unstar_after_delete(self, client, alice):
        task_id = create_task(client, alice).json()["data"]["id"]
        headers = auth_headers(alice)
        client.put(f"/tasks/{task_id}/star", headers=headers)
        client.delete(f"/tasks/{task_id}", headers=headers)

        assert client.put(f"/tasks/{task_id}/star", headers=headers).status_code == 404
        assert client.delete(f"/tasks/{task_id}/star", headers=headers).status_code == 204
        assert client.delete(f"/tasks/{task_id}/star", headers=headers).status_code == 204


# -----------------------------------------------------------------------------
# Listing
# -----------------------------------------------------------------------------
class TestListing:
    def test_list_with_query_sort_and_paging(self, client, alice):
        for title in ("Banana", "apple pie", "Cherry", "Apple juice"):
            create_task(client, alice, title=title)

        response = client.get(
            "/tasks",
            params={"query": "APPLE", "sort": "title:asc", "limit": 1, "page": 1},
            headers=auth_headers(alice),
        )

        assert response.status_code == 200
        page = response.json()["data"]
        assert page["total"] == 2
        assert page["hasMore"] is True
        assert len(page["items"]) == 1

    @pytest.mark.parametrize(
        "params",
        [{"sort": "color:asc"}, {"sort": "title:sideways"}, {"sort": "nocolon"}, {"limit": 101}, {"page": 0}, {"context": "everyone"}],
    )
    def test_invalid_list_params_are_400(self, client, alice, params):
        assert client.get("/tasks", params=params, headers=auth_headers(alice)).status_code == 400

    def test_me_endpoints(self, client, alice, bob):
        mine = create_task(client, alice, title="Alice's").json()["data"]["id"]
        create_task(client, bob, title="Bob's")
        client.put(f"/tasks/{mine}/star", headers=auth_headers(alice))

        me = client.get("/me", headers=auth_headers(alice)).json()["data"]
        my_tasks = client.get("/me/tasks", headers=auth_headers(alice)).json()["data"]
        starred = client.get("/me/starred", headers=auth_headers(alice)).json()["data"]

        assert me["email"] == "alice@example.com"
        assert [t["title"] for t in my_tasks["items"]] == ["Alice's"]
        assert [t["id"] for t in starred] == [mine]


class TestExport:
    def test_csv_export(self, client, alice, bob):
        create_task(client, alice, title="Mine, with comma")
        create_task(client, bob, title="Not mine")

        response = client.get("/me/tasks/export", headers=auth_headers(alice))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["Cache-Control"] == "no-cache"
        assert 'filename="my-tasks-' in response.headers["Content-Disposition"]
        assert response.content.startswith(b"\xef\xbb\xbf")
        lines = response.content.decode("utf-8-sig").splitlines()
        assert lines[0].startswith("id,title,description,createdByName")
        assert len(lines) == 2
        assert '"Mine, with comma"' in lines[1]
        assert lines[1].endswith("false,true,false")

    def test_json_export(self, client, alice):
        create_task(client, alice, title="Exported")
        response = client.get("/me/tasks/export", params={"format": "json"}, headers=auth_headers(alice))

        assert response.headers["content-type"].startswith("application/json")
        assert response.headers["Content-Disposition"].endswith('.json"')
        rows = response.json()
        assert rows[0]["title"] == "Exported"
        assert rows[0]["isMine"] is True

    def test_unknown_format_is_400(self, client, alice):
        response = client.get("/me/tasks/export", params={"format": "pdf"}, headers=auth_headers(alice))
        assert response.status_code == 400


# -----------------------------------------------------------------------------
# End-to-end collaboration scenarios
# -----------------------------------------------------------------------------
class TestScenarios:
    def test_concurrent_edit_conflict(self, client, alice, bob):
        """Two users edit from the same ETag; the slower one gets 409 and recovers."""
        created = create_task(client, alice, title="Shared")
        task_id = created.json()["data"]["id"]
        etag = created.headers["ETag"]

        first = client.patch(
            f"/tasks/{task_id}", json={"title": "Alice's edit"}, headers={**auth_headers(alice), "If-Match": etag}
        )
        second = client.patch(
            f"/tasks/{task_id}", json={"title": "Bob's edit"}, headers={**auth_headers(bob), "If-Match": etag}
        )
        assert first.status_code == 200
        assert second.status_code == 409

        fresh = client.get(f"/tasks/{task_id}", headers=auth_headers(bob))
        retry = client.patch(
            f"/tasks/{task_id}",
            json={"title": "Bob's edit"},
            headers={**auth_headers(bob), "If-Match": fresh.headers["ETag"]},
        )
        assert retry.status_code == 200
        assert retry.json()["data"]["version"] == 3
        assert retry.json()["data"]["updatedBy"]["id"] == bob["_user_id"]

    def test_list_reflects_every_mutation(self, client, alice, bob):
        """A cached listing never serves data older than the last mutation."""
        headers = auth_headers(alice)
        task_id = create_task(client, alice, title="Cached").json()["data"]["id"]
        assert client.get("/tasks", headers=headers).json()["data"]["total"] == 1

        client.patch(f"/tasks/{task_id}", json={"title": "Renamed"}, headers=headers)
        assert client.get("/tasks", headers=headers).json()["data"]["items"][0]["title"] == "Renamed"

        client.put(f"/tasks/{task_id}/assign/me", headers=auth_headers(bob))
        bobs = client.get("/tasks", params={"context": "mine"}, headers=auth_headers(bob)).json()["data"]
        assert [t["id"] for t in bobs["items"]] == [task_id]

        client.delete(f"/tasks/{task_id}", headers=headers)
        assert client.get("/tasks", headers=headers).json()["data"]["total"] == 0

    def test_sync_after_reconnect(self, client, alice):
        """A client that was offline catches up through /sync."""
        keep = create_task(client, alice, title="Keep").json()["data"]
        gone = create_task(client, alice, title="Gone").json()["data"]
        client.delete(f"/tasks/{gone['id']}", headers=auth_headers(alice))

        response = client.get("/sync", params={"since": "2000-01-01T00:00:00Z"}, headers=auth_headers(alice))

        assert response.status_code == 200
        data = response.json()["data"]
        assert [t["id"] for t in data["updatedTasks"]] == [keep["id"]]
        assert [t["id"] for t in data["deletedTasks"]] == [gone["id"]]
        assert data["summary"]["hasMore"] is False

    def test_sync_rejects_bad_timestamp(self, client, alice):
        assert client.get("/sync", params={"since": "yesterday"}, headers=auth_headers(alice)).status_code == 400
        assert client.get("/sync", headers=auth_headers(alice)).status_code == 400


# -----------------------------------------------------------------------------
# System endpoints
# -----------------------------------------------------------------------------
class TestSystem:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"

    def test_observability_endpoints_open_outside_production(self, client):
        assert client.get("/ws-status").json()["websocket"]["room"] == "board:all"
        assert "blockedPercentage" in client.get("/rate-limit-stats").json()["rateLimiting"]
        assert "cache" in client.get("/search-performance").json()["search"]
        assert client.get("/session-management").json()["sessionManagement"]["storage"]["type"] == "memory"

    def test_observability_requires_admin_key_in_production(self, settings):
        settings.environment = "production"
        settings.admin_key = "s3cret"
        with TestClient(create_app(settings)) as client:
            assert client.get("/rate-limit-stats").status_code == 403
            assert client.get("/rate-limit-stats", headers={"X-Admin-Key": "s3cret"}).status_code == 200
            assert client.post("/reset-rate-limit").status_code == 404

    def test_reset_rate_limit(self, settings):
        settings.rate_limit_login_max_requests = 1
        with TestClient(create_app(settings)) as client:
            body = {"email": "ghost@example.com", "password": "Secret123"}
            client.post("/auth/login", json=body)
            assert client.post("/auth/login", json=body).status_code == 429

            assert client.post("/reset-rate-limit").status_code == 200
            assert client.post("/auth/login", json=body).status_code == 401
