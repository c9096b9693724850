"""HTTP tests against the FastAPI app backed by the in-memory store."""

import pytest
from fastapi.testclient import TestClient

import main
from clock import ManualClock
from database import MemoryDocumentStore
from workspace import WorkspaceRegistry


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def client(clock):
    registry = WorkspaceRegistry(MemoryDocumentStore(), clock)
    main.app.dependency_overrides[main.get_registry] = lambda: registry
    main._rate_bucket.clear()
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
    main._rate_bucket.clear()


def _register(client, email="ada@acme.io", password="correct-horse"):
    r = client.post("/auth/register", json={"name": "Ada", "email": email, "password": password})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def auth(client):
    return _register(client)


class TestAuth:
    def test_register_login_me(self, client):
        _register(client)
        r = client.post("/auth/login", json={"email": "ada@acme.io", "password": "correct-horse"})
        assert r.status_code == 200
        headers = {"Authorization": f"Bearer {r.json()['token']}"}
        me = client.get("/me", headers=headers).json()
        assert me["email"] == "ada@acme.io"

    def test_duplicate_email(self, client):
        _register(client)
        r = client.post("/auth/register",
                        json={"name": "Other", "email": "ada@acme.io", "password": "12345678"})
        assert r.status_code == 400

    def test_wrong_password(self, client):
        _register(client)
        r = client.post("/auth/login", json={"email": "ada@acme.io", "password": "nope-nope"})
        assert r.status_code == 401

    def test_workspace_routes_need_a_token(self, client):
        assert client.get("/notes").status_code in (401, 403)
        r = client.get("/notes", headers={"Authorization": "Bearer garbage"})
        assert r.status_code == 401


class TestNotes:
    def test_crud(self, client, auth, clock):
        created = client.post("/notes", json={"title": "Plan", "content": "draft"}, headers=auth).json()
        assert created["user_id"]
        assert created["created_at"] == "2024-01-15T09:00:00.000Z"

        clock.advance(60)
        updated = client.put(f"/notes/{created['id']}", json={"content": "final"}, headers=auth).json()
        assert updated["content"] == "final"
        assert updated["updated_at"] == "2024-01-15T09:01:00.000Z"

        assert [n["id"] for n in client.get("/notes?q=PLAN", headers=auth).json()] == [created["id"]]

        assert client.delete(f"/notes/{created['id']}", headers=auth).status_code == 400
        assert client.delete(f"/notes/{created['id']}?confirm=true", headers=auth).status_code == 200
        assert client.get("/notes?refresh=true", headers=auth).json() == []

    def test_blank_title_is_422(self, client, auth):
        r = client.post("/notes", json={"title": "  "}, headers=auth)
        assert r.status_code == 422
        assert r.json()["code"] == "VALIDATION_FAILED"

    def test_unknown_note_is_404(self, client, auth):
        r = client.put("/notes/missing", json={"title": "x"}, headers=auth)
        assert r.status_code == 404

    def test_users_see_only_their_own_notes(self, client, auth):
        client.post("/notes", json={"title": "mine"}, headers=auth)
        other = _register(client, email="grace@acme.io")
        assert client.get("/notes", headers=other).json() == []


class TestTasks:
    def test_toggle_and_filters(self, client, auth):
        a = client.post("/tasks", json={"title": "A", "priority": "high"}, headers=auth).json()
        client.post("/tasks", json={"title": "B"}, headers=auth)
        toggled = client.post(f"/tasks/{a['id']}/toggle", headers=auth).json()
        assert toggled["completed"] is True

        pending = client.get("/tasks?status=pending", headers=auth).json()
        assert [t["title"] for t in pending] == ["B"]
        assert client.get("/tasks?status=archived", headers=auth).status_code == 422
        assert client.get("/tasks/stats", headers=auth).json()["completed"] == 1

    def test_markdown_export(self, client, auth):
        task = client.post("/tasks", json={"title": "Ship", "due_date": "2024-02-01"}, headers=auth).json()
        content = client.get(f"/export/task/{task['id']}/markdown", headers=auth).json()["content"]
        assert content.startswith("# Ship")
        assert "- Due: 2024-02-01" in content


class TestInvoices:
    def _create(self, client, auth):
        body = {
            "client": {"name": "Acme Corp", "email": "billing@acme.com"},
            "invoice_date": "2024-01-15",
            "items": [
                {"description": "Consulting", "quantity": 10, "rate": 150},
                {"description": "Hosting", "quantity": "1", "rate": "200"},
            ],
            "tax_rate": 10,
        }
        r = client.post("/invoices", json=body, headers=auth)
        assert r.status_code == 200
        return r.json()

    def test_create_computes_totals(self, client, auth):
        invoice = self._create(client, auth)
        assert invoice["status"] == "draft"
        assert (invoice["subtotal"], invoice["tax_amount"], invoice["total"]) == (1700, 170, 1870)
        assert invoice["items"][0]["amount"] == 1500

    def test_status_transitions(self, client, auth):
        invoice = self._create(client, auth)
        url = f"/invoices/{invoice['id']}/status"
        assert client.post(url, json={"status": "paid"}, headers=auth).json()["status"] == "paid"
        r = client.post(url, json={"status": "draft"}, headers=auth)
        assert r.status_code == 409
        assert r.json()["code"] == "INVALID_STATUS_TRANSITION"

    def test_update_items_recomputes(self, client, auth):
        invoice = self._create(client, auth)
        r = client.put(f"/invoices/{invoice['id']}",
                       json={"items": [{"description": "Flat fee", "quantity": 2, "rate": 50}]},
                       headers=auth)
        assert r.json()["total"] == 110

    def test_due_date_can_be_cleared(self, client, auth):
        invoice = self._create(client, auth)
        url = f"/invoices/{invoice['id']}"
        assert client.put(url, json={"due_date": "2024-02-15"}, headers=auth).json()["due_date"] == "2024-02-15"
        cleared = client.put(url, json={"due_date": None}, headers=auth).json()
        assert cleared["due_date"] is None
        assert cleared["tax_rate"] == 10


class TestTimeEntries:
    def test_quick_start_then_stop(self, client, auth, clock):
        started = client.post("/time-entries/quick-start", json={"project_name": "Website"},
                              headers=auth).json()
        assert started["state"] == "running"
        clock.advance(90)
        assert client.get("/time-entries/active", headers=auth).json()["elapsed"] == "00:01:30"

        stopped = client.post("/time-entries/stop", headers=auth).json()
        assert stopped["state"] == "idle"
        assert stopped["stopped"]["duration"] == 90

        stats = client.get("/time-entries/stats", headers=auth).json()
        assert stats["total"] == "00:01:30"

    def test_switching_entries(self, client, auth, clock):
        x = client.post("/time-entries", json={"project_name": "X"}, headers=auth).json()
        y = client.post("/time-entries", json={"project_name": "Y"}, headers=auth).json()
        client.post(f"/time-entries/{x['id']}/start", headers=auth)
        clock.advance(30)
        state = client.post(f"/time-entries/{y['id']}/start", headers=auth).json()
        assert state["entry"]["id"] == y["id"]
        entries = {e["id"]: e for e in client.get("/time-entries", headers=auth).json()}
        assert entries[x["id"]]["is_running"] is False
        assert entries[x["id"]]["duration"] == 30

    def test_stop_when_idle(self, client, auth):
        r = client.post("/time-entries/stop", headers=auth)
        assert r.status_code == 200
        assert r.json()["stopped"] is None

    def test_csv_export(self, client, auth):
        client.post("/time-entries", json={"project_name": "Website"}, headers=auth)
        content = client.get("/export/time-entries/csv", headers=auth).json()["content"]
        assert content.splitlines()[0].startswith("entry_id,project_name")
        assert "Website" in content


def test_dashboard(client, auth):
    client.post("/tasks", json={"title": "A"}, headers=auth)
    board = client.get("/dashboard", headers=auth).json()
    assert board["tasks"]["total"] == 1
    assert board["time"]["running"] is False
