import pytest
from fastapi.testclient import TestClient

from todoboard.config import Settings
from todoboard.errors import StoreError
from todoboard.main import create_app
from todoboard.store import MemoryStore


@pytest.fixture
def memory():
    return MemoryStore()


@pytest.fixture
def client(memory):
    return TestClient(create_app(Settings(), store=memory))


def signup(client, username="alice"):
    r = client.post("/v1/users", json={"username": username, "password": "correct horse"})
    assert r.status_code == 201
    r = client.post("/v1/sessions", json={"username": username, "password": "correct horse"})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['accessToken']}"}


@pytest.fixture
def auth(client):
    return signup(client)


def make_tree(client, auth):
    board = client.post("/v1/boards", json={"title": "Groceries"}, headers=auth).json()
    lst = client.post(f"/v1/boards/{board['id']}/lists", json={"title": "Produce"}, headers=auth).json()
    card = client.post(
        f"/v1/boards/{board['id']}/lists/{lst['id']}/cards", json={"title": "Apples"}, headers=auth
    ).json()
    return board, lst, card


# === Accounts ===


def test_register_and_login(client):
    r = client.post("/v1/users", json={"username": "bob", "password": "long enough", "displayName": "Bob"})
    assert r.status_code == 201
    assert r.json()["displayName"] == "Bob"
    assert "password_hash" not in r.json()

    r = client.post("/v1/sessions", json={"username": "bob", "password": "long enough"})
    assert r.json()["tokenType"] == "bearer"

    r = client.post("/v1/sessions", json={"username": "bob", "password": "nope"})
    assert r.status_code == 401


def test_duplicate_username_conflicts(client, auth):
    r = client.post("/v1/users", json={"username": "alice", "password": "correct horse"})
    assert r.status_code == 409
    assert r.json()["error_code"] == "CONFLICT"


def test_identity_login_is_find_or_create(client):
    first = client.post("/v1/identities", json={"externalId": "github|1", "displayName": "Octo"}).json()
    again = client.post("/v1/identities", json={"externalId": "github|1", "displayName": "Octo"}).json()
    assert first["userId"] == again["userId"]
    me = client.get("/v1/me", headers={"Authorization": f"Bearer {first['accessToken']}"})
    assert me.json()["displayName"] == "Octo"


def test_unknown_token_is_rejected(client):
    r = client.get("/v1/boards", headers={"Authorization": "Bearer nobody"})
    assert r.status_code == 401
    assert r.json() == {
        "error_code": "UNAUTHORIZED",
        "message": "authentication required",
        "detail": "unknown_user",
    }
    r = client.get("/v1/boards", headers={"Authorization": "nobody"})
    assert r.status_code == 401
    assert r.json()["detail"] == "invalid_token"


def test_bad_password_uses_error_envelope(client, auth):
    r = client.post("/v1/sessions", json={"username": "alice", "password": "wrong horse"})
    assert r.status_code == 401
    assert r.json()["error_code"] == "UNAUTHORIZED"
    assert r.json()["detail"] == "invalid_credentials"


def test_unparseable_if_match_is_a_validation_error(client, auth):
    board, _, _ = make_tree(client, auth)
    r = client.patch(f"/v1/boards/{board['id']}", json={"title": "Food"}, headers={**auth, "If-Match": "abc"})
    assert r.status_code == 400
    assert r.json()["error_code"] == "VALIDATION_ERROR"
    assert r.json()["detail"] == "invalid_if_match"


# === Boards, lists, cards ===


def test_full_tree_round_trip(client, auth):
    board, lst, card = make_tree(client, auth)
    assert card["listId"] == lst["id"]

    boards = client.get("/v1/boards", headers=auth).json()
    assert [b["title"] for b in boards["boards"]] == ["Groceries"]
    assert boards["warnings"] == []

    r = client.get(f"/v1/boards/{board['id']}", headers=auth)
    assert r.headers["ETag"] == '"1"'
    assert [x["title"] for x in r.json()["board"]["lists"]] == ["Produce"]

    r = client.get(f"/v1/boards/{board['id']}/lists/{lst['id']}", headers=auth)
    assert [c["title"] for c in r.json()["list"]["cards"]] == ["Apples"]

    r = client.get(f"/v1/boards/{board['id']}/lists/{lst['id']}/cards/{card['id']}", headers=auth)
    assert r.json()["title"] == "Apples"


def test_patch_card_updates_list_view(client, auth):
    board, lst, card = make_tree(client, auth)
    base = f"/v1/boards/{board['id']}/lists/{lst['id']}"
    r = client.patch(f"{base}/cards/{card['id']}", json={"title": "Pears"}, headers=auth)
    assert r.status_code == 200
    assert r.json()["version"] == 2
    cards = client.get(base, headers=auth).json()["list"]["cards"]
    assert [c["title"] for c in cards] == ["Pears"]


def test_patch_with_stale_if_match_conflicts(client, auth):
    board, _, _ = make_tree(client, auth)
    url = f"/v1/boards/{board['id']}"
    ok = client.patch(url, json={"title": "Food"}, headers={**auth, "If-Match": '"1"'})
    assert ok.status_code == 200
    stale = client.patch(url, json={"title": "Drinks"}, headers={**auth, "If-Match": '"1"'})
    assert stale.status_code == 409
    assert client.get("/v1/boards", headers=auth).json()["boards"][0]["title"] == "Food"


def test_delete_list_then_not_found(client, auth):
    board, lst, card = make_tree(client, auth)
    url = f"/v1/boards/{board['id']}/lists/{lst['id']}"
    assert client.delete(url, headers=auth).status_code == 204
    assert client.get(url, headers=auth).status_code == 404
    second = client.delete(url, headers=auth)
    assert second.status_code == 404
    assert second.json()["error_code"] == "NOT_FOUND"
    assert client.get(f"/v1/boards/{board['id']}", headers=auth).json()["board"]["lists"] == []


def test_delete_board(client, auth, memory):
    board, lst, card = make_tree(client, auth)
    assert client.delete(f"/v1/boards/{board['id']}", headers=auth).status_code == 204
    assert client.get("/v1/boards", headers=auth).json()["boards"] == []
    assert memory.find("cards", card["id"]) is None


def test_boards_are_private(client, auth):
    board, lst, _ = make_tree(client, auth)
    other = signup(client, "mallory")
    assert client.get(f"/v1/boards/{board['id']}", headers=other).status_code == 404
    r = client.post(f"/v1/boards/{board['id']}/lists", json={"title": "x"}, headers=other)
    assert r.status_code == 404


def test_card_under_wrong_list_is_not_found(client, auth):
    board, lst, card = make_tree(client, auth)
    other = client.post(f"/v1/boards/{board['id']}/lists", json={"title": "Dairy"}, headers=auth).json()
    r = client.get(f"/v1/boards/{board['id']}/lists/{other['id']}/cards/{card['id']}", headers=auth)
    assert r.status_code == 404


def test_validation_errors_are_422(client, auth):
    assert client.post("/v1/boards", json={"title": ""}, headers=auth).status_code == 422
    r = client.post("/v1/boards", json={"title": "   "}, headers=auth)
    assert r.status_code == 422
    assert r.json()["error_code"] == "VALIDATION_ERROR"


def test_read_repair_surfaces_warnings(client, auth, memory):
    board, lst, _ = make_tree(client, auth)
    memory.delete("lists", lst["id"])
    view = client.get(f"/v1/boards/{board['id']}", headers=auth).json()
    assert view["board"]["lists"] == []
    assert len(view["warnings"]) == 1


def test_partial_write_is_not_reported_as_success(client, auth, memory, monkeypatch):
    board, lst, _ = make_tree(client, auth)

    def broken_push(*args, **kwargs):
        raise StoreError("push", "lists", RuntimeError("disk full"))

    monkeypatch.setattr(memory, "push", broken_push)
    r = client.post(f"/v1/boards/{board['id']}/lists/{lst['id']}/cards", json={"title": "Pears"}, headers=auth)
    assert r.status_code == 500
    assert r.json()["error_code"] == "PARTIAL_WRITE"
    assert memory.find_by("cards", "title", "Pears") == []
