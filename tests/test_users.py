import threading

import pytest

from todoboard.errors import ConflictError, NotFoundError, ValidationError
from todoboard.users import verify_password


def run_together(count, work):
    """Start ``count`` threads on ``work(n)`` at once; return results and errors."""
    barrier = threading.Barrier(count)
    results, errors = [], []

    def target(n):
        barrier.wait()
        try:
            results.append(work(n))
        except Exception as exc:  # noqa: BLE001 - collected for the assertions
            errors.append(exc)

    threads = [threading.Thread(target=target, args=(n,)) for n in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


def test_register_hashes_password(users):
    user = users.register("  bob ", "hunter2hunter2")
    assert user["username"] == "bob"
    assert user["display_name"] == "bob"
    assert user["boards"] == []
    assert user["password_hash"] != "hunter2hunter2"
    assert verify_password("hunter2hunter2", user["password_hash"])


def test_register_rejects_taken_username(users, user):
    with pytest.raises(ConflictError):
        users.register("alice", "another password")


def test_simultaneous_registrations_create_one_user(users, store):
    results, errors = run_together(4, lambda n: users.register("alice", "correct horse"))
    assert len(results) == 1
    assert len(errors) == 3
    assert all(isinstance(e, ConflictError) for e in errors)
    assert len(store.find_by("users", "username", "alice")) == 1


@pytest.mark.parametrize("username,password", [("", "long enough"), ("carol", "short")])
def test_register_validates(users, username, password):
    with pytest.raises(ValidationError):
        users.register(username, password)


def test_authenticate(users, user):
    assert users.authenticate("alice", "correct horse")["id"] == user["id"]
    with pytest.raises(NotFoundError):
        users.authenticate("alice", "wrong horse")
    with pytest.raises(NotFoundError):
        users.authenticate("nobody", "correct horse")


def test_external_identity_is_found_or_created_once(users):
    first = users.find_or_create_external("github|42", "Octo Cat")
    again = users.find_or_create_external("github|42", "Renamed")
    assert first["id"] == again["id"]
    assert again["display_name"] == "Octo Cat"
    assert first["password_hash"] is None


def test_external_identity_created_meanwhile_is_returned(users, store, monkeypatch):
    first = users.find_or_create_external("github|42", "Octo Cat")
    real_find_by = store.find_by
    calls = []

    def find_by_missing_first(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return []
        return real_find_by(*args, **kwargs)

    monkeypatch.setattr(store, "find_by", find_by_missing_first)
    again = users.find_or_create_external("github|42", "Octo Cat")
    assert again["id"] == first["id"]
    assert len(real_find_by("users", "external_id", "github|42")) == 1


def test_simultaneous_first_logins_create_one_user(users, store):
    results, errors = run_together(4, lambda n: users.find_or_create_external("github|7", "Octo"))
    assert errors == []
    assert len({u["id"] for u in results}) == 1
    assert len(store.find_by("users", "external_id", "github|7")) == 1


def test_external_user_cannot_password_login(users):
    users.find_or_create_external("google|7", "G")
    with pytest.raises(NotFoundError):
        users.authenticate("google|7", "")


def test_get(users, user):
    assert users.get(user["id"])["username"] == "alice"
    with pytest.raises(NotFoundError):
        users.get("missing")
