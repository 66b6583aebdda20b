import pytest

from todoboard.db import SqlStore
from todoboard.errors import StoreError
from todoboard.models import BoardCreate, CardCreate, ListCreate
from todoboard.store import MemoryStore
from todoboard.sync import Synchronizer
from todoboard.users import UserService


class FaultyStore:
    """Wraps a store and fails chosen operations on demand."""

    def __init__(self, inner):
        self.inner = inner
        self.failures = {}
        self.hooks = {}
        self.rewrite_push_ids = False

    def fail(self, operation, after=0):
        self.failures[operation] = after

    def before(self, operation, hook):
        """Run ``hook`` once, just before the next call to ``operation``."""
        self.hooks[operation] = hook

    def _maybe_fail(self, operation, collection):
        if operation not in self.failures:
            return
        if self.failures[operation] == 0:
            del self.failures[operation]
            raise StoreError(operation, collection, RuntimeError("injected failure"))
        self.failures[operation] -= 1

    def push(self, collection, doc_id, field, element):
        self._maybe_fail("push", collection)
        if self.rewrite_push_ids:
            element = {**element, "id": "rewritten-" + element["id"]}
        return self.inner.push(collection, doc_id, field, element)

    def __getattr__(self, name):
        target = getattr(self.inner, name)

        def call(collection, *args, **kwargs):
            self._maybe_fail(name, collection)
            hook = self.hooks.pop(name, None)
            if hook is not None:
                hook()
            return target(collection, *args, **kwargs)

        return call


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return MemoryStore()
    return SqlStore("sqlite://")


@pytest.fixture
def sync(store):
    return Synchronizer(store)


@pytest.fixture
def users(store):
    return UserService(store)


@pytest.fixture
def user(users):
    return users.register("alice", "correct horse", "Alice")


@pytest.fixture
def tree(sync, user):
    board = sync.create_board(user["id"], BoardCreate(title="Groceries"))
    produce = sync.create_list(board["id"], ListCreate(title="Produce"))
    apples = sync.create_card(produce["id"], CardCreate(title="Apples"))
    return {"user": user, "board": board, "list": produce, "card": apples}


@pytest.fixture
def faulty(store):
    return FaultyStore(store)
