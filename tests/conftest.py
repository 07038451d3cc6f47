"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from gltodo.cache import CacheStore
from gltodo.credentials import CredentialStore
from gltodo.errors import SyncCancelled
from gltodo.models import Account, Credential, FetchResult, SyncCursor, TodoItem, TodoState
from gltodo.providers.base import TodoProvider
from gltodo.settings import GlTodoSettings

GITLAB_URL = "https://gitlab.example.com"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def todo_node(todo_id: int, **overrides) -> dict:
    """A /todos JSON object as GitLab returns it."""
    node = {
        "id": todo_id,
        "project": {"id": 13083, "path_with_namespace": "gitlab-org/gitlab"},
        "author": {"id": 1, "username": "alice", "name": "Alice"},
        "action_name": "assigned",
        "target_type": "MergeRequest",
        "target": {"id": 34, "iid": 7, "title": f"Fix flaky test {todo_id}"},
        "target_url": f"{GITLAB_URL}/gitlab-org/gitlab/-/merge_requests/{todo_id}",
        "body": "Please take a look",
        "state": "pending",
        "created_at": "2024-05-30T09:00:00.000Z",
        "updated_at": "2024-05-31T09:00:00.000Z",
    }
    node.update(overrides)
    return node


def make_item(todo_id: str, updated_at: datetime = NOW - timedelta(hours=1), **overrides) -> TodoItem:
    fields = {
        "id": todo_id,
        "project_ref": "gitlab-org/gitlab",
        "author": "alice",
        "action_name": "assigned",
        "target_type": "MergeRequest",
        "target_title": f"To-do {todo_id}",
        "target_url": f"{GITLAB_URL}/gitlab-org/gitlab/-/merge_requests/{todo_id}",
        "state": TodoState.PENDING,
        "created_at": updated_at - timedelta(days=1),
        "updated_at": updated_at,
    }
    fields.update(overrides)
    return TodoItem(**fields)


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self.tokens: dict[str, Credential] = {}
        self.clear_calls = 0

    def get(self, account: Account) -> Credential | None:
        return self.tokens.get(account.key)

    def store(self, credential: Credential) -> None:
        self.tokens[credential.account] = credential

    def clear(self, account: Account) -> None:
        self.clear_calls += 1
        self.tokens.pop(account.key, None)


class FakeProvider(TodoProvider):
    """Serves fixed pages of items; records mark_done calls."""

    def __init__(self, pages: list[list[TodoItem]] | None = None) -> None:
        self.pages = pages if pages is not None else [[]]
        self.fetch_calls = 0
        self.fetch_error: Exception | None = None
        self.mark_done_calls: list[str] = []
        self.mark_done_error: Exception | None = None
        self.on_mark_done = None
        self.user = {"id": 1, "username": "alice"}

    def fetch_todos(self, cursor: SyncCursor, page_budget=None, cancel=None) -> FetchResult:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        page: int | None = cursor.next_page or 1
        budget = page_budget or len(self.pages)
        items: list[TodoItem] = []
        fetched = 0
        while page is not None and fetched < budget:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled("cancelled")
            items.extend(self.pages[page - 1])
            fetched += 1
            page = page + 1 if page < len(self.pages) else None
        return FetchResult(
            items=items,
            next_cursor=cursor.model_copy(update={"next_page": page}),
            complete=page is None,
            pages=fetched,
        )

    def mark_done(self, item_id: str) -> None:
        self.mark_done_calls.append(item_id)
        if self.on_mark_done is not None:
            self.on_mark_done(item_id)
        if self.mark_done_error is not None:
            raise self.mark_done_error

    def current_user(self) -> dict:
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.user


@pytest.fixture
def settings(tmp_path) -> GlTodoSettings:
    return GlTodoSettings(  # type: ignore[call-arg]
        account="work",
        gitlab_url=GITLAB_URL,
        cache_dir=tmp_path / "cache",
        retry_attempts=5,
        retry_base=0.5,
        retry_cap=8.0,
        max_rate_limit_wait=60.0,
        mutation_attempt_limit=5,
        done_retention_days=30,
    )


@pytest.fixture
def account(settings: GlTodoSettings) -> Account:
    return settings.account_handle()


@pytest.fixture
def store(settings: GlTodoSettings) -> CacheStore:
    return CacheStore(settings.cache_dir)


@pytest.fixture
def credentials(account: Account) -> MemoryCredentialStore:
    creds = MemoryCredentialStore()
    creds.store(Credential(account=account.key, token="glpat-test"))  # type: ignore[arg-type]
    return creds


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
