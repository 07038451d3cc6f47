"""Shared pydantic models: the contract between the provider, cache, engine and main.py."""

import re
from datetime import datetime
from enum import Enum
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, SecretStr

SCHEMA_VERSION = 1
SNIPPET_LENGTH = 200


class ActionType(str, Enum):
    ASSIGNED = "assigned"
    MENTIONED = "mentioned"
    BUILD_FAILED = "build_failed"
    MARKED = "marked"
    APPROVAL_REQUIRED = "approval_required"
    UNMERGEABLE = "unmergeable"
    DIRECTLY_ADDRESSED = "directly_addressed"
    MERGE_TRAIN_REMOVED = "merge_train_removed"
    REVIEW_REQUESTED = "review_requested"
    MEMBER_ACCESS_REQUESTED = "member_access_requested"
    REVIEW_SUBMITTED = "review_submitted"
    OKR_CHECKIN_REQUESTED = "okr_checkin_requested"
    ADDED_APPROVER = "added_approver"
    SSH_KEY_EXPIRED = "ssh_key_expired"
    SSH_KEY_EXPIRING_SOON = "ssh_key_expiring_soon"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> "ActionType":
        """Map a raw GitLab action_name to a member, UNKNOWN for anything new."""
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


class TodoState(str, Enum):
    PENDING = "pending"
    DONE = "done"


class ItemStatus(str, Enum):
    PENDING = "pending"
    DONE_UNCONFIRMED = "done_unconfirmed"  # marked done locally, GitLab not yet told
    DONE = "done"


class MutationKind(str, Enum):
    DONE = "done"
    SNOOZE = "snooze"  # local only, queued just while a sync pass holds the account


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str  # profile name from config.toml
    gitlab_url: str = "https://gitlab.com"

    @property
    def host(self) -> str:
        return urlparse(self.gitlab_url).netloc or self.gitlab_url

    @property
    def key(self) -> str:
        """Stable identifier used for the keyring entry and the cache file."""
        return f"{self.name}@{self.host}"


class Credential(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: str  # Account.key
    token: SecretStr


def _object(node: dict, key: str) -> dict:
    value = node.get(key)
    return value if isinstance(value, dict) else {}


def _snippet(body: str | None) -> str:
    text = re.sub(r"\s+", " ", body or "").strip()
    if len(text) > SNIPPET_LENGTH:
        text = text[: SNIPPET_LENGTH - 3].rstrip() + "..."
    return text


class TodoItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str  # GitLab to-do ID
    project_ref: str = ""  # group/project path, or group path for group-level to-dos
    author: str = ""
    action_name: str  # raw value; see action_type
    target_type: str = ""  # MergeRequest, Issue, Commit, ...
    target_title: str = ""
    target_url: str = ""
    body_snippet: str = ""
    state: TodoState = TodoState.PENDING
    created_at: datetime
    updated_at: datetime

    # Local overlay, never sent to GitLab
    completed_at: datetime | None = None
    snoozed_until: datetime | None = None

    @property
    def action_type(self) -> ActionType:
        return ActionType.parse(self.action_name)

    def is_snoozed(self, now: datetime) -> bool:
        return self.snoozed_until is not None and self.snoozed_until > now

    @classmethod
    def from_api(cls, node: dict) -> "TodoItem":
        """Build an item from a GitLab /todos JSON object.

        Raises KeyError or pydantic.ValidationError on a malformed node; the
        provider turns both into ApiMalformed.
        """
        project = _object(node, "project")
        group = _object(node, "group")
        author = _object(node, "author")
        target = _object(node, "target")
        created_at = node["created_at"]
        return cls(
            id=str(node["id"]),
            project_ref=project.get("path_with_namespace") or group.get("full_path") or "",
            author=author.get("username") or "",
            action_name=node["action_name"],
            target_type=node.get("target_type") or "",
            target_title=target.get("title") or target.get("name") or "",
            target_url=node.get("target_url") or "",
            body_snippet=_snippet(node.get("body")),
            state=TodoState(node.get("state", "pending")),
            created_at=created_at,
            updated_at=node.get("updated_at") or created_at,
        )


class TodoView(BaseModel):
    """A cached item paired with its status after pending mutations are applied."""

    model_config = ConfigDict(frozen=True)

    item: TodoItem
    status: ItemStatus


class SyncCursor(BaseModel):
    model_config = ConfigDict(frozen=True)

    next_page: int | None = None  # None: the last pass reached the end of the feed
    last_synced_at: datetime | None = None
    last_complete_at: datetime | None = None


class LocalMutation(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    kind: MutationKind = MutationKind.DONE
    issued_at: datetime
    attempts: int = 0
    last_error: str | None = None
    snooze_until: datetime | None = None  # SNOOZE only; None unsnoozes


class RateLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None


class FetchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[TodoItem] = []
    next_cursor: SyncCursor
    rate_limit_remaining: int | None = None
    complete: bool  # server said there are no further pages
    pages: int = 0


class CacheSnapshot(BaseModel):
    """The versioned record persisted per account by the cache store."""

    model_config = ConfigDict(frozen=True)

    schema_version: int = SCHEMA_VERSION
    account: str
    cursor: SyncCursor = SyncCursor()
    items: list[TodoItem] = []
    pending_mutations: list[LocalMutation] = []
    # Uncached to-dos GitLab acknowledged as done, so a repeat mark-done stays local
    confirmed_done: dict[str, datetime] = {}


class SyncReport(BaseModel):
    added: int = 0
    updated: int = 0
    removed: int = 0  # resolved on GitLab outside this tool
    pruned: int = 0
    confirmed: int = 0  # queued done mutations acknowledged by GitLab
    pages: int = 0
    complete: bool = False
    exhausted: list[str] = []  # item IDs whose done mutation was abandoned
    warnings: list[str] = []
