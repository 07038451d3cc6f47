"""Read-only projections over the cached snapshot. No I/O, no network."""

from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict

from gltodo.models import ActionType, ItemStatus, LocalMutation, MutationKind, TodoItem, TodoState, TodoView


class SortOrder(str, Enum):
    UPDATED = "updated"
    PRIORITY = "priority"


# Higher first. Things blocking someone else outrank notifications.
ACTION_PRIORITY = {
    ActionType.ASSIGNED: 5,
    ActionType.REVIEW_REQUESTED: 5,
    ActionType.APPROVAL_REQUIRED: 4,
    ActionType.ADDED_APPROVER: 4,
    ActionType.BUILD_FAILED: 3,
    ActionType.UNMERGEABLE: 3,
    ActionType.MERGE_TRAIN_REMOVED: 3,
    ActionType.DIRECTLY_ADDRESSED: 2,
    ActionType.MEMBER_ACCESS_REQUESTED: 2,
    ActionType.MENTIONED: 1,
    ActionType.REVIEW_SUBMITTED: 1,
    ActionType.MARKED: 1,
}


class TodoFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    project: str | None = None  # exact path or a parent group
    author: str | None = None
    action_type: ActionType | None = None
    status: ItemStatus | None = None  # overrides include_done
    since: datetime | None = None  # on updated_at, inclusive
    until: datetime | None = None
    include_snoozed: bool = False
    include_done: bool = False
    sort: SortOrder = SortOrder.UPDATED


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _in_project(project_ref: str, project: str) -> bool:
    wanted = project.strip("/").lower()
    ref = project_ref.lower()
    return ref == wanted or ref.startswith(wanted + "/")


def priority(item: TodoItem) -> int:
    return ACTION_PRIORITY.get(item.action_type, 0)


def effective_status(item: TodoItem, pending_done: set[str]) -> ItemStatus:
    if item.id in pending_done:
        return ItemStatus.DONE_UNCONFIRMED
    if item.state is TodoState.DONE:
        return ItemStatus.DONE
    return ItemStatus.PENDING


def _matches(view: TodoView, flt: TodoFilter, now: datetime) -> bool:
    item, status = view.item, view.status
    if flt.status is not None:
        if status is not flt.status:
            return False
    elif not flt.include_done and status is not ItemStatus.PENDING:
        return False
    if not flt.include_snoozed and status is ItemStatus.PENDING and item.is_snoozed(now):
        return False
    if flt.project and not _in_project(item.project_ref, flt.project):
        return False
    if flt.author and item.author.lower() != flt.author.lower():
        return False
    if flt.action_type is not None and item.action_type is not flt.action_type:
        return False
    if flt.since is not None and item.updated_at < _aware(flt.since):
        return False
    if flt.until is not None and item.updated_at > _aware(flt.until):
        return False
    return True


def select(
    items: Iterable[TodoItem],
    mutations: Iterable[LocalMutation] = (),
    flt: TodoFilter | None = None,
    now: datetime | None = None,
) -> list[TodoView]:
    """Apply queued mutations to the items, filter, and sort (most recently updated first by default)."""
    flt = flt or TodoFilter()
    now = now or datetime.now(timezone.utc)
    pending_done: set[str] = set()
    snoozes: dict[str, datetime | None] = {}
    for mutation in mutations:
        if mutation.kind is MutationKind.DONE:
            pending_done.add(mutation.item_id)
        else:
            snoozes[mutation.item_id] = mutation.snooze_until

    views = []
    for item in items:
        if item.id in snoozes:
            item = item.model_copy(update={"snoozed_until": snoozes[item.id]})
        view = TodoView(item=item, status=effective_status(item, pending_done))
        if _matches(view, flt, now):
            views.append(view)

    views.sort(key=lambda v: v.item.updated_at, reverse=True)
    if flt.sort is SortOrder.PRIORITY:
        # stable sort keeps recency order within a priority
        views.sort(key=lambda v: priority(v.item), reverse=True)
    return views
