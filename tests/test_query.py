"""Tests for the read-only query layer."""

from datetime import datetime, timedelta

from conftest import NOW, make_item
from gltodo.models import ActionType, ItemStatus, LocalMutation, MutationKind, TodoState
from gltodo.query import SortOrder, TodoFilter, effective_status, select


def _ids(views) -> list[str]:
    return [view.item.id for view in views]


ITEMS = [
    make_item("1", updated_at=NOW - timedelta(hours=5), action_name="mentioned", author="bob"),
    make_item("2", updated_at=NOW - timedelta(hours=1), action_name="review_requested"),
    make_item("3", updated_at=NOW - timedelta(hours=3), project_ref="gitlab-org/gitlab-runner"),
    make_item("4", updated_at=NOW - timedelta(hours=2), project_ref="other/tool", action_name="build_failed"),
    make_item("5", updated_at=NOW - timedelta(hours=4), state=TodoState.DONE, completed_at=NOW),
]


def test_default_hides_done_and_sorts_by_updated_desc() -> None:
    assert _ids(select(ITEMS, now=NOW)) == ["2", "4", "3", "1"]


def test_include_done() -> None:
    views = select(ITEMS, flt=TodoFilter(include_done=True), now=NOW)
    assert "5" in _ids(views)


def test_filter_by_project_matches_group_prefix() -> None:
    assert _ids(select(ITEMS, flt=TodoFilter(project="gitlab-org"), now=NOW)) == ["2", "3", "1"]
    assert _ids(select(ITEMS, flt=TodoFilter(project="gitlab-org/gitlab"), now=NOW)) == ["2", "1"]


def test_filter_by_author_case_insensitive() -> None:
    assert _ids(select(ITEMS, flt=TodoFilter(author="BOB"), now=NOW)) == ["1"]


def test_filter_by_action_type() -> None:
    assert _ids(select(ITEMS, flt=TodoFilter(action_type=ActionType.BUILD_FAILED), now=NOW)) == ["4"]


def test_filter_by_date_range() -> None:
    flt = TodoFilter(since=NOW - timedelta(hours=3), until=NOW - timedelta(hours=2))
    assert _ids(select(ITEMS, flt=flt, now=NOW)) == ["4", "3"]


def test_naive_dates_are_treated_as_utc() -> None:
    naive = datetime(2024, 6, 1, 9, 30)
    assert _ids(select(ITEMS, flt=TodoFilter(since=naive), now=NOW)) == ["2", "4"]


def test_pending_mutation_shows_done_unconfirmed() -> None:
    mutation = LocalMutation(item_id="2", kind=MutationKind.DONE, issued_at=NOW)
    views = select(ITEMS, [mutation], TodoFilter(status=ItemStatus.DONE_UNCONFIRMED), now=NOW)
    assert _ids(views) == ["2"]
    assert "2" not in _ids(select(ITEMS, [mutation], now=NOW))


def test_snoozed_hidden_until_it_expires() -> None:
    items = [make_item("1", snoozed_until=NOW + timedelta(hours=1)), make_item("2")]
    assert _ids(select(items, now=NOW)) == ["2"]
    assert len(select(items, flt=TodoFilter(include_snoozed=True), now=NOW)) == 2
    assert len(select(items, now=NOW + timedelta(hours=2))) == 2


def test_queued_snooze_applies() -> None:
    snooze = LocalMutation(item_id="2", kind=MutationKind.SNOOZE, issued_at=NOW, snooze_until=NOW + timedelta(days=1))
    assert "2" not in _ids(select(ITEMS, [snooze], now=NOW))


def test_sort_by_priority_then_recency() -> None:
    views = select(ITEMS, flt=TodoFilter(sort=SortOrder.PRIORITY), now=NOW)
    # review_requested and assigned outrank build_failed, which outranks mentioned
    assert _ids(views) == ["2", "3", "4", "1"]


def test_effective_status() -> None:
    pending = make_item("1")
    done = make_item("2", state=TodoState.DONE)
    assert effective_status(pending, set()) is ItemStatus.PENDING
    assert effective_status(done, set()) is ItemStatus.DONE
    assert effective_status(done, {"2"}) is ItemStatus.DONE_UNCONFIRMED


def test_select_does_not_modify_input() -> None:
    items = list(ITEMS)
    select(items, flt=TodoFilter(sort=SortOrder.PRIORITY), now=NOW)
    assert items == ITEMS
