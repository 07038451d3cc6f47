"""Tests for gltodo.models."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import NOW, make_item, todo_node
from gltodo.models import Account, ActionType, Credential, TodoItem, TodoState


def test_item_frozen() -> None:
    item = make_item("1")
    with pytest.raises(Exception):  # ValidationError or TypeError depending on pydantic version
        item.state = TodoState.DONE  # type: ignore[misc]


def test_from_api_maps_fields() -> None:
    item = TodoItem.from_api(todo_node(102))
    assert item.id == "102"
    assert item.project_ref == "gitlab-org/gitlab"
    assert item.author == "alice"
    assert item.action_type is ActionType.ASSIGNED
    assert item.target_title == "Fix flaky test 102"
    assert item.state is TodoState.PENDING
    assert item.updated_at.tzinfo is not None
    assert item.completed_at is None


def test_from_api_unknown_action_keeps_raw_value() -> None:
    item = TodoItem.from_api(todo_node(1, action_name="duo_enterprise_access_granted"))
    assert item.action_type is ActionType.UNKNOWN
    assert item.action_name == "duo_enterprise_access_granted"


def test_from_api_group_level_todo() -> None:
    item = TodoItem.from_api(todo_node(1, project=None, group={"full_path": "gitlab-org"}))
    assert item.project_ref == "gitlab-org"


def test_from_api_missing_updated_at_uses_created_at() -> None:
    node = todo_node(1)
    del node["updated_at"]
    item = TodoItem.from_api(node)
    assert item.updated_at == item.created_at


def test_from_api_truncates_body() -> None:
    item = TodoItem.from_api(todo_node(1, body="word\n" * 200))
    assert len(item.body_snippet) <= 200
    assert item.body_snippet.endswith("...")
    assert "\n" not in item.body_snippet


def test_from_api_missing_id_raises() -> None:
    node = todo_node(1)
    del node["id"]
    with pytest.raises(KeyError):
        TodoItem.from_api(node)


def test_from_api_bad_timestamp_raises() -> None:
    with pytest.raises(ValidationError):
        TodoItem.from_api(todo_node(1, created_at="yesterday", updated_at="yesterday"))


def test_action_type_parse_none() -> None:
    assert ActionType.parse(None) is ActionType.UNKNOWN


def test_is_snoozed() -> None:
    item = make_item("1", snoozed_until=NOW + timedelta(hours=1))
    assert item.is_snoozed(NOW)
    assert not item.is_snoozed(NOW + timedelta(hours=2))
    assert not make_item("2").is_snoozed(NOW)


def test_account_key_uses_host() -> None:
    account = Account(name="work", gitlab_url="https://gitlab.example.com")
    assert account.host == "gitlab.example.com"
    assert account.key == "work@gitlab.example.com"


def test_credential_token_not_in_repr() -> None:
    credential = Credential(account="work@gitlab.com", token="glpat-secret")  # type: ignore[arg-type]
    assert "glpat-secret" not in repr(credential)
    assert credential.token.get_secret_value() == "glpat-secret"
