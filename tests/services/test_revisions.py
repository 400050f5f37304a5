from __future__ import annotations

import json
from typing import Callable
from unittest.mock import MagicMock, call

import pytest

from itemstore.errors import ValidationError
from itemstore.permissions import Accountability
from itemstore.services import ItemsService, MutationOptions

Factory = Callable[..., ItemsService]

REVISIONS_SQL = 'SELECT action, collection, item, data, delta, "user" FROM directus_revisions ORDER BY id'


def test_create_and_update_are_recorded(service: Factory, fetch_all) -> None:
    articles = service("articles")
    key = articles.create_one({"title": "A"})
    articles.update_one(key, {"title": "B"})

    rows = fetch_all(REVISIONS_SQL)
    assert [(r["action"], r["collection"], r["item"]) for r in rows] == [
        ("create", "articles", str(key)),
        ("update", "articles", str(key)),
    ]
    assert json.loads(rows[0]["delta"]) == {"title": "A"}
    assert json.loads(rows[1]["delta"]) == {"title": "B"}
    assert json.loads(rows[1]["data"])["title"] == "B"
    assert rows[0]["user"] is None


def test_delete_is_not_recorded(service: Factory, fetch_all) -> None:
    articles = service("articles")
    key = articles.create_one({"title": "A"})
    callback = MagicMock()

    articles.delete_one(key, MutationOptions(on_revision_create=callback))

    assert [r["action"] for r in fetch_all(REVISIONS_SQL)] == ["create"]
    callback.assert_not_called()


def test_callback_runs_per_item(service: Factory) -> None:
    callback = MagicMock()

    keys = service("articles").create_many([{"title": "A"}, {"title": "B"}], MutationOptions(on_revision_create=callback))

    assert callback.call_args_list == [call(keys[0]), call(keys[1])]


def test_callback_is_not_passed_to_nested_writes(service: Factory) -> None:
    callback = MagicMock()

    key = service("articles").create_one(
        {"title": "A", "comments": [{"body": "1"}]}, MutationOptions(on_revision_create=callback)
    )

    callback.assert_called_once_with(key)


def test_rolled_back_writes_leave_no_revision(service: Factory, fetch_all) -> None:
    with pytest.raises(ValidationError):
        service("articles").create_many([{"title": "A"}, {"body": "not a field"}])

    assert fetch_all(REVISIONS_SQL) == []


def test_accountability_user_is_recorded(context, fetch_all) -> None:
    ItemsService("articles", context, Accountability(user=7, role="editor")).create_one({"title": "A"})
    assert fetch_all(REVISIONS_SQL)[0]["user"] == 7


def test_tracking_can_be_disabled(service: Factory, context, fetch_all) -> None:
    context.config.track_revisions = False
    callback = MagicMock()

    key = service("articles").create_one({"title": "A"}, MutationOptions(on_revision_create=callback))

    assert fetch_all(REVISIONS_SQL) == []
    callback.assert_called_once_with(key)
