from __future__ import annotations

from dataclasses import dataclass

import pytest

from dynarecord import ModelDefinition, ValidationError, record_field
from dynarecord import tracking


@dataclass
class Post:
    pk: str = record_field(roles=["pk"])
    title: str | None = record_field(default=None)
    tags: list[str] = record_field(default_factory=list)


def test_new_items_are_dirty_against_none() -> None:
    post = Post(pk="p1", title="hello")

    assert tracking.is_new_record(post)
    assert not tracking.is_persisted(post)
    assert tracking.is_dirty(post)
    assert tracking.dirty_fields(post) == ["pk", "title", "tags"]
    assert tracking.attribute_was(post, "title") is None


def test_clean_then_change_reports_only_changed_fields() -> None:
    post = Post(pk="p1", title="hello")
    tracking.clean(post)
    assert not tracking.is_dirty(post)

    post.title = "bye"
    assert tracking.dirty_fields(post) == ["title"]
    assert tracking.attribute_dirty(post, "title")
    assert not tracking.attribute_dirty(post, "pk")
    assert tracking.attribute_was(post, "title") == "hello"


def test_in_place_mutation_is_detected() -> None:
    post = Post(pk="p1", tags=["a"])
    tracking.clean(post)

    post.tags.append("b")
    assert tracking.dirty_fields(post) == ["tags"]
    assert tracking.attribute_was(post, "tags") == ["a"]


def test_in_place_mutation_is_missed_without_mutation_tracking() -> None:
    model = ModelDefinition.from_dataclass(Post, track_mutations=False)
    post = Post(pk="p1", tags=["a"])
    tracking.clean(post, model)

    post.tags.append("b")
    assert not tracking.is_dirty(post, model)

    post.tags = ["c"]
    assert tracking.dirty_fields(post, model) == ["tags"]


def test_mark_dirty_forces_a_field() -> None:
    post = Post(pk="p1")
    tracking.clean(post)

    tracking.mark_dirty(post, "title")
    assert tracking.dirty_fields(post) == ["title"]

    tracking.clean(post)
    assert not tracking.is_dirty(post)


def test_rollback_restores_clean_values() -> None:
    post = Post(pk="p1", title="hello", tags=["a"])
    tracking.clean(post)

    post.title = "changed"
    post.tags.append("b")
    tracking.rollback(post)

    assert post.title == "hello"
    assert post.tags == ["a"]
    assert not tracking.is_dirty(post)

    # The snapshot survives a second round of in-place edits.
    post.tags.append("c")
    tracking.rollback_attribute(post, "tags")
    assert post.tags == ["a"]


def test_rollback_limited_to_named_fields() -> None:
    post = Post(pk="p1", title="hello")
    tracking.clean(post)
    post.title = "x"
    post.tags = ["z"]

    tracking.rollback(post, ["tags"])
    assert post.tags == []
    assert post.title == "x"


def test_assign_sets_known_fields_only() -> None:
    post = Post(pk="p1")
    tracking.assign(post, title="t", tags=["x"])
    assert (post.title, post.tags) == ("t", ["x"])

    with pytest.raises(ValidationError, match="unknown attribute"):
        tracking.assign(post, body="nope")

    with pytest.raises(ValidationError, match="unknown attribute"):
        tracking.attribute_dirty(post, "body")


def test_lifecycle_flags() -> None:
    post = Post(pk="p1")
    tracking.mark_persisted(post)
    assert tracking.is_persisted(post)
    assert not tracking.is_new_record(post)
    assert not tracking.is_dirty(post)

    tracking.mark_destroyed(post)
    assert tracking.is_destroyed(post)
    assert not tracking.is_persisted(post)


def test_tracking_state_does_not_affect_equality_or_repr() -> None:
    a = Post(pk="p1", title="t")
    b = Post(pk="p1", title="t")
    tracking.mark_persisted(a)

    assert a == b
    assert "dynarecord" not in repr(a)
