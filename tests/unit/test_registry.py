"""Tests for the entity registry and SQLAlchemy model registration."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

import pytest
from blog_models import Comment, Membership, Post, Status, Tag
from sqlalchemy import inspect as sa_inspect

from entity_audit.core.mutation import EntityState
from entity_audit.exceptions import (
    RegistrationError,
    SerializationFailure,
    UnknownEntityType,
)
from entity_audit.registry import (
    EntityRegistry,
    identity_text,
    model_registration,
    parse_identity,
)


class Widget:
    def __init__(self, key: str, colour: str) -> None:
        self.key = key
        self.colour = colour


class SpecialWidget(Widget):
    pass


class SelfDescribing:
    def identifier(self) -> str:
        return "sd-1"

    def type_name(self) -> str:
        return "Described"


def _register_widget(registry: EntityRegistry, name: str = "Widget"):
    return registry.register(
        name,
        identifier_extractor=lambda w: w.key,
        serializer=lambda w: {"colour": w.colour},
        deserializer=lambda w, state: setattr(w, "colour", state.fields["colour"]),
        entity_class=Widget,
    )


class TestEntityRegistry:
    """Tests for EntityRegistry lookups."""

    def test_register_and_resolve(self):
        registry = EntityRegistry()
        registration = _register_widget(registry)

        assert registry.resolve("Widget") is registration
        assert registration.identifier_extractor(Widget("w1", "red")) == "w1"

    def test_resolve_unknown_raises(self):
        registry = EntityRegistry()
        with pytest.raises(UnknownEntityType) as exc_info:
            registry.resolve("Ghost")
        assert exc_info.value.type_name == "Ghost"
        assert "Ghost" in str(exc_info.value)

    def test_empty_type_name_rejected(self):
        registry = EntityRegistry()
        with pytest.raises(ValueError):
            registry.register("", str, dict, lambda e, s: None)

    def test_reregistering_replaces_and_warns(self, caplog):
        registry = EntityRegistry()
        _register_widget(registry)
        with caplog.at_level(logging.WARNING, logger="entity_audit.registry.registry"):
            replacement = _register_widget(registry)

        assert registry.resolve("Widget") is replacement
        assert len(registry) == 1
        assert "Replacing registration" in caplog.text

    def test_type_name_for_walks_mro(self):
        registry = EntityRegistry()
        _register_widget(registry)

        assert registry.type_name_for(Widget("a", "red")) == "Widget"
        assert registry.type_name_for(SpecialWidget("b", "blue")) == "Widget"
        assert registry.type_name_for(object()) is None

    def test_type_name_capability_wins(self):
        registry = EntityRegistry()
        registry.register("Described", lambda e: e.identifier(), dict, lambda e, s: None)

        assert registry.is_auditable(SelfDescribing())
        assert registry.registration_for(SelfDescribing()).type_name == "Described"

    def test_capability_for_unregistered_name_is_not_auditable(self):
        registry = EntityRegistry()
        assert registry.type_name_for(SelfDescribing()) is None
        with pytest.raises(UnknownEntityType):
            registry.registration_for(SelfDescribing())

    def test_unregister_and_clear(self):
        registry = EntityRegistry()
        _register_widget(registry)
        _register_widget(registry, "Other")

        registry.unregister("Other")
        registry.unregister("Never")  # ignored
        assert registry.type_names == ["Widget"]
        assert "Widget" in registry
        assert "Other" not in registry

        registry.clear()
        assert len(registry) == 0
        assert not registry.is_auditable(Widget("a", "red"))


class TestModelRegistration:
    """Tests for registrations derived from mapped classes."""

    def test_fields_exclude_version_column(self):
        registration = model_registration(Post)
        post = Post(id=1, title="A", body="text", status=Status.DRAFT)

        state = registration.serializer(post)

        assert "version" not in state.fields
        assert state.fields["title"] == "A"
        assert set(state.fields) == {
            "id",
            "title",
            "body",
            "rating",
            "status",
            "published_at",
            "deleted_at",
        }
        assert registration.version_attribute == "version"

    def test_relations_are_sorted_identifiers(self):
        registration = model_registration(Post)
        post = Post(id=1, title="A")
        post.comments = [Comment(id=12, text="x"), Comment(id=3, text="y")]
        post.tags = [Tag(id=2, name="b")]

        state = registration.serializer(post)

        assert state.relations == {"comments": ["12", "3"], "tags": ["2"]}

    def test_many_to_one_is_not_a_relation(self):
        registration = model_registration(Comment)
        comment = Comment(id=1, post_id=5, text="hi")

        state = registration.serializer(comment)

        assert state.relations == {}
        assert state.fields["post_id"] == 5

    def test_capture_relations_disabled(self):
        registration = model_registration(Post, capture_relations=False)
        state = registration.serializer(Post(id=1, title="A"))
        assert state.relations == {}

    def test_exclude_skips_fields_and_relations(self):
        registration = model_registration(Post, exclude=["body", "tags"])
        state = registration.serializer(Post(id=1, title="A", body="secret"))

        assert "body" not in state.fields
        assert "tags" not in state.relations

    def test_deserializer_restores_fields_and_enum(self):
        registration = model_registration(Post)
        post = Post(id=1, title="B", status=Status.PUBLISHED)

        registration.deserializer(
            post,
            EntityState(
                fields={
                    "id": 99,
                    "title": "A",
                    "status": "draft",
                    "rating": Decimal("4.5"),
                    "published_at": datetime(2024, 1, 2, 3, 4, 5),
                }
            ),
        )

        assert post.id == 1  # primary key never overwritten
        assert post.title == "A"
        assert post.status is Status.DRAFT
        assert post.rating == Decimal("4.5")

    def test_unmapped_class_raises(self):
        with pytest.raises(RegistrationError):
            model_registration(Widget)

    def test_missing_soft_delete_attribute_raises(self):
        with pytest.raises(RegistrationError):
            model_registration(Tag, soft_delete_attribute="deleted_at")

    def test_default_type_name_is_class_name(self):
        assert model_registration(Post).type_name == "Post"
        assert model_registration(Post, type_name="BlogPost").type_name == "BlogPost"


class TestIdentity:
    """Tests for identifier text and parsing."""

    def test_identity_text_single_key(self):
        assert identity_text(Post(id=7, title="x")) == "7"

    def test_identity_text_composite_key(self):
        assert identity_text(Membership(group_id=3, user_id=9)) == "3:9"

    def test_identity_text_prefers_capability(self):
        assert identity_text(SelfDescribing()) == "sd-1"

    def test_identity_without_primary_key_raises(self):
        with pytest.raises(SerializationFailure):
            identity_text(Post(title="unsaved"))

    def test_parse_identity_coerces_int(self):
        assert parse_identity(sa_inspect(Post), "42") == 42

    def test_parse_identity_composite(self):
        assert parse_identity(sa_inspect(Membership), "3:9") == (3, 9)

    def test_parse_identity_rejects_wrong_arity(self):
        with pytest.raises(ValueError):
            parse_identity(sa_inspect(Membership), "3")

    def test_parse_identity_rejects_non_numeric(self):
        with pytest.raises(ValueError):
            parse_identity(sa_inspect(Post), "abc")
