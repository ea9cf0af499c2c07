"""
Rollback Integration Tests
~~~~~~~~~~~~~~~~~~~~~~~~~~

Rollbacks run through the same audited write path as any other change:
each one restores a recorded state and appends new history.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from blog_models import Comment, Post, Status, Tag
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from entity_audit import PREVIOUS, AuditLog, EntityAuditor, Snapshot, SnapshotStore
from entity_audit.config import load_config_from_dict
from entity_audit.exceptions import (
    ConcurrentModification,
    EntityNotFound,
    RollbackError,
    SnapshotApplyFailure,
    SnapshotNotFound,
    UnknownEntityType,
)
from entity_audit.hosts.sqlalchemy_host import SessionUnitOfWork


def _post(session_factory, post_id: int = 1) -> Post:
    with session_factory() as session:
        post = session.get(Post, post_id)
        session.expunge_all()
        return post


def _snapshot_count(plain_session) -> int:
    return len(plain_session.scalars(select(Snapshot)).all())


# ── Core scenarios ───────────────────────────────────────────────


class TestRollbackToPrevious:
    """Post A -> B, then roll back to previous."""

    def test_title_restored_and_history_appended(
        self, create_post, update_post, auditor, session_factory
    ):
        create_post(1, "A")
        update_post(1, title="B")
        s1, s2 = auditor.history("Post", 1)

        result = auditor.rollback("Post", "1", "previous")

        assert result.success
        assert result.error is None
        assert result.snapshot_id == s1.id
        assert _post(session_factory).title == "A"

        history = auditor.history("Post", 1)
        assert [h.id for h in history[:2]] == [s1.id, s2.id]
        assert len(history) == 3
        s3 = auditor.get_snapshot(history[2].id)
        assert s3.payload["fields"]["title"] == "A"
        assert s3.change == "modified"
        assert s3.rollback_of_id == s1.id
        assert s3.audit_log_id == result.audit_log_id
        assert len({h.audit_log_id for h in history}) == 3

    def test_previous_sentinel_constant(self, create_post, update_post, auditor, session_factory):
        create_post(1, "A")
        update_post(1, title="B")

        assert auditor.rollback("Post", 1, PREVIOUS).success
        assert _post(session_factory).title == "A"

    def test_previous_is_default_target(self, create_post, update_post, auditor, session_factory):
        create_post(1, "A")
        update_post(1, title="B")

        auditor.rollback("Post", 1).unwrap()
        assert _post(session_factory).title == "A"

    def test_previous_needs_two_snapshots(self, create_post, auditor):
        create_post(1, "A")

        result = auditor.rollback("Post", 1)

        assert not result.success
        assert isinstance(result.error, SnapshotNotFound)
        with pytest.raises(SnapshotNotFound):
            result.unwrap()

    def test_repeated_previous_toggles(self, create_post, update_post, auditor, session_factory):
        create_post(1, "A")
        update_post(1, title="B")

        auditor.rollback("Post", 1).unwrap()
        assert _post(session_factory).title == "A"
        # The snapshot before the rollback's own snapshot holds "B".
        auditor.rollback("Post", 1).unwrap()
        assert _post(session_factory).title == "B"
        assert len(auditor.history("Post", 1)) == 4


class TestExplicitTargets:
    """Rollback to a chosen snapshot or point in time."""

    def test_round_trip_payload_equality(
        self, create_post, update_post, auditor
    ):
        create_post(
            1,
            "Original",
            body="first body",
            rating=Decimal("3.25"),
            status=Status.DRAFT,
            published_at=datetime(2023, 12, 31, 23, 59, 59, 999999),
        )
        update_post(
            1,
            title="Edited",
            body="second body",
            rating=Decimal("1.00"),
            status=Status.PUBLISHED,
            published_at=None,
        )
        target = auditor.list_by_entity("Post", 1)[0]

        result = auditor.rollback("Post", 1, target.id).unwrap()

        restored = auditor.get_snapshot(auditor.history("Post", 1)[-1].id)
        assert restored.payload == target.payload
        assert result.snapshot_id == target.id

    def test_idempotent_target_selection(
        self, create_post, update_post, auditor, session_factory
    ):
        create_post(1, "A")
        update_post(1, title="B")
        update_post(1, title="C")
        target = auditor.history("Post", 1)[1]

        auditor.rollback("Post", 1, target.id).unwrap()
        first = _post(session_factory).title
        auditor.rollback("Post", 1, str(target.id)).unwrap()
        second = _post(session_factory).title

        assert first == second == "B"
        assert len(auditor.history("Post", 1)) == 5

    def test_noop_rollback_is_still_audited(
        self, create_post, update_post, auditor, session_factory
    ):
        create_post(1, "A")
        update_post(1, title="B")
        latest = auditor.history("Post", 1)[-1]
        version_before = _post(session_factory).version

        result = auditor.rollback("Post", 1, latest.id).unwrap()

        assert result.audit_log_id is not None
        assert len(auditor.history("Post", 1)) == 3
        assert _post(session_factory).version == version_before + 1

    def test_datetime_target(self, create_post, update_post, auditor, session_factory):
        create_post(1, "A")
        update_post(1, title="B")
        s1, s2 = auditor.history("Post", 1)

        auditor.rollback("Post", 1, s2.created_at).unwrap()
        assert _post(session_factory).title == "A"

    def test_datetime_before_history(self, create_post, auditor):
        create_post(1, "A")
        first = auditor.history("Post", 1)[0]

        result = auditor.rollback("Post", 1, first.created_at - timedelta(days=1))
        assert isinstance(result.error, SnapshotNotFound)

    def test_relations_restored_as_references(self, session_factory, auditor):
        with session_factory() as session:
            session.add_all([Tag(id=1, name="x"), Tag(id=2, name="y")])
            session.flush()
            post = Post(id=1, title="A")
            post.tags = [session.get(Tag, 1)]
            session.add(post)
            session.commit()
        with session_factory() as session:
            post = session.get(Post, 1)
            post.tags = [session.get(Tag, 2)]
            session.commit()

        first = auditor.list_by_entity("Post", 1)[0]
        auditor.rollback("Post", 1, first.id).unwrap()

        with session_factory() as session:
            assert [t.id for t in session.get(Post, 1).tags] == [1]

    def test_relations_left_alone_when_disabled(self, session_factory):
        auditor = EntityAuditor(
            session_factory,
            config=load_config_from_dict({"rollback": {"restore_relations": False}}),
        )
        auditor.register_model(Post)
        auditor.register_model(Tag)
        try:
            with session_factory() as session:
                session.add_all([Tag(id=1, name="x"), Tag(id=2, name="y")])
                session.flush()
                post = Post(id=1, title="A")
                post.tags = [session.get(Tag, 1)]
                session.add(post)
                session.commit()
            with session_factory() as session:
                post = session.get(Post, 1)
                post.title = "B"
                post.tags = [session.get(Tag, 2)]
                session.commit()

            auditor.rollback("Post", 1).unwrap()

            with session_factory() as session:
                post = session.get(Post, 1)
                assert post.title == "A"
                assert [t.id for t in post.tags] == [2]
        finally:
            auditor.uninstall()


# ── Failure modes ────────────────────────────────────────────────


class TestRollbackFailures:
    """Typed errors come back in the result and nothing is committed."""

    def test_missing_entity(self, create_post, auditor, plain_session):
        create_post(1, "A")
        s1 = auditor.history("Post", 1)[0]
        before = _snapshot_count(plain_session)

        result = auditor.rollback("Post", "999", s1.id)

        assert not result.success
        assert isinstance(result.error, EntityNotFound)
        assert result.error.entity_id == "999"
        assert _snapshot_count(plain_session) == before

    def test_hard_deleted_entity_is_not_resurrected(
        self, create_post, update_post, auditor, session_factory
    ):
        create_post(1, "A")
        update_post(1, title="B")
        with session_factory() as session:
            session.delete(session.get(Post, 1))
            session.commit()

        result = auditor.rollback("Post", 1, auditor.history("Post", 1)[0].id)
        assert isinstance(result.error, EntityNotFound)

    def test_unknown_type(self, auditor):
        result = auditor.rollback("Ghost", 1)
        assert isinstance(result.error, UnknownEntityType)

    def test_unknown_snapshot(self, create_post, auditor):
        create_post(1, "A")
        result = auditor.rollback("Post", 1, uuid4())
        assert isinstance(result.error, SnapshotNotFound)

    def test_snapshot_of_another_entity(self, create_post, auditor):
        create_post(1, "A")
        create_post(2, "Other")
        other = auditor.history("Post", 2)[0]

        result = auditor.rollback("Post", 1, other.id)
        assert isinstance(result.error, SnapshotNotFound)

    def test_snapshot_of_another_type(self, session_factory, auditor):
        with session_factory() as session:
            session.add_all([Post(id=1, title="A"), Comment(id=1, text="c")])
            session.commit()
        comment_snapshot = auditor.history("Comment", 1)[0]

        result = auditor.rollback("Post", 1, comment_snapshot.id)
        assert isinstance(result.error, SnapshotNotFound)

    def test_failures_are_counted(self, auditor):
        auditor.rollback("Ghost", 1)
        metrics = auditor.get_metrics()
        assert metrics.rollback_failures == 1
        assert metrics.rollbacks == 0


class TestConcurrency:
    """Optimistic checks refuse to overwrite a newer state."""

    def test_expected_version_mismatch(self, create_post, update_post, auditor, session_factory):
        create_post(1, "A")
        update_post(1, title="B")
        current = _post(session_factory).version

        result = auditor.rollback("Post", 1, expected_version=current - 1)

        assert isinstance(result.error, ConcurrentModification)
        assert result.error.expected == current - 1
        assert result.error.actual == current
        assert _post(session_factory).title == "B"
        assert auditor.get_metrics().concurrent_modifications == 1

    def test_expected_version_match(self, create_post, update_post, auditor, session_factory):
        create_post(1, "A")
        update_post(1, title="B")
        current = _post(session_factory).version

        assert auditor.rollback("Post", 1, expected_version=current).success

    def test_expected_version_without_version_column(self, session_factory, auditor):
        with session_factory() as session:
            session.add(Tag(id=1, name="x"))
            session.commit()
        with session_factory() as session:
            session.get(Tag, 1).name = "y"
            session.commit()

        result = auditor.rollback("Tag", 1, expected_version=1)
        assert isinstance(result.error, RollbackError)

    def test_stale_row_version(self, create_post, update_post, auditor, engine, session_factory):
        create_post(1, "A")
        update_post(1, title="B")

        registration = auditor.registry.resolve("Post")
        original = registration.deserializer

        def concurrent_writer(entity, state):
            # Another writer commits between our read and our write.
            with Session(engine) as other:
                other.get(Post, 1).body = "written elsewhere"
                other.commit()
            original(entity, state)

        auditor.registry.add(
            type(registration)(
                **{**registration.__dict__, "deserializer": concurrent_writer}
            )
        )

        result = auditor.rollback("Post", 1)

        assert isinstance(result.error, ConcurrentModification)
        assert _post(session_factory).body == "written elsewhere"
        assert _post(session_factory).title == "B"

    def test_history_head_moved(self, create_post, update_post, auditor, session_factory):
        create_post(1, "A")
        update_post(1, title="B")

        registration = auditor.registry.resolve("Post")
        original = registration.deserializer

        def audited_writer(entity, state):
            # A concurrent audited commit appends history for the entity.
            with session_factory() as other:
                other.get(Post, 1).body = "audited elsewhere"
                other.commit()
            original(entity, state)

        auditor.registry.add(
            type(registration)(**{**registration.__dict__, "deserializer": audited_writer})
        )

        result = auditor.rollback("Post", 1)

        assert isinstance(result.error, ConcurrentModification)
        assert len(auditor.history("Post", 1)) == 3
        assert _post(session_factory).title == "B"


class TestUnversionedConcurrency:
    """Tags have no version column; only the history head protects them."""

    @pytest.fixture
    def renamed_tag(self, session_factory, auditor):
        with session_factory() as session:
            session.add(Tag(id=1, name="x"))
            session.commit()
        with session_factory() as session:
            session.get(Tag, 1).name = "y"
            session.commit()

    def _tag_name(self, session_factory) -> str:
        with session_factory() as session:
            return session.get(Tag, 1).name

    def test_audited_write_before_head_check(self, renamed_tag, auditor, session_factory):
        registration = auditor.registry.resolve("Tag")
        original = registration.deserializer

        def audited_writer(entity, state):
            with session_factory() as other:
                other.get(Tag, 1).name = "z-newer"
                other.commit()
            original(entity, state)

        auditor.registry.add(
            type(registration)(**{**registration.__dict__, "deserializer": audited_writer})
        )

        result = auditor.rollback("Tag", 1)

        assert isinstance(result.error, ConcurrentModification)
        assert self._tag_name(session_factory) == "z-newer"
        assert len(auditor.history("Tag", 1)) == 3

    def test_write_after_head_check_cannot_land(
        self, renamed_tag, auditor, engine, session_factory, monkeypatch
    ):
        impatient = create_engine(engine.url, connect_args={"timeout": 0})
        original_commit = SessionUnitOfWork.commit

        def commit_after_other_writer(uow):
            # The rollback's UPDATE is already flushed and holds the write lock.
            with Session(impatient) as other:
                other.get(Tag, 1).name = "z-newer"
                with pytest.raises(OperationalError):
                    other.commit()
            return original_commit(uow)

        monkeypatch.setattr(SessionUnitOfWork, "commit", commit_after_other_writer)
        try:
            result = auditor.rollback("Tag", 1)
        finally:
            impatient.dispose()

        assert result.success
        assert self._tag_name(session_factory) == "x"
        assert len(auditor.history("Tag", 1)) == 3


class TestUnapplicableSnapshots:
    """Payloads that cannot be applied come back as typed failures."""

    @pytest.fixture
    def edited_post(self, create_post, update_post):
        create_post(1, "A")
        update_post(1, title="B")

    def _store_snapshot(self, engine, fields):
        with Session(engine) as session:
            log = AuditLog()
            snapshot = Snapshot(
                entity_id="1",
                entity_type_name="Post",
                payload={"fields": fields, "relations": {}},
                change="modified",
                audit_log_id=log.id,
            )
            SnapshotStore(session).save_audit_log(log, [snapshot])
            session.commit()
            return snapshot.id

    def test_value_rejected_by_enum_column(self, edited_post, auditor, engine, session_factory):
        snapshot_id = self._store_snapshot(
            engine, {"id": 1, "title": "C", "status": "archived"}
        )

        result = auditor.rollback("Post", 1, snapshot_id)

        assert isinstance(result.error, SnapshotApplyFailure)
        assert isinstance(result.error, RollbackError)
        assert isinstance(result.error.__cause__, ValueError)
        assert result.error.snapshot_id == snapshot_id
        assert _post(session_factory).title == "B"
        assert auditor.get_metrics().rollback_failures == 1

    def test_unknown_type_tag(self, edited_post, auditor, engine):
        snapshot_id = self._store_snapshot(
            engine, {"rating": {"__type__": "fraction", "value": "1/3"}}
        )

        result = auditor.rollback("Post", 1, snapshot_id)

        assert isinstance(result.error, SnapshotApplyFailure)
        with pytest.raises(SnapshotApplyFailure):
            result.unwrap()

    def test_custom_deserializer_error(self, edited_post, auditor, session_factory):
        registration = auditor.registry.resolve("Post")

        def broken(entity, state):
            raise TypeError("cannot restore")

        auditor.registry.add(
            type(registration)(**{**registration.__dict__, "deserializer": broken})
        )

        result = auditor.rollback("Post", 1)

        assert isinstance(result.error, SnapshotApplyFailure)
        assert len(auditor.history("Post", 1)) == 2
        assert _post(session_factory).title == "B"


# ── Soft deletion ────────────────────────────────────────────────


class TestDeletionState:
    """The soft-delete marker is restored only on request."""

    @pytest.fixture
    def soft_deleted_post(self, create_post, update_post):
        create_post(1, "A")
        update_post(1, title="B", deleted_at=datetime(2024, 6, 1))

    def test_marker_kept_by_default(self, soft_deleted_post, auditor, session_factory):
        auditor.rollback("Post", 1).unwrap()

        post = _post(session_factory)
        assert post.title == "A"
        assert post.deleted_at == datetime(2024, 6, 1)

    def test_marker_restored_when_requested(self, soft_deleted_post, auditor, session_factory):
        auditor.rollback("Post", 1, restore_deletion_state=True).unwrap()

        post = _post(session_factory)
        assert post.title == "A"
        assert post.deleted_at is None


class TestMetrics:
    def test_successful_rollbacks_counted_per_type(
        self, create_post, update_post, auditor
    ):
        create_post(1, "A")
        update_post(1, title="B")
        auditor.rollback("Post", 1).unwrap()

        metrics = auditor.get_metrics()
        assert metrics.rollbacks == 1
        assert metrics.rollbacks_by_type == {"Post": 1}
        assert 'entity_type="Post"' in metrics.to_prometheus()
