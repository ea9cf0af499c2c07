"""Shared fixtures for entity-audit tests."""

from __future__ import annotations

import pytest
from blog_models import Attachment, Base, Comment, Post, Tag
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from entity_audit import EntityAuditor


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database with entity and history tables."""
    eng = create_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    Base.metadata.create_all(eng)
    EntityAuditor.create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    """A sessionmaker the auditor installs its listeners on."""
    return sessionmaker(bind=engine)


@pytest.fixture
def plain_session(engine):
    """A session outside any auditor, for direct store and row access."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def auditor(session_factory) -> EntityAuditor:
    """Default auditor with the blog models registered."""
    a = EntityAuditor.default(session_factory)
    a.register_model(Post, soft_delete_attribute="deleted_at")
    a.register_model(Comment)
    a.register_model(Tag)
    a.register_model(Attachment)
    yield a
    a.uninstall()


@pytest.fixture
def create_post(session_factory, auditor):
    """Commit a new Post through the audited session factory."""

    def _create(post_id: int = 1, title: str = "A", **fields) -> None:
        with session_factory() as session:
            session.add(Post(id=post_id, title=title, **fields))
            session.commit()

    return _create


@pytest.fixture
def update_post(session_factory, auditor):
    """Apply attribute changes to a Post in its own unit of work."""

    def _update(post_id: int = 1, **fields) -> None:
        with session_factory() as session:
            post = session.get(Post, post_id)
            for key, value in fields.items():
                setattr(post, key, value)
            session.commit()

    return _update
