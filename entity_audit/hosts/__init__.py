"""Persistence hosts — where units of work meet the auditing core."""

from entity_audit.hosts.base import BaseHost, UnitOfWork
from entity_audit.hosts.sqlalchemy_host import SessionUnitOfWork, SQLAlchemyHost

__all__ = [
    "BaseHost",
    "UnitOfWork",
    "SQLAlchemyHost",
    "SessionUnitOfWork",
]
