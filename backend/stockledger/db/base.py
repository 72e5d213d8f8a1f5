"""SQLAlchemy declarative base and common mixins."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class VersionMixin:
    """Optimistic locking via a version counter.

    Models using this mixin gain a ``version`` column that starts at 1.
    Writers never assign it directly: they issue a conditional UPDATE that
    matches ``version_is(expected)`` and sets ``next_version(expected)``;
    zero matched rows means someone else got there first.
    """

    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1", nullable=False)

    @classmethod
    def version_is(cls, expected: int):
        """SQLAlchemy filter expression: ``WHERE version = :expected``."""
        return cls.version == expected

    @staticmethod
    def next_version(expected: int) -> int:
        return expected + 1
