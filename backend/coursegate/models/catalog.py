"""
Content catalog rows the entitlement engine reads.

Categories form a tree through a nullable parent_id; courses hang off a
single category. Content management (titles, lessons, ordering) lives in
the content service; only the columns needed for access resolution are
mapped here.
"""

from sqlalchemy import Column, String, ForeignKey, Index

from coursegate.db_base import Base
from coursegate.models.base import TimestampMixin, generate_uuid


class Category(Base, TimestampMixin):
    """A node in the category tree."""

    __tablename__ = "categories"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    parent_id = Column(
        String(255),
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Parent category; NULL for a root",
    )

    def __repr__(self) -> str:
        return f"<Category(id={self.id}, name={self.name}, parent_id={self.parent_id})>"


class Course(Base, TimestampMixin):
    """A course, owned by exactly one category."""

    __tablename__ = "courses"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    title = Column(String(500), nullable=False)
    category_id = Column(
        String(255),
        ForeignKey("categories.id"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_courses_category_id", "category_id"),
    )

    def __repr__(self) -> str:
        return f"<Course(id={self.id}, title={self.title}, category_id={self.category_id})>"
