"""
Category hierarchy resolution.

Walks parent pointers from a category to the root. Used by the overlap
check at purchase time and by the access checker at read time: an
entitlement on category C covers C, every descendant of C, and every
course filed anywhere in that subtree.

The category admin API keeps the tree acyclic. The walk still tracks
visited ids so a corrupted row cannot hang a request.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from coursegate.models.catalog import Category, Course

logger = logging.getLogger(__name__)


class CategoryHierarchyResolver:
    """Read-only ancestor lookups over the category tree."""

    def __init__(self, session: Session):
        self.session = session
        # Per-instance memo; resolvers are request- or job-scoped
        self._parent_cache: Dict[str, Optional[str]] = {}

    def _parent_of(self, category_id: str) -> Optional[str]:
        if category_id in self._parent_cache:
            return self._parent_cache[category_id]
        row = self.session.query(Category.parent_id).filter(Category.id == category_id).first()
        parent_id = row[0] if row else None
        self._parent_cache[category_id] = parent_id
        return parent_id

    def category_exists(self, category_id: str) -> bool:
        return self.session.query(Category.id).filter(Category.id == category_id).first() is not None

    def get_ancestors(self, category_id: str) -> List[str]:
        """
        Return [self, parent, grandparent, ..., root].

        Unknown ids resolve to [category_id] so callers can still match a
        direct grant on them. Depth is unbounded.
        """
        chain: List[str] = [category_id]
        seen = {category_id}
        current = self._parent_of(category_id)
        while current is not None:
            if current in seen:
                logger.error(
                    "Cycle detected in category tree",
                    extra={"category_id": category_id, "repeated_id": current},
                )
                break
            chain.append(current)
            seen.add(current)
            current = self._parent_of(current)
        return chain

    def get_course_category(self, course_id: str) -> Optional[str]:
        row = self.session.query(Course.category_id).filter(Course.id == course_id).first()
        return row[0] if row else None

    def get_course_ancestors(self, course_id: str) -> List[str]:
        """Ancestor chain of the course's category; [] if the course is unknown."""
        category_id = self.get_course_category(course_id)
        if category_id is None:
            return []
        return self.get_ancestors(category_id)

    def is_within(self, category_id: str, ancestor_id: str) -> bool:
        """True if category_id is ancestor_id or one of its descendants."""
        return ancestor_id in self.get_ancestors(category_id)
