"""Tests for category ancestor resolution."""

from coursegate.catalog import CategoryHierarchyResolver
from coursegate.models import Category


class TestGetAncestors:

    def test_chain_runs_from_self_to_root(self, db_session, catalog):
        resolver = CategoryHierarchyResolver(db_session)
        assert resolver.get_ancestors("python") == ["python", "programming", "tech"]

    def test_root_is_its_own_chain(self, db_session, catalog):
        assert CategoryHierarchyResolver(db_session).get_ancestors("tech") == ["tech"]

    def test_unknown_category_resolves_to_itself(self, db_session, catalog):
        assert CategoryHierarchyResolver(db_session).get_ancestors("missing") == ["missing"]

    def test_cycle_does_not_hang(self, db_session):
        db_session.add_all([
            Category(id="a", name="A", parent_id="b"),
            Category(id="b", name="B", parent_id="a"),
        ])
        db_session.commit()

        assert CategoryHierarchyResolver(db_session).get_ancestors("a") == ["a", "b"]

    def test_deep_tree_has_no_depth_limit(self, db_session):
        db_session.add(Category(id="c0", name="root"))
        for i in range(1, 40):
            db_session.add(Category(id=f"c{i}", name=f"level {i}", parent_id=f"c{i - 1}"))
        db_session.commit()

        chain = CategoryHierarchyResolver(db_session).get_ancestors("c39")
        assert len(chain) == 40
        assert chain[-1] == "c0"


class TestCourseAncestors:

    def test_course_resolves_through_its_category(self, db_session, catalog):
        resolver = CategoryHierarchyResolver(db_session)
        assert resolver.get_course_category("py-101") == "python"
        assert resolver.get_course_ancestors("py-101") == ["python", "programming", "tech"]

    def test_unknown_course_has_no_ancestors(self, db_session, catalog):
        assert CategoryHierarchyResolver(db_session).get_course_ancestors("nope") == []

    def test_is_within(self, db_session, catalog):
        resolver = CategoryHierarchyResolver(db_session)
        assert resolver.is_within("python", "tech")
        assert resolver.is_within("tech", "tech")
        assert not resolver.is_within("tech", "python")
        assert not resolver.is_within("music", "tech")
