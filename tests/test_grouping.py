"""Tests for grouping suggestions."""

from datetime import timedelta

from activity_ledger.grouping import suggest_groups
from activity_ledger.models import Session
from tests.conftest import T0


def block(sid: str, start_min: int, end_min: int, app: str = "Xcode", **kwargs) -> Session:
    return Session(
        id=sid,
        start=T0 + timedelta(minutes=start_min),
        end=T0 + timedelta(minutes=end_min),
        source_app=app,
        **kwargs,
    )


class TestSuggestGroups:
    def test_close_sessions_form_a_group(self) -> None:
        sessions = [
            block("a", 0, 10, "Xcode"),
            block("b", 12, 14, "Safari"),
            block("c", 16, 30, "Xcode"),
        ]
        groups = suggest_groups(sessions)

        assert len(groups) == 1
        group = groups[0]
        assert group.session_ids == ["a", "b", "c"]
        assert group.title == "Focus: Xcode + 2 others"
        assert group.duration == timedelta(minutes=30)
        assert group.suggested_category_id is None

    def test_large_gap_splits_clusters(self) -> None:
        sessions = [
            block("a", 0, 10),
            block("b", 12, 20),
            block("c", 40, 50),
            block("d", 51, 60),
        ]
        groups = suggest_groups(sessions)
        assert [g.session_ids for g in groups] == [["a", "b"], ["c", "d"]]

    def test_short_clusters_are_not_suggested(self) -> None:
        assert suggest_groups([block("a", 0, 5), block("b", 6, 10)]) == []

    def test_single_session_is_not_a_group(self) -> None:
        assert suggest_groups([block("a", 0, 60)]) == []

    def test_categorized_and_idle_sessions_are_left_out(self) -> None:
        sessions = [
            block("a", 0, 10),
            block("done", 10, 20, category_id="dev"),
            block("idle", 20, 25, "Idle", is_idle=True),
            block("b", 25, 40),
        ]
        groups = suggest_groups(sessions, gap_threshold=timedelta(minutes=20))
        assert [g.session_ids for g in groups] == [["a", "b"]]

    def test_primary_app_is_the_one_with_most_time(self) -> None:
        sessions = [
            block("a", 0, 2, "Xcode"),
            block("b", 3, 20, "Figma"),
            block("c", 21, 23, "Xcode"),
        ]
        assert suggest_groups(sessions)[0].title == "Focus: Figma + 2 others"

    def test_input_order_does_not_matter(self) -> None:
        sessions = [block("b", 12, 30), block("a", 0, 10)]
        assert suggest_groups(sessions)[0].session_ids == ["a", "b"]
