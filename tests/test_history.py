"""Tests for the dedup history and the task tracker."""

from sandbox_agent.core.agent import Action
from sandbox_agent.core.directives import CommandUse, DirectiveKind, ReadUse, TaskUse
from sandbox_agent.core.history import FORBIDDEN, DedupHistory
from sandbox_agent.core.tasks import Task, TaskTracker


def _task(id, status="", content=""):
    return TaskUse(name=DirectiveKind.TASK, args=content, id=id, status=status)


class TestDedupHistory:
    """Tests for DedupHistory."""

    def test_admit_novel(self):
        """A first occurrence is recorded and admitted."""
        history = DedupHistory()
        use = CommandUse(name=DirectiveKind.LS, args=".")
        assert history.admit(use) is True
        assert use.key in history
        assert history.get(use.key) is use
        assert use.error == ""

    def test_repeat_is_forbidden(self):
        """A repeat is rejected and annotated; the original is untouched."""
        history = DedupHistory()
        first = CommandUse(name=DirectiveKind.LS, args=".")
        second = CommandUse(name=DirectiveKind.LS, args=".")
        history.admit(first)

        assert history.admit(second) is False
        assert second.error == FORBIDDEN
        assert first.error == ""
        assert history.get(first.key) is first
        assert len(history) == 1

    def test_different_window_is_novel(self):
        history = DedupHistory()
        assert history.admit(ReadUse(name=DirectiveKind.READ, args="a.py", start_line=1))
        assert history.admit(ReadUse(name=DirectiveKind.READ, args="a.py", start_line=101))
        assert len(history) == 2

    def test_rebuild_first_occurrence_wins(self):
        """Replaying actions keeps the first record for each key."""
        first = CommandUse(name=DirectiveKind.RG, args="foo")
        first.result = "a.py:1:foo\n"
        repeat = CommandUse(name=DirectiveKind.RG, args="foo", error=FORBIDDEN)
        other = ReadUse(name=DirectiveKind.READ, args="a.py")

        history = DedupHistory.rebuild([
            Action(assistant="one", tool_uses=[first]),
            Action(assistant="two", tool_uses=[repeat, other]),
        ])

        assert len(history) == 2
        assert history.get(first.key) is first
        assert history.get(first.key).error == ""
        assert set(history.keys()) == {first.key, other.key}

    def test_as_dict_is_a_copy(self):
        history = DedupHistory()
        history.admit(CommandUse(name=DirectiveKind.LS, args=""))
        snapshot = history.as_dict()
        snapshot.clear()
        assert len(history) == 1


class TestTaskTracker:
    """Tests for TaskTracker."""

    def test_create_on_first_sight(self):
        tracker = TaskTracker()
        task = tracker.apply(_task(1, "open", "A"))
        assert task == Task(id=1, status="open", content="A")
        assert tracker.tasks == [task]
        assert tracker.get(1) is task

    def test_merge_keeps_empty_fields(self):
        """Empty status or content leaves the current value in place."""
        tracker = TaskTracker()
        tracker.apply(_task(1, "open", "A"))
        tracker.apply(_task(1, "", "B"))
        assert tracker.get(1) == Task(id=1, status="open", content="B")

        tracker.apply(_task(1, "done", ""))
        assert tracker.get(1) == Task(id=1, status="done", content="B")
        assert len(tracker) == 1

    def test_list_and_index_share_objects(self):
        """A change through the index is visible through the list."""
        tracker = TaskTracker()
        tracker.apply(_task(2, "open", "second"))
        tracker.apply(_task(1, "open", "first"))
        tracker.by_id[1].status = "blocked"

        assert [t.id for t in tracker.tasks] == [2, 1]
        assert tracker.tasks[1].status == "blocked"
        assert tracker.tasks[1] is tracker.by_id[1]

    def test_rebuild_from_tasks(self):
        tasks = [Task(1, "open", "A"), Task(2, "done", "B")]
        tracker = TaskTracker(tasks)
        assert tracker.by_id[2] is tasks[1]
        assert tracker.to_list() == [
            {"id": 1, "status": "open", "content": "A"},
            {"id": 2, "status": "done", "content": "B"},
        ]
