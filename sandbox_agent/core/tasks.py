"""Long-lived task records, mutated only by ``task`` directives."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sandbox_agent.core.directives import TaskUse


@dataclass
class Task:
    """A work item the model tracks across iterations."""

    id: int
    status: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "status": self.status, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=int(data.get("id", 0) or 0),
            status=data.get("status", "") or "",
            content=data.get("content", "") or "",
        )


class TaskTracker:
    """
    Ordered, id-indexed task list.

    ``tasks`` keeps first-seen order and ``by_id`` indexes the very same
    objects, so a change made through one is visible through the other.
    Tasks are never removed.
    """

    def __init__(self, tasks: Optional[List[Task]] = None):
        self.tasks: List[Task] = []
        self.by_id: Dict[int, Task] = {}
        for task in tasks or []:
            self._index(task)

    def _index(self, task: Task) -> None:
        self.tasks.append(task)
        self.by_id[task.id] = task

    def apply(self, use: TaskUse) -> Task:
        """Create the task on first sight, otherwise merge non-empty fields."""
        task = self.by_id.get(use.id)
        if task is None:
            task = Task(id=use.id, status=use.status, content=use.args)
            self._index(task)
            return task

        if use.status:
            task.status = use.status
        if use.args:
            task.content = use.args
        return task

    def get(self, task_id: int) -> Optional[Task]:
        return self.by_id.get(task_id)

    def to_list(self) -> List[Dict[str, Any]]:
        return [task.to_dict() for task in self.tasks]

    def __len__(self) -> int:
        return len(self.tasks)
