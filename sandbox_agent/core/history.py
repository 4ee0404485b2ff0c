"""Dedup history - suppresses directives the model already issued."""

from typing import TYPE_CHECKING, Dict, Iterable, Optional

from sandbox_agent.core.directives import ToolUse

if TYPE_CHECKING:
    from sandbox_agent.core.agent import Action

FORBIDDEN = "(forbidden: already called, do not call again)"


class DedupHistory:
    """
    Maps identity key to the first ToolUse seen with that key.

    A directive is recorded before it runs, so one that failed is still
    considered called.
    """

    def __init__(self):
        self._seen: Dict[str, ToolUse] = {}

    @classmethod
    def rebuild(cls, actions: Iterable["Action"]) -> "DedupHistory":
        """Replay actions in order; the first occurrence of a key wins."""
        history = cls()
        for action in actions:
            for use in action.tool_uses:
                if use.key not in history._seen:
                    history._seen[use.key] = use
        return history

    def admit(self, use: ToolUse) -> bool:
        """
        Record a novel directive and return True.

        A repeat is annotated with the forbidden error and rejected.
        """
        if use.key in self._seen:
            use.error = FORBIDDEN
            return False
        self._seen[use.key] = use
        return True

    def get(self, key: str) -> Optional[ToolUse]:
        return self._seen.get(key)

    def keys(self):
        return self._seen.keys()

    def as_dict(self) -> Dict[str, ToolUse]:
        return dict(self._seen)

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)
