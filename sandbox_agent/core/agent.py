"""
Sandbox Agent - the orchestration loop.

Each iteration:
1. Check for cancellation
2. Render the query from the full agent state
3. Call the model (retried on failure)
4. Parse tool-use directives out of the reply
5. Skip repeats, merge tasks, execute everything else
6. Append the action and hand the state to the checkpoint callback
7. Stop once the model answers without any directive
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sandbox_agent.core.directives import DirectiveGrammar, TaskUse, ToolUse
from sandbox_agent.core.dispatcher import DispatchError, ToolDispatcher
from sandbox_agent.core.history import DedupHistory
from sandbox_agent.core.prompt import SYSTEM_PROMPT, TOOL_USE_PROMPT, PromptComposer
from sandbox_agent.core.tasks import Task, TaskTracker

logger = logging.getLogger(__name__)

# chat_fn(cancel_event, model, prompt, on_token) -> full reply
ChatFn = Callable[[threading.Event, str, str, Callable[[str], None]], str]
TraceFn = Callable[["AgentState"], None]

DEFAULT_MAX_ATTEMPTS = 5


class AgentError(Exception):
    """Base class for errors raised by the agent."""


class RunCancelled(AgentError):
    """The cancellation signal was set. Never retried."""


class ModelCallError(AgentError):
    """The model call kept failing after every retry."""


class CheckpointError(AgentError):
    """A checkpoint could not be written. Reported, never fatal."""


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Action:
    """One iteration's reply and the directives extracted from it."""

    assistant: str
    tool_uses: List[ToolUse] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"assistant": self.assistant}
        if self.tool_uses:
            data["tool_uses"] = [use.to_dict() for use in self.tool_uses]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        return cls(
            assistant=data.get("assistant", ""),
            tool_uses=[ToolUse.from_dict(u) for u in data.get("tool_uses") or []],
        )


@dataclass
class AgentState:
    """
    Everything needed to continue a run.

    ``history`` and ``tracker.by_id`` are derived: they are never serialized
    and are rebuilt from ``previous_actions`` and the task list on load.
    """

    system_prompt: str
    tool_use_prompt: str
    work_dir: str
    task_description: str
    model: str
    previous_actions: List[Action] = field(default_factory=list)
    reminder: str = ""
    tracker: TaskTracker = field(default_factory=TaskTracker)
    history: DedupHistory = field(default_factory=DedupHistory)

    @classmethod
    def new(cls, work_dir: str, task: str, model: str) -> "AgentState":
        """Fresh state with the built-in prompts."""
        return cls(
            system_prompt=SYSTEM_PROMPT,
            tool_use_prompt=TOOL_USE_PROMPT,
            work_dir=str(Path(work_dir).absolute()),
            task_description=task,
            model=model,
        )

    @property
    def current_tasks(self) -> List[Task]:
        return self.tracker.tasks

    @property
    def current_tasks_by_id(self) -> Dict[int, Task]:
        return self.tracker.by_id

    @property
    def tool_use_history(self) -> Dict[str, ToolUse]:
        return self.history.as_dict()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize everything except the derived indices."""
        return {
            "system_prompt": self.system_prompt,
            "tool_use_prompt": self.tool_use_prompt,
            "work_dir": self.work_dir,
            "task_description": self.task_description,
            "previous_actions": [a.to_dict() for a in self.previous_actions],
            "current_tasks": self.tracker.to_list(),
            "model": self.model,
            "reminder": self.reminder,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentState":
        """Restore a snapshot and rebuild the dedup history and task index."""
        actions = [Action.from_dict(a) for a in data.get("previous_actions") or []]
        tasks = [Task.from_dict(t) for t in data.get("current_tasks") or []]
        return cls(
            system_prompt=data.get("system_prompt", ""),
            tool_use_prompt=data.get("tool_use_prompt", ""),
            work_dir=data.get("work_dir", ""),
            task_description=data.get("task_description", ""),
            model=data.get("model", ""),
            previous_actions=actions,
            reminder=data.get("reminder", "") or "",
            tracker=TaskTracker(tasks),
            history=DedupHistory.rebuild(actions),
        )


@dataclass
class RunResult:
    """Outcome of a completed run."""

    iterations: int
    final_reply: str
    actions: int


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------

class Agent:
    """
    Drives the query / parse / dispatch cycle over one ``AgentState``.

    The loop owns the state between checkpoint callbacks. Directives run
    sequentially in extraction order.
    """

    def __init__(
        self,
        state: AgentState,
        dispatcher: Optional[ToolDispatcher] = None,
        grammar: Optional[DirectiveGrammar] = None,
        composer: Optional[PromptComposer] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_wait=None,
    ):
        self.state = state
        self.dispatcher = dispatcher or ToolDispatcher(state.work_dir)
        self.grammar = grammar or DirectiveGrammar()
        self.composer = composer or PromptComposer()
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    def run(
        self,
        chat_fn: ChatFn,
        trace_fn: Optional[TraceFn] = None,
        on_token: Optional[Callable[[str], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        """
        Run until the model stops issuing directives.

        Raises:
            RunCancelled: the cancellation event was set.
            ModelCallError: the model call failed ``max_attempts`` times.
        """
        cancel_event = cancel_event or threading.Event()
        sink = on_token or (lambda _token: None)
        iterations = 0

        while True:
            if cancel_event.is_set():
                raise RunCancelled("run cancelled")

            query = self.composer.render(self.state)
            logger.info("query: %d chars, ~%d tokens", len(query), len(query) // 4)
            logger.debug(query)

            reply = self._chat(chat_fn, cancel_event, query, sink)
            logger.debug(reply)

            uses = self.grammar.parse(reply)
            for use in uses:
                self._handle(use)

            self.state.previous_actions.append(Action(assistant=reply, tool_uses=uses))
            iterations += 1

            if trace_fn is not None:
                self._trace(trace_fn)

            if not uses and not self.grammar.has_partial_directive(reply):
                logger.info("done after %d iteration(s)", iterations)
                return RunResult(
                    iterations=iterations,
                    final_reply=reply,
                    actions=len(self.state.previous_actions),
                )

    def _chat(
        self,
        chat_fn: ChatFn,
        cancel_event: threading.Event,
        query: str,
        sink: Callable[[str], None],
    ) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(RunCancelled),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return chat_fn(cancel_event, self.state.model, query, sink)
        except RunCancelled:
            raise
        except Exception as e:
            raise ModelCallError(
                f"model call failed after {self.max_attempts} attempts: {e}"
            ) from e

    def _handle(self, use: ToolUse) -> None:
        if not self.state.history.admit(use):
            logger.info("rejected repeated directive: %s", use.key)
            return

        if isinstance(use, TaskUse):
            self.state.tracker.apply(use)
        else:
            try:
                self.dispatcher.call(use)
            except DispatchError as e:
                logger.warning("fail to call %s: %s", use.name.value, e)
                return

        logger.info(json.dumps(use.to_dict(), indent="\t", ensure_ascii=False))

    def _trace(self, trace_fn: TraceFn) -> None:
        try:
            trace_fn(self.state)
        except CheckpointError as e:
            logger.error("checkpoint failed: %s", e)
