"""Tests for the orchestration loop."""

import logging
import threading

import pytest
from tenacity import wait_none

from sandbox_agent.core.agent import (
    Agent,
    AgentState,
    CheckpointError,
    ModelCallError,
    RunCancelled,
)
from sandbox_agent.core.directives import DirectiveKind
from sandbox_agent.core.dispatcher import ToolDispatcher
from sandbox_agent.core.history import FORBIDDEN


class ScriptedChat:
    """Fake chat function that replays canned replies and records every query."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []
        self.models = []

    def __call__(self, cancel_event, model, prompt, on_token):
        self.prompts.append(prompt)
        self.models.append(model)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        for ch in reply:
            on_token(ch)
        return reply


class CountingDispatcher(ToolDispatcher):
    def __init__(self, work_dir):
        super().__init__(work_dir)
        self.calls = []

    def call(self, use):
        self.calls.append(use.key)
        super().call(use)


@pytest.fixture
def state(tmp_path):
    (tmp_path / "hello.txt").write_text("hello")
    return AgentState.new(str(tmp_path), "summarize hello.txt", "test-model")


def _agent(state, **kwargs):
    kwargs.setdefault("retry_wait", wait_none())
    return Agent(state, **kwargs)


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


class TestTermination:
    """When the loop stops."""

    def test_plain_reply_terminates(self, state):
        """A reply without directives ends the run after one iteration."""
        chat = ScriptedChat("All done.")
        result = _agent(state).run(chat)

        assert result.iterations == 1
        assert result.final_reply == "All done."
        assert len(chat.prompts) == 1
        assert chat.models == ["test-model"]

    def test_final_reply_recorded(self, state):
        """The final answer is kept as the last action."""
        _agent(state).run(ScriptedChat("All done."))
        assert state.previous_actions[-1].assistant == "All done."
        assert state.previous_actions[-1].tool_uses == []

    def test_partial_directive_continues(self, state):
        """An unterminated directive is not a final answer."""
        chat = ScriptedChat('<tool_use name="read">hello.txt', "Done.")
        result = _agent(state).run(chat)
        assert result.iterations == 2
        assert len(state.previous_actions) == 2


# ---------------------------------------------------------------------------
# Directive handling
# ---------------------------------------------------------------------------


class TestDirectives:
    """How directives flow through the loop."""

    def test_result_fed_into_next_query(self, state):
        chat = ScriptedChat('<tool_use name="read">hello.txt</tool_use>', "It says hello.")
        _agent(state).run(chat)

        assert "|    1|hello" in chat.prompts[1]
        assert "|    1|hello" not in chat.prompts[0]

    def test_repeat_not_executed(self, state):
        """A directive issued twice runs once; the repeat is annotated."""
        dispatcher = CountingDispatcher(state.work_dir)
        chat = ScriptedChat(
            '<tool_use name="ls">.</tool_use>',
            '<tool_use name="ls">.</tool_use>',
            "Done.",
        )
        _agent(state, dispatcher=dispatcher).run(chat)

        assert dispatcher.calls == ["ls-."]
        repeat = state.previous_actions[1].tool_uses[0]
        assert repeat.error == FORBIDDEN
        assert repeat.result == ""
        assert FORBIDDEN in chat.prompts[2]
        assert state.history.get("ls-.").error == ""

    def test_repeat_within_one_reply(self, state):
        dispatcher = CountingDispatcher(state.work_dir)
        chat = ScriptedChat(
            '<tool_use name="ls">.</tool_use><tool_use name="ls">.</tool_use>',
            "Done.",
        )
        _agent(state, dispatcher=dispatcher).run(chat)

        first, second = state.previous_actions[0].tool_uses
        assert dispatcher.calls == ["ls-."]
        assert first.error == ""
        assert second.error == FORBIDDEN

    def test_tasks_tracked_not_dispatched(self, state):
        """Task directives update the task list and never reach the dispatcher."""
        dispatcher = CountingDispatcher(state.work_dir)
        chat = ScriptedChat(
            '<tool_use name="task" id="1" status="open">read hello</tool_use>',
            '<tool_use name="task" id="1" status="done">read hello.txt</tool_use>',
            "Done.",
        )
        _agent(state, dispatcher=dispatcher).run(chat)

        assert dispatcher.calls == []
        assert len(state.current_tasks) == 1
        assert state.current_tasks_by_id[1].status == "done"
        assert state.current_tasks_by_id[1].content == "read hello.txt"
        assert state.current_tasks[0] is state.current_tasks_by_id[1]
        assert "<current tasks>" in chat.prompts[1]

    def test_dispatch_failure_is_not_fatal(self, state):
        """A failed directive is reported to the model and the loop goes on."""
        chat = ScriptedChat('<tool_use name="read">../etc/passwd</tool_use>', "Sorry.")
        result = _agent(state).run(chat)

        assert result.iterations == 2
        use = state.previous_actions[0].tool_uses[0]
        assert use.name == DirectiveKind.READ
        assert use.error.startswith("invalid path('..' is not allowed)")
        assert "invalid path" in chat.prompts[1]

    def test_deeply_nested_write_is_not_fatal(self, state, tmp_path):
        """A write body too deep to decode fails only that directive."""
        body = "[" * 100000 + "]" * 100000
        chat = ScriptedChat(f'<tool_use name="write" file_path="x.json">{body}</tool_use>', "Sorry.")
        result = _agent(state).run(chat)

        assert result.iterations == 2
        assert state.previous_actions[0].tool_uses[0].error.startswith("invalid json: ")
        assert not (tmp_path / "x.json").exists()

    def test_tokens_streamed(self, state):
        tokens = []
        _agent(state).run(ScriptedChat("ok"), on_token=tokens.append)
        assert "".join(tokens) == "ok"

    def test_reminder_sent_once(self, state):
        state.reminder = "be brief"
        chat = ScriptedChat('<tool_use name="ls">.</tool_use>', "Done.")
        _agent(state).run(chat)

        assert "<reminder>\nbe brief\n</reminder>" in chat.prompts[0]
        assert "<reminder>" not in chat.prompts[1]


# ---------------------------------------------------------------------------
# Retries and cancellation
# ---------------------------------------------------------------------------


class TestRetries:
    """Model call retry policy."""

    def test_transient_failures_retried(self, state):
        chat = ScriptedChat(RuntimeError("502"), RuntimeError("timeout"), "Done.")
        result = _agent(state).run(chat)

        assert result.final_reply == "Done."
        assert len(chat.prompts) == 3
        assert len(state.previous_actions) == 1

    def test_exhausted_retries_raise(self, state):
        """After max_attempts failures the run aborts with ModelCallError."""
        chat = ScriptedChat(*[RuntimeError("down")] * 5)
        with pytest.raises(ModelCallError) as exc_info:
            _agent(state).run(chat)

        assert len(chat.prompts) == 5
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert state.previous_actions == []

    def test_custom_max_attempts(self, state):
        chat = ScriptedChat(RuntimeError("a"), RuntimeError("b"))
        with pytest.raises(ModelCallError):
            _agent(state, max_attempts=2).run(chat)
        assert len(chat.prompts) == 2

    def test_cancelled_call_not_retried(self, state):
        chat = ScriptedChat(RunCancelled("stop"), "never")
        with pytest.raises(RunCancelled):
            _agent(state).run(chat)
        assert len(chat.prompts) == 1

    def test_keyboard_interrupt_not_retried(self, state):
        """Ctrl-C during a model call propagates at once."""
        chat = ScriptedChat(KeyboardInterrupt(), "never")
        with pytest.raises(KeyboardInterrupt):
            _agent(state).run(chat)
        assert len(chat.prompts) == 1


class TestCancellation:
    """Cancellation and the checkpoint callback."""

    def test_cancel_before_start(self, state):
        event = threading.Event()
        event.set()
        chat = ScriptedChat("never")
        with pytest.raises(RunCancelled):
            _agent(state).run(chat, cancel_event=event)
        assert chat.prompts == []

    def test_cancel_from_trace(self, state):
        """Setting the event in the callback stops at the next boundary."""
        event = threading.Event()
        seen = []

        def trace(s):
            seen.append(len(s.previous_actions))
            event.set()

        chat = ScriptedChat('<tool_use name="ls">.</tool_use>', "never")
        with pytest.raises(RunCancelled):
            _agent(state).run(chat, trace_fn=trace, cancel_event=event)

        assert seen == [1]
        assert len(chat.prompts) == 1

    def test_trace_called_every_iteration(self, state):
        seen = []
        chat = ScriptedChat('<tool_use name="ls">.</tool_use>', "Done.")
        _agent(state).run(chat, trace_fn=lambda s: seen.append(len(s.previous_actions)))
        assert seen == [1, 2]

    def test_checkpoint_error_does_not_abort(self, state, caplog):
        """A failing checkpoint is logged and the run continues."""

        def trace(_state):
            raise CheckpointError("disk full")

        chat = ScriptedChat('<tool_use name="ls">.</tool_use>', "Done.")
        with caplog.at_level(logging.ERROR, logger="sandbox_agent.core.agent"):
            result = _agent(state).run(chat, trace_fn=trace)

        assert result.iterations == 2
        assert "disk full" in caplog.text
