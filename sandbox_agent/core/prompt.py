"""
Sandbox Agent Prompt - renders the query sent to the model each iteration.

The query is rebuilt from scratch every time: instructions, work directory,
the user's goal, every previous action (with results and errors), the current
task list and, once, any pending reminder.
"""

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sandbox_agent.core.agent import AgentState


SYSTEM_PROMPT = """<system>
You are a senior engineer working autonomously inside a sandboxed work directory.
Break the user's goal into tasks, track them with the task tool, inspect the
project with the read, ls and rg tools, and record your findings with write.
When the goal is fully achieved, reply with your final answer and no tool use.
</system>"""

TOOL_USE_PROMPT = """<tool_use_guide>
Call a tool by writing a tag in your reply. You may call several tools at once.
Results appear under <previous actions> in the next message.

<tool_use name="read" start_line="1" line_count="100">relative/or/absolute/path</tool_use>
    Read a file. Lines are prefixed with |%5d|. start_line and line_count are optional.
<tool_use name="write" file_path="path/to/output.json">{"json": "payload"}</tool_use>
    Write a JSON document. The body must be valid JSON.
<tool_use name="ls">-la some/dir</tool_use>
    List a directory. The body is passed as arguments to ls.
<tool_use name="rg">-n pattern some/dir</tool_use>
    Search file contents. The body is passed as arguments to rg.
<tool_use name="task" id="1" status="pending">description</tool_use>
    Create or update a task. Empty status or description keep the current value.

Paths must stay inside the work directory; '..' is not allowed.
Never repeat a call that was already made: it will be rejected.
</tool_use_guide>"""


def _dump(data) -> str:
    return json.dumps(data, indent="\t", ensure_ascii=False)


class PromptComposer:
    """Deterministic query renderer."""

    def render(self, state: "AgentState") -> str:
        """
        Render the next query.

        Side effect: a pending reminder is consumed and cleared.
        """
        parts = [
            state.system_prompt,
            "\n",
            state.tool_use_prompt,
            f"\n<work directory>\n{state.work_dir}\n</work directory>",
            f"\n<user>\n{state.task_description}\n</user>\n",
        ]

        if state.previous_actions:
            actions = _dump([action.to_dict() for action in state.previous_actions])
            parts.append(f"\n<previous actions>\n{actions}\n</previous actions>")

        if state.current_tasks:
            tasks = _dump([task.to_dict() for task in state.current_tasks])
            parts.append(f"\n<current tasks>\n{tasks}\n</current tasks>")

        if state.reminder:
            parts.append(f"\n<reminder>\n{state.reminder}\n</reminder>")
            state.reminder = ""

        return "".join(parts)
