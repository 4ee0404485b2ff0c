"""
Sandbox Agent Dispatcher - executes directives against the work directory.

Every file path is confined to the work directory. ``ls`` and ``rg`` are run
as argument vectors (no shell) with the work directory as cwd, and their
output is capped before it goes back into the prompt.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Callable, Dict

from sandbox_agent.core.directives import (
    CommandUse,
    DirectiveKind,
    ReadUse,
    ToolUse,
    WriteUse,
)

logger = logging.getLogger(__name__)

DEFAULT_LINE_COUNT = 100
MAX_LINE_CHARS = 1000
MAX_OUTPUT_LINES = 100
LINE_TRUNCATED = f"...(more than {MAX_LINE_CHARS} chars, truncated)"
OUTPUT_TRUNCATED = f"...(more than {MAX_OUTPUT_LINES} lines, truncated)"


class DispatchError(Exception):
    """Raised when a directive fails. The directive's ``error`` is already set."""


class PathConfinementError(DispatchError):
    """Raised when a path escapes the work directory."""


def truncate_line(line: str, limit: int = MAX_LINE_CHARS) -> str:
    if len(line) > limit:
        return line[:limit] + f"...(more than {limit} chars, truncated)"
    return line


class ToolDispatcher:
    """
    Runs ``read``, ``write``, ``ls`` and ``rg`` directives.

    ``task`` directives are bookkeeping only and belong to the TaskTracker;
    handing one to the dispatcher is a programming error.
    """

    def __init__(
        self,
        work_dir: str,
        command_timeout: int = 30,
        default_line_count: int = DEFAULT_LINE_COUNT,
        max_line_chars: int = MAX_LINE_CHARS,
        max_output_lines: int = MAX_OUTPUT_LINES,
    ):
        self.work_dir = str(work_dir)
        self.command_timeout = command_timeout
        self.default_line_count = default_line_count
        self.max_line_chars = max_line_chars
        self.max_output_lines = max_output_lines
        self._handlers: Dict[DirectiveKind, Callable[[ToolUse], None]] = {
            DirectiveKind.READ: self._read,
            DirectiveKind.WRITE: self._write,
            DirectiveKind.LS: self._run_command,
            DirectiveKind.RG: self._run_command,
        }

    def call(self, use: ToolUse) -> None:
        """Execute one directive, filling in ``result`` or raising ``DispatchError``."""
        handler = self._handlers.get(use.name)
        if handler is None:
            raise TypeError(f"{use.name.value} directives are not dispatched")
        handler(use)

    # ------------------------------------------------------------------
    # Path confinement
    # ------------------------------------------------------------------

    def resolve_path(self, use: ToolUse, file_path: str) -> Path:
        """Resolve ``file_path`` inside the work directory or fail the directive."""
        if ".." in file_path:
            return self._fail_path(use, f"invalid path('..' is not allowed): {file_path}")

        root = Path(self.work_dir)
        path = Path(file_path)
        if path.is_absolute():
            if path != root and root not in path.parents:
                return self._fail_path(
                    use,
                    f"invalid path(access outside the working directory is not allowed): {file_path}",
                )
            return path
        return root / path

    def _fail_path(self, use: ToolUse, message: str) -> Path:
        use.error = message
        raise PathConfinementError(message)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _read(self, use: ReadUse) -> None:
        target = self.resolve_path(use, use.args)
        try:
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            use.error = f"fail to read: {e}"
            raise DispatchError(use.error) from e

        start = use.start_line - 1 if use.start_line > 0 else 0
        count = use.line_count if use.line_count > 0 else self.default_line_count

        lines = content.split("\n")
        rendered = []
        for i in range(start, min(len(lines), start + count)):
            line = truncate_line(lines[i], self.max_line_chars)
            rendered.append(f"|{i + 1:5d}|{line}\n")
        use.result = "".join(rendered)

    def _write(self, use: WriteUse) -> None:
        # Deep nesting surfaces as RecursionError from the decoder or encoder.
        try:
            data = json.loads(use.args)
            payload = json.dumps(data, indent="\t", sort_keys=True, ensure_ascii=False)
        except (ValueError, RecursionError) as e:
            use.error = f"invalid json: {e}"
            raise DispatchError(use.error) from e

        target = self.resolve_path(use, use.file_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(payload, encoding="utf-8")
        except OSError as e:
            use.error = f"fail to write: {e}"
            raise DispatchError(use.error) from e
        use.result = f"written to: {target}"

    def _run_command(self, use: CommandUse) -> None:
        logger.debug("running %s in %s", use.argv, self.work_dir)
        try:
            proc = subprocess.run(
                use.argv,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.command_timeout,
                cwd=self.work_dir,
            )
        except subprocess.TimeoutExpired as e:
            use.error = f"fail to run: timed out after {self.command_timeout}s"
            raise DispatchError(use.error) from e
        except OSError as e:
            use.error = f"fail to run: {e}"
            raise DispatchError(use.error) from e

        if proc.returncode != 0:
            use.error = f"fail to run: exit status {proc.returncode}, {proc.stderr}"
            raise DispatchError(use.error)

        use.result = self.cap_output(proc.stdout)

    def cap_output(self, stdout: str) -> str:
        out = []
        for i, line in enumerate(stdout.split("\n")):
            if i >= self.max_output_lines:
                out.append(f"...(more than {self.max_output_lines} lines, truncated)\n")
                break
            out.append(truncate_line(line, self.max_line_chars) + "\n")
        return "".join(out)
