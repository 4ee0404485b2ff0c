"""
Sandbox Agent Directives - tool-use records and the grammar that finds them.

The model asks for side effects by embedding tags in its reply:

    <tool_use name="read" start_line="10" line_count="40">src/app.py</tool_use>

``DirectiveGrammar.parse`` turns a reply into an ordered list of ``ToolUse``
records, one dataclass per directive kind. Anything that does not match is
ignored.
"""

import hashlib
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Type


class DirectiveKind(str, Enum):
    """The closed set of directive names the agent understands."""

    READ = "read"
    WRITE = "write"
    LS = "ls"
    RG = "rg"
    TASK = "task"


def content_hash(text: str) -> str:
    """Digest used in identity keys. Not security sensitive."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Tool use records
# ---------------------------------------------------------------------------

@dataclass
class ToolUse(ABC):
    """
    One directive occurrence in a model reply.

    ``error`` and ``result`` are filled in after execution. ``key`` is the
    dedup identity; it is computed on first access and cached, so mutating
    fields afterwards never changes it.
    """

    name: DirectiveKind
    args: str = ""
    error: str = ""
    result: str = ""
    _key: Optional[str] = field(default=None, init=False, repr=False, compare=False)

    @property
    def key(self) -> str:
        if self._key is None:
            self._key = self._compute_key()
        return self._key

    @abstractmethod
    def _compute_key(self) -> str:
        """Build the identity key from this kind's fields."""

    def _extra_fields(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, omitting empty optional fields."""
        data: Dict[str, Any] = {"name": self.name.value, "args": self.args}
        for k, v in self._extra_fields().items():
            if v:
                data[k] = v
        if self.error:
            data["error"] = self.error
        if self.result:
            data["result"] = self.result
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolUse":
        """Rebuild the right subclass from a serialized record."""
        kind = DirectiveKind(data["name"])
        use = _KIND_TO_CLASS[kind]._from_fields(kind, data)
        use.error = data.get("error", "") or ""
        use.result = data.get("result", "") or ""
        return use

    @classmethod
    @abstractmethod
    def _from_fields(cls, kind: DirectiveKind, data: Dict[str, Any]) -> "ToolUse":
        """Construct this kind from a serialized record."""


@dataclass
class ReadUse(ToolUse):
    """``read``: args is a path, optionally windowed."""

    start_line: int = 0
    line_count: int = 0

    def _compute_key(self) -> str:
        return f"{self.name.value}-{self.start_line}-{self.line_count}-{self.args}"

    def _extra_fields(self) -> Dict[str, Any]:
        return {"start_line": self.start_line, "line_count": self.line_count}

    @classmethod
    def _from_fields(cls, kind, data):
        return cls(
            name=kind,
            args=data.get("args", ""),
            start_line=int(data.get("start_line", 0) or 0),
            line_count=int(data.get("line_count", 0) or 0),
        )


@dataclass
class WriteUse(ToolUse):
    """``write``: args is a JSON payload written to ``file_path``."""

    file_path: str = ""

    def _compute_key(self) -> str:
        return f"{self.name.value}-{self.file_path}-{content_hash(self.args)}"

    def _extra_fields(self) -> Dict[str, Any]:
        return {"file_path": self.file_path}

    @classmethod
    def _from_fields(cls, kind, data):
        return cls(name=kind, args=data.get("args", ""), file_path=data.get("file_path", "") or "")


@dataclass
class CommandUse(ToolUse):
    """``ls`` / ``rg``: args is a whitespace-separated argument string."""

    def _compute_key(self) -> str:
        return f"{self.name.value}-{self.args}"

    @classmethod
    def _from_fields(cls, kind, data):
        return cls(name=kind, args=data.get("args", ""))

    @property
    def argv(self) -> List[str]:
        return [self.name.value] + self.args.split()


@dataclass
class TaskUse(ToolUse):
    """``task``: args is the task description, keyed by a caller-chosen id."""

    id: int = 0
    status: str = ""

    def _compute_key(self) -> str:
        return f"{self.name.value}-{self.id}-{self.status}-{content_hash(self.args)}"

    def _extra_fields(self) -> Dict[str, Any]:
        return {"status": self.status, "id": self.id}

    @classmethod
    def _from_fields(cls, kind, data):
        return cls(
            name=kind,
            args=data.get("args", ""),
            id=int(data.get("id", 0) or 0),
            status=data.get("status", "") or "",
        )


_KIND_TO_CLASS: Dict[DirectiveKind, Type[ToolUse]] = {
    DirectiveKind.READ: ReadUse,
    DirectiveKind.WRITE: WriteUse,
    DirectiveKind.LS: CommandUse,
    DirectiveKind.RG: CommandUse,
    DirectiveKind.TASK: TaskUse,
}


# ---------------------------------------------------------------------------
# Grammar
# ---------------------------------------------------------------------------

OPENING_MARKER = "<tool_use "


def _to_int(value: Optional[str]) -> int:
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


class DirectiveGrammar:
    """
    Parser for ``<tool_use ...>`` directives.

    Patterns are compiled once per instance, on first use.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._directive_re: Optional[re.Pattern] = None
        self._attr_re: Optional[re.Pattern] = None

    def _patterns(self):
        if self._directive_re is None:
            with self._lock:
                if self._directive_re is None:
                    names = "|".join(kind.value for kind in DirectiveKind)
                    self._attr_re = re.compile(r'^([a-z_]+)="(.+)"$')
                    self._directive_re = re.compile(
                        rf'<tool_use name="({names})"(.*?)>(.+?)</tool_use>',
                        re.DOTALL,
                    )
        return self._directive_re, self._attr_re

    def parse_attributes(self, text: str) -> Dict[str, str]:
        """Parse ``key="value"`` items; malformed items are skipped."""
        _, attr_re = self._patterns()
        attrs: Dict[str, str] = {}
        for item in text.split():
            match = attr_re.match(item)
            if match:
                attrs[match.group(1)] = match.group(2)
        return attrs

    def parse(self, text: str) -> List[ToolUse]:
        """Extract directives from a reply, in order of appearance."""
        directive_re, _ = self._patterns()
        uses: List[ToolUse] = []
        for match in directive_re.finditer(text):
            kind = DirectiveKind(match.group(1))
            attrs = self.parse_attributes(match.group(2))
            body = match.group(3)

            if kind == DirectiveKind.READ:
                use: ToolUse = ReadUse(
                    name=kind,
                    args=body,
                    start_line=_to_int(attrs.get("start_line")),
                    line_count=_to_int(attrs.get("line_count")),
                )
            elif kind == DirectiveKind.WRITE:
                use = WriteUse(name=kind, args=body, file_path=attrs.get("file_path", ""))
            elif kind == DirectiveKind.TASK:
                use = TaskUse(
                    name=kind,
                    args=body,
                    id=_to_int(attrs.get("id")),
                    status=attrs.get("status", ""),
                )
            else:
                use = CommandUse(name=kind, args=body)
            uses.append(use)
        return uses

    @staticmethod
    def has_partial_directive(text: str) -> bool:
        """True if the reply opens a directive, complete or not."""
        return OPENING_MARKER in text
