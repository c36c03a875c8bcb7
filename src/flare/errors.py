# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Dict, Optional


@dataclass(eq=False)
class FlareError(Exception):
    """
    Structured flare error with enough context for:
      - clean CLI output
      - pointing a user at the offending script line
      - debugging without full tracebacks

    `line` is the 1-based script line (0 for built-in defaults, None when the
    error is not tied to a line).
    """
    kind: ClassVar[str] = "FlareError"

    message: str
    line: Optional[int] = None
    directive: Optional[str] = None
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        where = []
        if self.line is not None:
            where.append(f"line {self.line}")
        if self.directive:
            where.append(self.directive)
        prefix = ": ".join(where)
        lines = [f"{self.kind}: {prefix}: {self.message}" if prefix else f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def at(self, line: int, directive: str) -> "FlareError":
        """Attach script position if the raiser did not know it."""
        if self.line is None:
            self.line = line
        if self.directive is None:
            self.directive = directive
        return self


class ScriptSyntaxError(FlareError):
    """Unterminated quote, malformed named parameter, unsupported directive."""
    kind = "SyntaxError"


class ValidationError(FlareError):
    """Wrong argument count or a value that cannot be converted."""
    kind = "ValidationError"


class DefaultResolutionError(FlareError):
    kind = "DefaultResolutionError"


class IdentityResolutionError(FlareError):
    kind = "IdentityResolutionError"


class CopyPathError(FlareError):
    """Per-path COPY failure. Logged by the executor, never fatal."""
    kind = "CopyPathError"


class CaptureExecutionError(FlareError):
    kind = "CaptureExecutionError"
