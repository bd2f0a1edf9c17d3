"""
Error taxonomy for the MPL engine.

Source defects (lexing, parsing, rule validation) carry a line and column so
the caller can render them inline. Runtime errors are recoverable at the
top-level ``run()`` boundary: a failing statement keeps whatever mutations it
already committed, nothing more.
"""

from __future__ import annotations


class MPLError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, line: int = 0, col: int = 0):
        super().__init__(message)
        self.message = message
        self.line = line
        self.col = col

    def __str__(self) -> str:
        if self.line:
            return f"{self.line}:{self.col}: {self.message}"
        return self.message


class LexError(MPLError):
    """Unrecognized character or unterminated string."""


class ParseError(MPLError):
    """A single syntax error."""


class ParseErrorGroup(MPLError):
    """All syntax errors collected while parsing one source text."""

    def __init__(self, errors: list[ParseError]):
        first = errors[0] if errors else None
        super().__init__(
            f"{len(errors)} syntax error(s)",
            first.line if first else 0,
            first.col if first else 0,
        )
        self.errors = list(errors)

    def __str__(self) -> str:
        return "; ".join(str(e) for e in self.errors)


class RuleValidationError(MPLError):
    """A rule set parsed but is not acceptable as a rule set."""


class MPLRuntimeError(MPLError):
    """Base class for errors raised while evaluating a program."""


class UndefinedVariable(MPLRuntimeError):
    pass


class UndefinedCallable(MPLRuntimeError):
    pass


class TypeMismatch(MPLRuntimeError):
    pass


class NotIterable(MPLRuntimeError):
    pass


class StackOverflow(MPLRuntimeError):
    pass


class InvalidContext(MPLRuntimeError):
    """Operation not allowed where it was called (e.g. ``step()`` inside a tick)."""


class BudgetExceeded(MPLRuntimeError):
    pass


class ExecutionCancelled(MPLRuntimeError):
    pass


class PatternError(MPLError):
    """Malformed pattern interchange data."""
