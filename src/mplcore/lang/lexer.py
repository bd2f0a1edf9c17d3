"""
Lexer: turns MPL source text into a flat token stream.

Tokens are produced once and consumed immediately by the parser; nothing
keeps them around afterwards.
"""

from __future__ import annotations
from dataclasses import dataclass
import re
from typing import Any

from mplcore.lang.errors import LexError


IDENTIFIER = "IDENTIFIER"
NUMBER = "NUMBER"
STRING = "STRING"
PUNCT = "PUNCT"
KEYWORD = "KEYWORD"
EOF = "EOF"

KEYWORDS = frozenset({
    "var",
    "function",
    "if",
    "else",
    "while",
    "for",
    "rule",
    "return",
    "of",
    "true",
    "false",
    "break",
    "continue",
})

TWO_CHAR_OPERATORS = frozenset({"==", "!=", "<=", ">=", "&&", "||"})
SINGLE_CHAR_PUNCT = frozenset("(){}[];,.:+-*/%<>=!&|")

_ESCAPES = {'"': '"', "'": "'", "\\": "\\"}

_METADATA_LINE = re.compile(r"//\s*(\w+):\s*(.+)")


@dataclass(frozen=True)
class Token:
    kind: str
    lexeme: str
    literal: Any
    line: int
    col: int

    def is_punct(self, lexeme: str) -> bool:
        return self.kind == PUNCT and self.lexeme == lexeme

    def is_keyword(self, lexeme: str) -> bool:
        return self.kind == KEYWORD and self.lexeme == lexeme


class Lexer:
    def __init__(self, source: str):
        self.source = source
        self.index = 0
        self.line = 1
        self.col = 1

    def tokenize(self) -> list[Token]:
        tokens: list[Token] = []
        append = tokens.append
        src = self.source
        n = len(src)

        while self.index < n:
            ch = src[self.index]

            if ch in " \t\r\n":
                self._advance()
                continue

            if ch == "/" and self._peek(1) == "/":
                while self.index < n and src[self.index] != "\n":
                    self._advance()
                continue

            line, col = self.line, self.col

            if ch.isdigit():
                append(self._number(line, col))
            elif ch.isalpha() or ch == "_":
                append(self._word(line, col))
            elif ch == '"' or ch == "'":
                append(self._string(ch, line, col))
            elif src[self.index:self.index + 2] in TWO_CHAR_OPERATORS:
                lexeme = src[self.index:self.index + 2]
                self._advance(2)
                append(Token(PUNCT, lexeme, None, line, col))
            elif ch in SINGLE_CHAR_PUNCT:
                self._advance()
                append(Token(PUNCT, ch, None, line, col))
            else:
                raise LexError(f"Unexpected character {ch!r}", line, col)

        tokens.append(Token(EOF, "", None, self.line, self.col))
        return tokens

    def _peek(self, offset: int = 0) -> str:
        i = self.index + offset
        return self.source[i] if i < len(self.source) else ""

    def _advance(self, count: int = 1) -> None:
        for _ in range(count):
            if self.source[self.index] == "\n":
                self.line += 1
                self.col = 1
            else:
                self.col += 1
            self.index += 1

    def _number(self, line: int, col: int) -> Token:
        start = self.index
        while self._peek().isdigit():
            self._advance()
        if self._peek() == "." and self._peek(1).isdigit():
            self._advance()
            while self._peek().isdigit():
                self._advance()
        lexeme = self.source[start:self.index]
        return Token(NUMBER, lexeme, float(lexeme), line, col)

    def _word(self, line: int, col: int) -> Token:
        start = self.index
        while self._peek().isalnum() or self._peek() == "_":
            self._advance()
        lexeme = self.source[start:self.index]
        if lexeme in KEYWORDS:
            literal = {"true": True, "false": False}.get(lexeme)
            return Token(KEYWORD, lexeme, literal, line, col)
        return Token(IDENTIFIER, lexeme, None, line, col)

    def _string(self, quote: str, line: int, col: int) -> Token:
        start = self.index
        self._advance()
        chars: list[str] = []
        while True:
            ch = self._peek()
            if ch == "" or ch == "\n":
                raise LexError("Unterminated string", line, col)
            if ch == quote:
                self._advance()
                break
            if ch == "\\" and self._peek(1) in _ESCAPES:
                chars.append(_ESCAPES[self._peek(1)])
                self._advance(2)
                continue
            chars.append(ch)
            self._advance()
        return Token(STRING, self.source[start:self.index], "".join(chars), line, col)


def tokenize(source: str) -> list[Token]:
    """Tokenize MPL source, raising LexError on bad input."""
    return Lexer(source).tokenize()


def extract_metadata(source: str) -> dict[str, str]:
    """Collect ``// key: value`` comment lines from a program header."""
    metadata: dict[str, str] = {}
    for line in source.splitlines():
        match = _METADATA_LINE.match(line.strip())
        if match:
            metadata[match.group(1)] = match.group(2).strip()
    return metadata
