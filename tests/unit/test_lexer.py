"""Unit tests for the lexer."""

import pytest

from mplcore.lang.errors import LexError
from mplcore.lang.lexer import (
    EOF,
    IDENTIFIER,
    KEYWORD,
    NUMBER,
    PUNCT,
    STRING,
    extract_metadata,
    tokenize,
)


def kinds(source):
    return [t.kind for t in tokenize(source)]


def lexemes(source):
    return [t.lexeme for t in tokenize(source) if t.kind != EOF]


class TestTokens:
    """Tests for basic token recognition."""

    def test_var_declaration(self):
        assert kinds("var x = 12;") == [KEYWORD, IDENTIFIER, PUNCT, NUMBER, PUNCT, EOF]

    def test_numbers_are_floats(self):
        tokens = tokenize("12 3.5")
        assert tokens[0].literal == 12.0
        assert isinstance(tokens[0].literal, float)
        assert tokens[1].literal == 3.5

    def test_trailing_dot_is_member_access(self):
        # "1." is a number followed by a dot, not a decimal
        assert lexemes("1.x") == ["1", ".", "x"]

    def test_two_char_operators(self):
        assert lexemes("a == b != c <= d >= e && f || g") == [
            "a", "==", "b", "!=", "c", "<=", "d", ">=", "e", "&&", "f", "||", "g",
        ]

    def test_keywords(self):
        source = "var function if else while for rule return of true false break continue"
        assert all(t.kind == KEYWORD for t in tokenize(source)[:-1])

    def test_boolean_literals(self):
        tokens = tokenize("true false")
        assert tokens[0].literal is True
        assert tokens[1].literal is False

    def test_identifier_with_underscore_and_digits(self):
        tok = tokenize("_cell2")[0]
        assert tok.kind == IDENTIFIER
        assert tok.lexeme == "_cell2"

    def test_ends_with_eof(self):
        assert tokenize("")[-1].kind == EOF


class TestStrings:
    """Tests for string literals."""

    def test_double_and_single_quotes(self):
        tokens = tokenize("\"a\" 'b'")
        assert tokens[0].kind == STRING
        assert tokens[0].literal == "a"
        assert tokens[1].literal == "b"

    def test_escapes(self):
        tok = tokenize(r'"say \"hi\" \\ it\'s"')[0]
        assert tok.literal == 'say "hi" \\ it\'s'

    def test_unknown_escape_kept_literally(self):
        tok = tokenize(r'"a\nb"')[0]
        assert tok.literal == "a\\nb"

    def test_unterminated_string(self):
        with pytest.raises(LexError) as exc:
            tokenize('var s = "abc')
        assert exc.value.line == 1
        assert exc.value.col == 9

    def test_newline_inside_string_is_unterminated(self):
        with pytest.raises(LexError):
            tokenize('"abc\ndef"')


class TestPositions:
    """Tests for line/column tracking."""

    def test_line_and_column(self):
        tokens = tokenize("var x;\n  set(1, 2);")
        set_tok = tokens[3]
        assert set_tok.lexeme == "set"
        assert (set_tok.line, set_tok.col) == (2, 3)

    def test_comments_skipped(self):
        assert lexemes("// header\nx; // trailing") == ["x", ";"]

    def test_unexpected_character(self):
        with pytest.raises(LexError) as exc:
            tokenize("var x = 1;\nx # 2;")
        assert (exc.value.line, exc.value.col) == (2, 3)
        assert "#" in exc.value.message


class TestMetadata:
    """Tests for header metadata extraction."""

    def test_extract_metadata(self):
        source = "// name: glider\n// author: someone\nset(1, 1);"
        assert extract_metadata(source) == {"name": "glider", "author": "someone"}

    def test_plain_comments_ignored(self):
        assert extract_metadata("// just a note\nset(0, 0);") == {}
