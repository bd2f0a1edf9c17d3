"""
Recursive-descent parser for MPL.

Binary operators are parsed by precedence climbing, one method per level:

    assignment  (right associative)
    ||
    &&
    == !=
    < <= > >=
    + -
    * / %
    unary ! - +
    call / member

Syntax errors do not abort the parse. Each error is recorded and the parser
resynchronises at the next statement boundary, so one pass reports every
independent mistake (up to ``max_errors``). Running out of input inside an
unclosed block is fatal and stops the parse immediately, as is nesting
deeper than ``MAX_NESTING_DEPTH``.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator, Optional

from mplcore.lang import ast
from mplcore.lang.errors import ParseError, ParseErrorGroup
from mplcore.lang.lexer import EOF, IDENTIFIER, KEYWORD, NUMBER, PUNCT, STRING, Token, tokenize


DEFAULT_MAX_ERRORS = 20

# Statement and expression nesting allowed before the parse is abandoned;
# keeps the descent well inside the host recursion limit.
MAX_NESTING_DEPTH = 48

_STATEMENT_KEYWORDS = frozenset({
    "var", "function", "rule", "if", "while", "for", "return", "break", "continue",
})

_COMPARISON_OPS = ("<", "<=", ">", ">=")


class _Fatal(Exception):
    """Stops the whole parse; carries the error that caused it, if any."""

    def __init__(self, error: Optional[ParseError]):
        super().__init__(error.message if error else "error limit reached")
        self.error = error


class Parser:
    def __init__(self, tokens: list[Token], max_errors: int = DEFAULT_MAX_ERRORS):
        if not tokens or tokens[-1].kind != EOF:
            raise ValueError("Token stream must end with an EOF token")
        self.tokens = tokens
        self.max_errors = max(1, max_errors)
        self.index = 0
        self.errors: list[ParseError] = []
        self._block_depth = 0
        self._function_depth = 0
        self._loop_depth = 0
        self._nesting = 0

    def parse(self) -> ast.Program:
        statements: list[ast.Stmt] = []
        try:
            while not self._check_kind(EOF):
                stmt = self._recovering_statement()
                if stmt is not None:
                    statements.append(stmt)
        except _Fatal as fatal:
            if fatal.error is not None:
                self.errors.append(fatal.error)
        except RecursionError:
            # Host stack was already deep when parsing started
            tok = self._peek()
            self.errors.append(ParseError("Source nested too deeply to parse", tok.line, tok.col))

        if self.errors:
            raise ParseErrorGroup(self.errors)
        return ast.Program(tuple(statements))

    # ─────────────────────────────────────────────────────────────
    # Error recovery
    # ─────────────────────────────────────────────────────────────

    def _recovering_statement(self) -> Optional[ast.Stmt]:
        try:
            return self._statement()
        except ParseError as err:
            self.errors.append(err)
            if len(self.errors) >= self.max_errors:
                raise _Fatal(None)
            self._synchronize()
            return None

    def _synchronize(self) -> None:
        """Skip to the next statement boundary after a syntax error."""
        depth = 0
        consumed = False
        while not self._check_kind(EOF):
            tok = self._peek()
            if tok.is_punct(";") and depth == 0:
                self._advance()
                return
            if tok.is_punct("{"):
                depth += 1
            elif tok.is_punct("}"):
                if depth == 0:
                    # Leave a block's closing brace for the block; a stray
                    # top-level brace is skipped.
                    if self._block_depth == 0:
                        self._advance()
                    return
                depth -= 1
                if depth == 0:
                    self._advance()
                    return
            elif tok.kind == KEYWORD and tok.lexeme in _STATEMENT_KEYWORDS and depth == 0 and consumed:
                return
            self._advance()
            consumed = True

    # ─────────────────────────────────────────────────────────────
    # Statements
    # ─────────────────────────────────────────────────────────────

    def _statement(self) -> ast.Stmt:
        tok = self._peek()
        with self._nested(tok):
            return self._statement_at(tok)

    def _statement_at(self, tok: Token) -> ast.Stmt:
        if tok.kind == KEYWORD:
            kw = tok.lexeme
            if kw == "var":
                return self._var_decl()
            if kw == "function" and self._peek(1).kind == IDENTIFIER:
                return self._function_decl()
            if kw == "rule":
                return self._rule_decl()
            if kw == "if":
                return self._if_stmt()
            if kw == "while":
                return self._while_stmt()
            if kw == "for":
                return self._for_stmt()
            if kw == "return":
                return self._return_stmt()
            if kw == "break" or kw == "continue":
                return self._jump_stmt()
        if tok.is_punct("{"):
            return self._block()
        return self._expr_stmt()

    def _var_decl(self) -> ast.VarDecl:
        start = self._expect_keyword("var")
        bindings: list[ast.VarBinding] = []
        while True:
            name = self._expect_kind(IDENTIFIER, "variable name")
            init = None
            if self._match_punct("="):
                init = self._expression()
            bindings.append(ast.VarBinding(name.lexeme, init))
            if not self._match_punct(","):
                break
        self._expect_punct(";")
        return ast.VarDecl(start.line, start.col, tuple(bindings))

    def _function_decl(self) -> ast.FunctionDecl:
        start = self._expect_keyword("function")
        name = self._expect_kind(IDENTIFIER, "function name")
        self._expect_punct("(")
        params = self._param_list()
        body = self._callable_body()
        return ast.FunctionDecl(start.line, start.col, name.lexeme, params, body)

    def _rule_decl(self) -> ast.RuleDecl:
        start = self._expect_keyword("rule")
        name = self._expect_kind(IDENTIFIER, "rule name")
        params: tuple[ast.Param, ...] = ()
        if self._match_punct("("):
            params = self._param_list()
        body = self._callable_body()
        return ast.RuleDecl(start.line, start.col, name.lexeme, params, body)

    def _param_list(self) -> tuple[ast.Param, ...]:
        """Parse parameters after the opening paren, through the closing one."""
        params: list[ast.Param] = []
        if not self._check_punct(")"):
            while True:
                name = self._expect_kind(IDENTIFIER, "parameter name")
                default = self._expression() if self._match_punct("=") else None
                params.append(ast.Param(name.lexeme, default))
                if not self._match_punct(","):
                    break
        self._expect_punct(")")
        return tuple(params)

    def _callable_body(self) -> ast.Block:
        saved_loop_depth = self._loop_depth
        self._function_depth += 1
        self._loop_depth = 0
        try:
            return self._block()
        finally:
            self._function_depth -= 1
            self._loop_depth = saved_loop_depth

    def _block(self) -> ast.Block:
        start = self._expect_punct("{")
        body: list[ast.Stmt] = []
        self._block_depth += 1
        try:
            while not self._check_punct("}"):
                if self._check_kind(EOF):
                    raise _Fatal(ParseError(
                        f"Unclosed block opened at {start.line}:{start.col}: "
                        "expected '}' before end of input",
                        self._peek().line,
                        self._peek().col,
                    ))
                stmt = self._recovering_statement()
                if stmt is not None:
                    body.append(stmt)
        finally:
            self._block_depth -= 1
        self._advance()
        return ast.Block(start.line, start.col, tuple(body))

    def _if_stmt(self) -> ast.If:
        start = self._expect_keyword("if")
        self._expect_punct("(")
        condition = self._expression()
        self._expect_punct(")")
        then_branch = self._statement()
        else_branch = None
        if self._match_keyword("else"):
            else_branch = self._statement()
        return ast.If(start.line, start.col, condition, then_branch, else_branch)

    def _while_stmt(self) -> ast.While:
        start = self._expect_keyword("while")
        self._expect_punct("(")
        condition = self._expression()
        self._expect_punct(")")
        body = self._loop_body()
        return ast.While(start.line, start.col, condition, body)

    def _for_stmt(self) -> ast.Stmt:
        start = self._expect_keyword("for")
        self._expect_punct("(")

        if (
            self._peek().is_keyword("var")
            and self._peek(1).kind == IDENTIFIER
            and self._peek(2).is_keyword("of")
        ):
            self._advance()
            name = self._advance()
            self._advance()
            iterable = self._expression()
            self._expect_punct(")")
            body = self._loop_body()
            return ast.ForOf(start.line, start.col, name.lexeme, iterable, body)

        init: Optional[ast.Stmt]
        if self._match_punct(";"):
            init = None
        elif self._check_keyword("var"):
            init = self._var_decl()
        else:
            init = self._expr_stmt()

        condition = None if self._check_punct(";") else self._expression()
        self._expect_punct(";")
        update = None if self._check_punct(")") else self._expression()
        self._expect_punct(")")
        body = self._loop_body()
        return ast.For(start.line, start.col, init, condition, update, body)

    def _loop_body(self) -> ast.Stmt:
        self._loop_depth += 1
        try:
            return self._statement()
        finally:
            self._loop_depth -= 1

    def _return_stmt(self) -> ast.Return:
        start = self._expect_keyword("return")
        if self._function_depth == 0:
            raise ParseError("'return' outside of a function or rule", start.line, start.col)
        value = None if self._check_punct(";") else self._expression()
        self._expect_punct(";")
        return ast.Return(start.line, start.col, value)

    def _jump_stmt(self) -> ast.Stmt:
        tok = self._advance()
        if self._loop_depth == 0:
            raise ParseError(f"'{tok.lexeme}' outside of a loop", tok.line, tok.col)
        self._expect_punct(";")
        if tok.lexeme == "break":
            return ast.Break(tok.line, tok.col)
        return ast.Continue(tok.line, tok.col)

    def _expr_stmt(self) -> ast.ExprStmt:
        tok = self._peek()
        expr = self._expression()
        self._expect_punct(";")
        return ast.ExprStmt(tok.line, tok.col, expr)

    # ─────────────────────────────────────────────────────────────
    # Expressions
    # ─────────────────────────────────────────────────────────────

    def _expression(self) -> ast.Expr:
        return self._assignment()

    def _assignment(self) -> ast.Expr:
        target = self._logical_or()
        if self._check_punct("="):
            eq = self._advance()
            value = self._assignment()
            if not isinstance(target, (ast.Identifier, ast.Member)):
                raise ParseError("Invalid assignment target", eq.line, eq.col)
            return ast.Assign(target.line, target.col, target, value)
        return target

    def _logical_or(self) -> ast.Expr:
        expr = self._logical_and()
        while self._check_punct("||"):
            op = self._advance()
            expr = ast.Logical(op.line, op.col, "||", expr, self._logical_and())
        return expr

    def _logical_and(self) -> ast.Expr:
        expr = self._equality()
        while self._check_punct("&&"):
            op = self._advance()
            expr = ast.Logical(op.line, op.col, "&&", expr, self._equality())
        return expr

    def _equality(self) -> ast.Expr:
        expr = self._comparison()
        while self._check_punct("==") or self._check_punct("!="):
            op = self._advance()
            expr = ast.Binary(op.line, op.col, op.lexeme, expr, self._comparison())
        return expr

    def _comparison(self) -> ast.Expr:
        expr = self._additive()
        while self._peek().kind == PUNCT and self._peek().lexeme in _COMPARISON_OPS:
            op = self._advance()
            expr = ast.Binary(op.line, op.col, op.lexeme, expr, self._additive())
        return expr

    def _additive(self) -> ast.Expr:
        expr = self._multiplicative()
        while self._check_punct("+") or self._check_punct("-"):
            op = self._advance()
            expr = ast.Binary(op.line, op.col, op.lexeme, expr, self._multiplicative())
        return expr

    def _multiplicative(self) -> ast.Expr:
        expr = self._unary()
        while self._check_punct("*") or self._check_punct("/") or self._check_punct("%"):
            op = self._advance()
            expr = ast.Binary(op.line, op.col, op.lexeme, expr, self._unary())
        return expr

    def _unary(self) -> ast.Expr:
        if self._check_punct("!") or self._check_punct("-") or self._check_punct("+"):
            op = self._advance()
            with self._nested(op):
                return ast.Unary(op.line, op.col, op.lexeme, self._unary())
        return self._call()

    def _call(self) -> ast.Expr:
        expr = self._primary()
        while True:
            if self._check_punct("("):
                paren = self._advance()
                args: list[ast.Expr] = []
                if not self._check_punct(")"):
                    with self._nested(paren):
                        while True:
                            args.append(self._expression())
                            if not self._match_punct(","):
                                break
                self._expect_punct(")")
                expr = ast.Call(paren.line, paren.col, expr, tuple(args))
            elif self._check_punct("."):
                dot = self._advance()
                name = self._peek()
                if name.kind not in (IDENTIFIER, KEYWORD):
                    raise self._error(name, "property name")
                self._advance()
                prop = ast.Literal(name.line, name.col, name.lexeme)
                expr = ast.Member(dot.line, dot.col, expr, prop, False)
            elif self._check_punct("["):
                bracket = self._advance()
                with self._nested(bracket):
                    index = self._expression()
                self._expect_punct("]")
                expr = ast.Member(bracket.line, bracket.col, expr, index, True)
            else:
                return expr

    def _primary(self) -> ast.Expr:
        tok = self._peek()
        if tok.kind == PUNCT or tok.is_keyword("function"):
            with self._nested(tok):
                return self._primary_at(tok)
        return self._primary_at(tok)

    def _primary_at(self, tok: Token) -> ast.Expr:
        if tok.kind == NUMBER or tok.kind == STRING:
            self._advance()
            return ast.Literal(tok.line, tok.col, tok.literal)

        if tok.kind == IDENTIFIER:
            self._advance()
            return ast.Identifier(tok.line, tok.col, tok.lexeme)

        if tok.is_keyword("true") or tok.is_keyword("false"):
            self._advance()
            return ast.Literal(tok.line, tok.col, tok.literal)

        if tok.is_keyword("function"):
            self._advance()
            self._expect_punct("(")
            params = self._param_list()
            body = self._callable_body()
            return ast.FunctionExpr(tok.line, tok.col, params, body)

        if tok.is_punct("("):
            self._advance()
            expr = self._expression()
            self._expect_punct(")")
            return expr

        if tok.is_punct("["):
            self._advance()
            items: list[ast.Expr] = []
            while not self._check_punct("]"):
                items.append(self._expression())
                if not self._match_punct(","):
                    break
            self._expect_punct("]")
            return ast.ArrayLit(tok.line, tok.col, tuple(items))

        if tok.is_punct("{"):
            self._advance()
            entries: list[tuple[str, ast.Expr]] = []
            while not self._check_punct("}"):
                key = self._peek()
                if key.kind == STRING:
                    key_name = key.literal
                elif key.kind in (IDENTIFIER, KEYWORD):
                    key_name = key.lexeme
                else:
                    raise self._error(key, "property name")
                self._advance()
                self._expect_punct(":")
                entries.append((key_name, self._expression()))
                if not self._match_punct(","):
                    break
            self._expect_punct("}")
            return ast.ObjectLit(tok.line, tok.col, tuple(entries))

        raise self._error(tok, "expression")

    # ─────────────────────────────────────────────────────────────
    # Token helpers
    # ─────────────────────────────────────────────────────────────

    @contextmanager
    def _nested(self, tok: Token) -> Iterator[None]:
        """Count one level of statement or expression nesting."""
        self._nesting += 1
        try:
            if self._nesting > MAX_NESTING_DEPTH:
                raise _Fatal(ParseError(
                    f"Expression nested too deeply (limit {MAX_NESTING_DEPTH} levels)", tok.line, tok.col
                ))
            yield
        finally:
            self._nesting -= 1

    def _peek(self, offset: int = 0) -> Token:
        i = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[i]

    def _advance(self) -> Token:
        tok = self.tokens[self.index]
        if tok.kind != EOF:
            self.index += 1
        return tok

    def _check_kind(self, kind: str) -> bool:
        return self._peek().kind == kind

    def _check_punct(self, lexeme: str) -> bool:
        return self._peek().is_punct(lexeme)

    def _check_keyword(self, lexeme: str) -> bool:
        return self._peek().is_keyword(lexeme)

    def _match_punct(self, lexeme: str) -> bool:
        if self._check_punct(lexeme):
            self._advance()
            return True
        return False

    def _match_keyword(self, lexeme: str) -> bool:
        if self._check_keyword(lexeme):
            self._advance()
            return True
        return False

    def _expect_punct(self, lexeme: str) -> Token:
        if self._check_punct(lexeme):
            return self._advance()
        raise self._error(self._peek(), f"'{lexeme}'")

    def _expect_keyword(self, lexeme: str) -> Token:
        if self._check_keyword(lexeme):
            return self._advance()
        raise self._error(self._peek(), f"'{lexeme}'")

    def _expect_kind(self, kind: str, what: str) -> Token:
        if self._check_kind(kind):
            return self._advance()
        raise self._error(self._peek(), what)

    @staticmethod
    def _error(tok: Token, expected: str) -> ParseError:
        found = "end of input" if tok.kind == EOF else repr(tok.lexeme)
        return ParseError(f"Expected {expected} but found {found}", tok.line, tok.col)


def parse(tokens: list[Token], max_errors: int = DEFAULT_MAX_ERRORS) -> ast.Program:
    """Parse a token stream, raising ParseErrorGroup with every error found."""
    return Parser(tokens, max_errors=max_errors).parse()


def parse_source(source: str, max_errors: int = DEFAULT_MAX_ERRORS) -> ast.Program:
    """Lex and parse MPL source text."""
    return parse(tokenize(source), max_errors=max_errors)
