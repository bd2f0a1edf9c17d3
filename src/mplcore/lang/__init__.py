"""
Language layer: lexer, parser, AST and tree-walking evaluator.

This layer knows nothing about ticks, registries or snapshots. It only knows:
- Source text → tokens → immutable AST
- Values, scopes and coercions
- Evaluating statements against a GridAPI
- Reporting rule evaluations to a tracer
"""

from mplcore.lang.errors import (
    MPLError,
    LexError,
    ParseError,
    ParseErrorGroup,
    RuleValidationError,
    MPLRuntimeError,
    UndefinedVariable,
    UndefinedCallable,
    TypeMismatch,
    NotIterable,
    StackOverflow,
    InvalidContext,
    BudgetExceeded,
    ExecutionCancelled,
    PatternError,
)
from mplcore.lang.lexer import Token, tokenize, extract_metadata
from mplcore.lang.parser import Parser, parse, parse_source
from mplcore.lang.environment import Environment
from mplcore.lang.values import UNDEFINED, FunctionValue, NativeFunction
from mplcore.lang.interpreter import Interpreter, GridAPI
from mplcore.lang.tracing import VoxelPos, RuleDebugTrace, RuleDebugTracer, NULL_TRACER

__all__ = [
    "MPLError",
    "LexError",
    "ParseError",
    "ParseErrorGroup",
    "RuleValidationError",
    "MPLRuntimeError",
    "UndefinedVariable",
    "UndefinedCallable",
    "TypeMismatch",
    "NotIterable",
    "StackOverflow",
    "InvalidContext",
    "BudgetExceeded",
    "ExecutionCancelled",
    "PatternError",
    "Token",
    "tokenize",
    "extract_metadata",
    "Parser",
    "parse",
    "parse_source",
    "Environment",
    "UNDEFINED",
    "FunctionValue",
    "NativeFunction",
    "Interpreter",
    "GridAPI",
    "VoxelPos",
    "RuleDebugTrace",
    "RuleDebugTracer",
    "NULL_TRACER",
]
