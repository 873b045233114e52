"""Evaluator for the notmuch-style tag algebra used by the file-backed mail store.

Supported terms: ``tag:``, ``from:``, ``to:``, ``id:``, ``subject:`` and bare
words (matched against the subject). Operators: ``AND``, ``OR``, ``NOT``,
parentheses, and implicit AND between adjacent terms. Values may be quoted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List

from jobsync.errors import MailStoreError


class TagQueryError(MailStoreError):
    """The query expression could not be parsed."""


@dataclass(frozen=True)
class QueryTarget:
    """The message attributes a query can test."""

    message_id: str
    tags: FrozenSet[str] = field(default_factory=frozenset)
    from_header: str = ""
    to_header: str = ""
    subject: str = ""


Matcher = Callable[[QueryTarget], bool]

_TOKEN_RE = re.compile(r'\s*(?:(\()|(\))|((?:[A-Za-z]+:)?"[^"]*")|([^\s()]+))')
_OPERATORS = {"AND", "OR", "NOT"}


def tokenize(expression: str) -> List[str]:
    tokens: List[str] = []
    pos = 0
    text = expression.strip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise TagQueryError(f"Unexpected input at {pos}: {text[pos:pos + 20]!r}")
        tokens.append(next(g for g in match.groups() if g is not None))
        pos = match.end()
    return tokens


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _term(token: str) -> Matcher:
    prefix, sep, raw_value = token.partition(":")
    if not sep:
        word = _unquote(token).lower()
        return lambda t: word in t.subject.lower()

    value = _unquote(raw_value)
    prefix = prefix.lower()
    lowered = value.lower()
    if prefix == "tag":
        return lambda t: value in t.tags
    if prefix == "from":
        return lambda t: lowered in t.from_header.lower()
    if prefix == "to":
        return lambda t: lowered in t.to_header.lower()
    if prefix == "id":
        wanted = value.strip("<>")
        return lambda t: t.message_id == wanted
    if prefix == "subject":
        return lambda t: lowered in t.subject.lower()
    raise TagQueryError(f"Unsupported query prefix: {prefix!r}")


class _Parser:
    def __init__(self, tokens: List[str]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> str | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _take(self) -> str:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def parse(self) -> Matcher:
        if not self._tokens:
            return lambda t: True
        matcher = self._or()
        if self._peek() is not None:
            raise TagQueryError(f"Unexpected token {self._peek()!r}")
        return matcher

    def _or(self) -> Matcher:
        parts = [self._and()]
        while self._peek() is not None and self._peek().upper() == "OR":
            self._take()
            parts.append(self._and())
        if len(parts) == 1:
            return parts[0]
        return lambda t: any(p(t) for p in parts)

    def _and(self) -> Matcher:
        parts = [self._not()]
        while True:
            nxt = self._peek()
            if nxt is None or nxt == ")" or nxt.upper() == "OR":
                break
            if nxt.upper() == "AND":
                self._take()
            parts.append(self._not())
        if len(parts) == 1:
            return parts[0]
        return lambda t: all(p(t) for p in parts)

    def _not(self) -> Matcher:
        nxt = self._peek()
        if nxt is not None and nxt.upper() == "NOT":
            self._take()
            inner = self._not()
            return lambda t: not inner(t)
        return self._atom()

    def _atom(self) -> Matcher:
        token = self._peek()
        if token is None:
            raise TagQueryError("Unexpected end of query")
        if token == "(":
            self._take()
            inner = self._or()
            if self._peek() != ")":
                raise TagQueryError("Missing closing parenthesis")
            self._take()
            return inner
        if token == ")" or token.upper() in _OPERATORS:
            raise TagQueryError(f"Unexpected token {token!r}")
        return _term(self._take())


def compile_query(expression: str) -> Matcher:
    """Compile *expression* into a predicate over ``QueryTarget``."""
    return _Parser(tokenize(expression)).parse()
