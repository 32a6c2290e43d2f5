"""Label selectors: requirements on metric labels, parsed from text."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Mapping, Sequence


class Operator(str, Enum):
    """Comparison used by a selector requirement."""

    DOES_NOT_EXIST = "!"
    EQUALS = "="
    DOUBLE_EQUALS = "=="
    IN = "in"
    NOT_EQUALS = "!="
    NOT_IN = "notin"
    EXISTS = "exists"
    GREATER_THAN = "gt"
    LESS_THAN = "lt"

    def __str__(self) -> str:
        return self.value


_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_DNS_LABEL = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS_SUBDOMAIN_RE = re.compile(rf"^{_DNS_LABEL}(\.{_DNS_LABEL})*$")
_INT_RE = re.compile(r"^[+-]?[0-9]+$")
_MAX_NAME_LENGTH = 63
_MAX_PREFIX_LENGTH = 253
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _validate_key(key: str) -> None:
    prefix, sep, name = key.rpartition("/")
    if sep:
        if not prefix or len(prefix) > _MAX_PREFIX_LENGTH or not _DNS_SUBDOMAIN_RE.match(prefix):
            raise ValueError(f"invalid label key {key!r}: prefix must be a DNS subdomain")
    if not name or len(name) > _MAX_NAME_LENGTH or not _NAME_RE.match(name):
        raise ValueError(
            f"invalid label key {key!r}: name must consist of alphanumeric characters, "
            "'-', '_' or '.', and must start and end with an alphanumeric character"
        )


def _validate_value(value: str) -> None:
    if value == "":
        return
    if len(value) > _MAX_NAME_LENGTH or not _NAME_RE.match(value):
        raise ValueError(
            f"invalid label value {value!r}: must be 63 characters or less and consist of "
            "alphanumeric characters, '-', '_' or '.'"
        )


def _validate_integer(value: str) -> None:
    if not _INT_RE.match(value) or not _INT64_MIN <= int(value) <= _INT64_MAX:
        raise ValueError(f"for 'Gt', 'Lt' operators, the value must be an integer: {value!r}")


@dataclass(frozen=True)
class Requirement:
    """One condition of a selector: a key, an operator and its values."""

    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def __str__(self) -> str:
        op = self.operator
        if op is Operator.EXISTS:
            return self.key
        if op is Operator.DOES_NOT_EXIST:
            return f"!{self.key}"
        if op in (Operator.IN, Operator.NOT_IN):
            return f"{self.key} {op.value} ({','.join(self.values)})"
        symbol = {
            Operator.EQUALS: "=",
            Operator.DOUBLE_EQUALS: "==",
            Operator.NOT_EQUALS: "!=",
            Operator.GREATER_THAN: ">",
            Operator.LESS_THAN: "<",
        }[op]
        return f"{self.key}{symbol}{self.values[0]}"


def new_requirement(key: str, operator: Operator, values: Iterable[str]) -> Requirement:
    """Validate and build a requirement; raise ValueError if it is malformed."""
    operator = Operator(operator)
    _validate_key(key)
    unique = sorted(set(values))
    if operator in (Operator.IN, Operator.NOT_IN):
        if not unique:
            raise ValueError("for 'in', 'notin' operators, values set can't be empty")
    elif operator in (Operator.EQUALS, Operator.DOUBLE_EQUALS, Operator.NOT_EQUALS):
        if len(unique) != 1:
            raise ValueError("exact-match compatibility requires one single value")
    elif operator in (Operator.EXISTS, Operator.DOES_NOT_EXIST):
        if unique:
            raise ValueError("values set must be empty for exists and does not exist")
    elif operator in (Operator.GREATER_THAN, Operator.LESS_THAN):
        if len(unique) != 1:
            raise ValueError("for 'Gt', 'Lt' operators, exactly one value is required")
        _validate_integer(unique[0])
        return Requirement(key, operator, tuple(unique))
    for value in unique:
        _validate_value(value)
    return Requirement(key, operator, tuple(unique))


class Selector:
    """An ordered set of requirements, all of which must hold."""

    def __init__(self, requirements: Iterable[Requirement] = (), selectable: bool = True):
        self._requirements = tuple(sorted(requirements, key=lambda r: r.key))
        self._selectable = selectable

    def add(self, *args: Requirement) -> "Selector":
        """Return a new selector with the given requirements added."""
        if not self._selectable:
            return self
        return Selector(self._requirements + tuple(args))

    def empty(self) -> bool:
        """Report whether the selector places no restriction at all."""
        return self._selectable and not self._requirements

    def requirements(self) -> tuple[list[Requirement], bool]:
        """Return the requirements and whether the selector can match anything."""
        return list(self._requirements), self._selectable

    def __iter__(self) -> Iterator[Requirement]:
        return iter(self._requirements)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Selector):
            return NotImplemented
        return (self._requirements, self._selectable) == (other._requirements, other._selectable)

    def __hash__(self) -> int:
        return hash((self._requirements, self._selectable))

    def __str__(self) -> str:
        return ",".join(str(r) for r in self._requirements)

    def __repr__(self) -> str:
        if not self._selectable:
            return "Selector(selectable=False)"
        return f"Selector({str(self)!r})"


def everything() -> Selector:
    """Return a selector that matches all label sets."""
    return Selector()


def selector_from_set(labels: Mapping[str, str]) -> Selector:
    """Return a selector requiring each key to equal its value; no validation."""
    return Selector(Requirement(k, Operator.EQUALS, (v,)) for k, v in labels.items())


_TOKEN_RE = re.compile(r"\s+|!=|==|=|!|\(|\)|,|>|<|[^\s!=(),<>]+")
_SYMBOLS = {"!=", "==", "=", "!", "(", ")", ",", ">", "<"}


def _tokenize(text: str) -> list[str]:
    tokens = []
    for match in _TOKEN_RE.finditer(text):
        token = match.group()
        if not token.isspace():
            tokens.append(token)
    return tokens


class _Parser:
    def __init__(self, text: str):
        self._tokens = _tokenize(text)
        self._pos = 0

    def _peek(self) -> str | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _next(self) -> str | None:
        token = self._peek()
        self._pos += 1
        return token

    @staticmethod
    def _is_ident(token: str | None) -> bool:
        return token is not None and token not in _SYMBOLS

    def parse(self) -> list[Requirement]:
        result: list[Requirement] = []
        if self._peek() is None:
            return result
        while True:
            result.append(self._requirement())
            token = self._next()
            if token is None:
                return result
            if token != ",":
                raise ValueError(f"found {token!r}, expected: ',' or end of string")
            if self._peek() is None:
                raise ValueError("found end of string, expected: identifier")

    def _requirement(self) -> Requirement:
        negated = self._peek() == "!"
        if negated:
            self._next()
        key = self._next()
        if not self._is_ident(key):
            raise ValueError(f"found {key!r}, expected: identifier")
        if negated:
            return new_requirement(key, Operator.DOES_NOT_EXIST, [])
        token = self._peek()
        if token is None or token == ",":
            return new_requirement(key, Operator.EXISTS, [])
        self._next()
        operators = {
            "=": Operator.EQUALS,
            "==": Operator.DOUBLE_EQUALS,
            "!=": Operator.NOT_EQUALS,
            ">": Operator.GREATER_THAN,
            "<": Operator.LESS_THAN,
            "in": Operator.IN,
            "notin": Operator.NOT_IN,
        }
        operator = operators.get(token)
        if operator is None:
            raise ValueError(f"found {token!r}, expected an operator")
        if operator in (Operator.IN, Operator.NOT_IN):
            return new_requirement(key, operator, self._value_list())
        return new_requirement(key, operator, [self._exact_value()])

    def _exact_value(self) -> str:
        token = self._peek()
        if token is None or token == ",":
            return ""
        if self._is_ident(token):
            self._next()
            return token
        raise ValueError(f"found {token!r}, expected: identifier")

    def _value_list(self) -> list[str]:
        if self._next() != "(":
            raise ValueError("expected: '('")
        values: list[str] = []
        if self._peek() == ")":
            self._next()
            return values
        while True:
            token = self._peek()
            if self._is_ident(token):
                self._next()
                values.append(token)
            elif token in (",", ")"):
                values.append("")
            else:
                raise ValueError(f"found {token!r}, expected: identifier, ',' or ')'")
            closing = self._next()
            if closing == ")":
                return values
            if closing != ",":
                raise ValueError(f"found {closing!r}, expected: ',' or ')'")


def parse(selector: str) -> Selector:
    """Parse selector text such as 'a=b,c in (x,y),!d'; raise ValueError if invalid."""
    return Selector(_Parser(selector).parse())