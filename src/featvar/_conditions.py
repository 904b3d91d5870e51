from __future__ import annotations
import re
import math
import logging
import datetime
import uuid
from collections.abc import Mapping
from typing import Any, NamedTuple

from ._versions import Version, try_parse_version, compare_versions
from .errors import ParseError


logger = logging.getLogger(__name__)


class _Missing:
    """
    Marker for an attribute absent from the evaluation context.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __reduce__(self):
        return "MISSING"


MISSING = _Missing()


class Condition(NamedTuple):
    """
    A node of a parsed condition. The operator decides the meaning of the
    two arguments:

    - EQ, NE, LT, LE, GT, GE: arg1 is the literal operand.
    - IN, NIN: arg1 is a tuple of literal operands.
    - EXISTS: arg1 is the expected presence.
    - REGEX: arg1 is the compiled pattern.
    - SIZE: arg1 is a comparison operator, arg2 the count.
    - ELEMMATCH, NOT: arg1 is the sub condition.
    - ALL, AND, OR, NOR: arg1 is a tuple of sub conditions.
    - VEQ, VNE, VLT, VLE, VGT, VGE: arg1 is the Version operand.
    - TYPE: arg1 is the type name.
    - ATTR: arg1 is an attribute name, arg2 the condition on its value. The
      value under evaluation must be a mapping of attributes.
    - NEVER: never satisfied. Stands in for a filter whose conditions are
      all malformed.
    """

    op: str
    arg1: Any = None
    arg2: Any = None


NEVER = Condition("NEVER")

_comparison_ops = {
    "eq": "EQ",
    "ne": "NE",
    "lt": "LT",
    "lte": "LE",
    "gt": "GT",
    "gte": "GE",
}

_version_ops = {
    "veq": "VEQ",
    "vne": "VNE",
    "vlt": "VLT",
    "vlte": "VLE",
    "vgt": "VGT",
    "vgte": "VGE",
}

_cmp_result = {
    "EQ": lambda c: c == 0,
    "NE": lambda c: c != 0,
    "LT": lambda c: c < 0,
    "LE": lambda c: c <= 0,
    "GT": lambda c: c > 0,
    "GE": lambda c: c >= 0,
}

_type_names = {"string", "number", "boolean", "array", "timestamp", "guid"}

_array_types = (list, tuple, set, frozenset)
_literal_types = (str, int, float, bool)

_number_re = re.compile(r"\s*[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?\s*")


def _operator_name(key: Any) -> str | None:
    if not isinstance(key, str):
        return None
    name = key[1:] if key.startswith("$") else key
    if name in _comparison_ops or name in _version_ops:
        return name
    if name in {"in", "nin", "exists", "regex", "size", "elemMatch", "all", "and", "or", "nor", "not", "type"}:
        return name
    return None


def _parse_literal(v: Any, op: str) -> Any:
    if isinstance(v, float) and not math.isfinite(v):
        raise ParseError(f"expected a finite number for {op!r}")
    if not isinstance(v, _literal_types):
        raise ParseError(f"expected a string, number or boolean for {op!r} not {type(v).__name__}")
    return v


def _parse_value(expr: Any) -> Condition:
    """
    Parse a condition applied to the value of a single attribute.
    """
    if isinstance(expr, Condition):
        return expr
    if isinstance(expr, Mapping):
        nodes = []
        for key, operand in expr.items():
            name = _operator_name(key)
            if name is None:
                raise ParseError(f"unknown operator {key!r}")
            nodes.append(_parse_operator(name, operand))
        if len(nodes) == 1:
            return nodes[0]
        return Condition("AND", tuple(nodes))
    if isinstance(expr, (list, tuple)):
        return Condition("EQ", tuple(_parse_literal(i, "eq") for i in expr))
    if expr is None:
        raise ParseError("expected a condition instead of null")
    return Condition("EQ", _parse_literal(expr, "eq"))


def _parse_operator(name: str, operand: Any) -> Condition:
    match name:
        case "eq" | "ne" | "lt" | "lte" | "gt" | "gte":
            if name in {"eq", "ne"} and isinstance(operand, (list, tuple)):
                return Condition(_comparison_ops[name], tuple(_parse_literal(i, name) for i in operand))
            return Condition(_comparison_ops[name], _parse_literal(operand, name))
        case "in" | "nin":
            if not isinstance(operand, (list, tuple, set, frozenset)):
                raise ParseError(f"expected a list after {name!r}")
            return Condition(name.upper(), tuple(_parse_literal(i, name) for i in operand))
        case "exists":
            if not isinstance(operand, bool):
                raise ParseError("expected true/false after 'exists'")
            return Condition("EXISTS", operand)
        case "regex":
            if not isinstance(operand, str):
                raise ParseError("expected a pattern string after 'regex'")
            try:
                return Condition("REGEX", re.compile(operand, re.IGNORECASE))
            except re.error as e:
                raise ParseError(f"invalid pattern {operand!r}: {e}") from e
        case "size":
            return _parse_size(operand)
        case "elemMatch":
            if not isinstance(operand, Mapping):
                raise ParseError("expected a condition object after 'elemMatch'")
            return Condition("ELEMMATCH", _parse_value(operand))
        case "all":
            if not isinstance(operand, (list, tuple)):
                raise ParseError("expected a list after 'all'")
            return Condition("ALL", tuple(_parse_value(i) for i in operand))
        case "and" | "or" | "nor":
            if not isinstance(operand, (list, tuple)):
                raise ParseError(f"expected a list after {name!r}")
            return Condition(name.upper(), tuple(_parse_value(i) for i in operand))
        case "not":
            return Condition("NOT", _parse_value(operand))
        case "type":
            if operand not in _type_names:
                raise ParseError(f"unknown type {operand!r}")
            return Condition("TYPE", operand)
        case "veq" | "vne" | "vlt" | "vlte" | "vgt" | "vgte":
            version = try_parse_version(str(operand)) if isinstance(operand, (str, int, float)) and not isinstance(operand, bool) else None
            if version is None:
                raise ParseError(f"invalid version {operand!r} after {name!r}")
            return Condition(_version_ops[name], version)
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


def _parse_size(operand: Any) -> Condition:
    if isinstance(operand, int) and not isinstance(operand, bool):
        if operand < 0:
            raise ParseError("size must not be negative")
        return Condition("SIZE", "EQ", operand)
    if isinstance(operand, Mapping) and operand:
        nodes = []
        for key, count in operand.items():
            name = _operator_name(key)
            if name not in _comparison_ops:
                raise ParseError(f"unsupported size operator {key!r}")
            if not isinstance(count, int) or isinstance(count, bool):
                raise ParseError("expected an integer size")
            nodes.append(Condition("SIZE", _comparison_ops[name], count))
        if len(nodes) == 1:
            return nodes[0]
        return Condition("AND", tuple(nodes))
    raise ParseError("expected an integer or comparison object after 'size'")


def _parse_object(expr: Any) -> Condition:
    """
    Parse a condition over a whole set of attributes: a mapping of attribute
    name to value condition, with $and, $or, $nor and $not combining nested
    attribute mappings.
    """
    if isinstance(expr, Condition):
        return expr
    if not isinstance(expr, Mapping):
        raise ParseError(f"expected a condition object not {type(expr).__name__}")
    nodes = []
    for key, value in expr.items():
        if not isinstance(key, str) or not key:
            raise ParseError(f"invalid attribute name {key!r}")
        match key:
            case "$and" | "$or" | "$nor":
                if not isinstance(value, (list, tuple)):
                    raise ParseError(f"expected a list after {key!r}")
                nodes.append(Condition(key[1:].upper(), tuple(_parse_object(i) for i in value)))
            case "$not":
                nodes.append(Condition("NOT", _parse_object(value)))
            case _ if key.startswith("$"):
                raise ParseError(f"unknown operator {key!r}")
            case _:
                nodes.append(Condition("ATTR", key, _parse_value(value)))
    if len(nodes) == 1:
        return nodes[0]
    return Condition("AND", tuple(nodes))


def _to_number(v: Any) -> int | float | None:
    """
    Coerce to a number. Booleans never coerce.
    """
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return v
    if isinstance(v, str) and _number_re.fullmatch(v):
        s = v.strip()
        try:
            return int(s)
        except ValueError:
            n = float(s)
            return n if math.isfinite(n) else None
    return None


def _to_datetime(v: Any) -> datetime.datetime | None:
    if isinstance(v, datetime.datetime):
        t = v
    elif isinstance(v, str):
        try:
            t = datetime.datetime.fromisoformat(v.strip())
        except ValueError:
            return None
    else:
        return None
    if t.tzinfo is None:
        t = t.replace(tzinfo=datetime.timezone.utc)
    return t


def _to_uuid(v: Any) -> uuid.UUID | None:
    if isinstance(v, uuid.UUID):
        return v
    if isinstance(v, str):
        try:
            return uuid.UUID(v.strip())
        except ValueError:
            return None
    return None


def _as_text(v: Any) -> str | None:
    if isinstance(v, str):
        return v
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float, uuid.UUID)):
        return str(v)
    if isinstance(v, datetime.datetime):
        return v.isoformat()
    return None


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _compare(value: Any, operand: Any) -> int | None:
    """
    Order the attribute value against a literal operand. Returns None when
    the two cannot be ordered.
    """
    if value is MISSING or isinstance(value, _array_types):
        return None
    if isinstance(value, bool) or isinstance(operand, bool):
        if isinstance(value, bool) and isinstance(operand, bool):
            return _cmp(value, operand)
        return None
    if isinstance(value, datetime.datetime):
        t = _to_datetime(operand)
        return None if t is None else _cmp(_to_datetime(value), t)
    if isinstance(value, uuid.UUID):
        u = _to_uuid(operand)
        if u is not None:
            return _cmp(str(value), str(u))
    a = _to_number(value)
    b = _to_number(operand)
    if a is not None and b is not None:
        return _cmp(a, b)
    ta = _as_text(value)
    tb = _as_text(operand)
    if ta is None or tb is None:
        return None
    return _cmp(ta.casefold(), tb.casefold())


def _equals(value: Any, operand: Any) -> bool:
    if isinstance(operand, tuple):
        if not isinstance(value, (list, tuple)) or len(value) != len(operand):
            return False
        return all(_equals(v, o) for v, o in zip(value, operand))
    return _compare(value, operand) == 0


def _is_member(value: Any, operands: tuple) -> bool:
    if isinstance(value, _array_types):
        return any(_is_member(v, operands) for v in value)
    return any(_equals(value, o) for o in operands)


def _type_name(value: Any) -> str | None:
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, _array_types):
        return "array"
    if isinstance(value, datetime.datetime):
        return "timestamp"
    if isinstance(value, uuid.UUID):
        return "guid"
    return None


def _as_version(value: Any) -> Version | None:
    if isinstance(value, Version):
        return value
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    return try_parse_version(str(value))


def lookup(attributes: Mapping[str, Any], name: str) -> Any:
    """
    Case-insensitive lookup of an attribute. Absent and None valued
    attributes both yield MISSING.
    """
    v = attributes.get(name.casefold(), MISSING)
    if v is MISSING:
        v = attributes.get(name, MISSING)
    if v is MISSING:
        for k, kv in attributes.items():
            if isinstance(k, str) and k.casefold() == name.casefold():
                v = kv
                break
    return MISSING if v is None else v


def _source_key(kind: str, expr: Any) -> str:
    # repr keeps lists, tuples and Condition nodes apart where JSON would not.
    return f"{kind}:{expr!r}"


class ConditionEvaluator:
    """
    Parses condition expressions and evaluates them against attribute values.

    Parsed conditions are memoized by their source representation. Parsing is
    pure so concurrent first builds of the same entry only waste work.
    Failures are memoized as well so a broken expression is reported once.
    """

    __slots__ = ("_cache",)

    def __init__(self):
        self._cache: dict[str, Condition | ParseError] = {}

    def _parse_cached(self, kind: str, expr: Any) -> Condition:
        if isinstance(expr, Condition):
            return expr
        key = _source_key(kind, expr)
        cached = self._cache.get(key)
        if cached is None:
            try:
                cached = _parse_object(expr) if kind == "o" else _parse_value(expr)
            except ParseError as e:
                logger.warning("invalid condition %r: %s", expr, e)
                cached = e
            self._cache[key] = cached
        if isinstance(cached, ParseError):
            raise ParseError(*cached.args)
        return cached

    def parse(self, expr: Any) -> Condition:
        """
        Parse a condition on the value of one attribute, e.g.
        {"$in": ["US", "UK"]} or {"gt": 5, "lt": 10}.
        """
        return self._parse_cached("v", expr)

    def parse_object(self, expr: Any) -> Condition:
        """
        Parse a condition over all attributes, e.g.
        {"$or": [{"country": "US"}, {"age": {"$gt": 18}}]}.
        """
        return self._parse_cached("o", expr)

    def evaluate(self, c: Condition, value: Any) -> bool:
        """
        Evaluate the condition against the attribute value. value is MISSING
        when the attribute is absent. Values that cannot be coerced to what an
        operator requires make it evaluate to False.
        """
        match c.op:
            case "EQ":
                return value is not MISSING and _equals(value, c.arg1)
            case "NE":
                return value is not MISSING and not _equals(value, c.arg1)
            case "LT" | "LE" | "GT" | "GE":
                r = _compare(value, c.arg1)
                return r is not None and _cmp_result[c.op](r)
            case "IN":
                return value is not MISSING and _is_member(value, c.arg1)
            case "NIN":
                return value is MISSING or not _is_member(value, c.arg1)
            case "EXISTS":
                return (value is not MISSING) == c.arg1
            case "REGEX":
                text = _as_text(value)
                return text is not None and c.arg1.search(text) is not None
            case "SIZE":
                return isinstance(value, _array_types) and _cmp_result[c.arg1](_cmp(len(value), c.arg2))
            case "ELEMMATCH":
                return isinstance(value, _array_types) and any(self.evaluate(c.arg1, v) for v in value)
            case "ALL":
                return isinstance(value, _array_types) and all(any(self.evaluate(sub, v) for v in value) for sub in c.arg1)
            case "AND":
                return all(self.evaluate(sub, value) for sub in c.arg1)
            case "OR":
                return not c.arg1 or any(self.evaluate(sub, value) for sub in c.arg1)
            case "NOR":
                return not (not c.arg1 or any(self.evaluate(sub, value) for sub in c.arg1))
            case "NOT":
                return not self.evaluate(c.arg1, value)
            case "VEQ" | "VNE" | "VLT" | "VLE" | "VGT" | "VGE":
                v = _as_version(value)
                return v is not None and _cmp_result[c.op[1:]](compare_versions(v, c.arg1))
            case "TYPE":
                return _type_name(value) == c.arg1
            case "ATTR":
                return isinstance(value, Mapping) and self.evaluate(c.arg2, lookup(value, c.arg1))
            case "NEVER":
                return False
            case _:  # pragma: no cover
                assert False, "unreachable"  # pragma: no cover

    def matches(self, f: Any, attributes: Mapping[str, Any]) -> bool:
        """
        Whether the filter is satisfied by the attributes. Any one of the
        filter's conditions satisfies it. A filter without conditions is
        always satisfied. A malformed condition never matches and never
        raises.
        """
        if not f.conditions:
            return True
        if f.property_name is None:
            value: Any = attributes
            parse = self.parse_object
        else:
            value = lookup(attributes, f.property_name)
            parse = self.parse
        for expr in f.conditions:
            try:
                c = parse(expr)
            except ParseError:
                continue
            if self.evaluate(c, value):
                return True
        return False
