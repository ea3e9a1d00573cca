"""Formula language used by ``formula`` handlers and handler mappings.

Expressions are Python expression syntax evaluated over an AST allow-list.
Dotted access reads keys out of mappings (``request.body.n``) and yields
``None`` for missing keys, so formulas can probe optional input without
guarding every step. Only the functions in :data:`FUNCTIONS` are callable.
"""
from __future__ import annotations

import ast
import json
import math
import operator
import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable

from lowcode_runtime.service.errors import ConfigurationError, ExecutionError

_MAX_RECURSION_DEPTH = 100
_MAX_EXPONENT = 10_000
_MAX_REPEAT = 1_000_000
_FORMAT_NUMBER = re.compile(r"\d+")


class ExpressionSyntaxError(ConfigurationError):
    """Expression does not parse or uses a construct outside the language."""


class ExpressionEvaluationError(ExecutionError):
    """Expression parsed but failed while evaluating."""


def _safe_pow(left: Any, right: Any) -> Any:
    if isinstance(right, (int, float)) and abs(right) > _MAX_EXPONENT:
        raise ValueError("exponent too large")
    return operator.pow(left, right)


def _safe_mul(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
            if len(seq) * count > _MAX_REPEAT:
                raise ValueError("repetition result too large")
    return operator.mul(left, right)


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _safe_mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: _safe_pow,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_LITERAL_NAMES = {"true": True, "false": False, "null": None}


# ============================================================================
# FUNCTION LIBRARY
# ============================================================================


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, Sequence, Mapping)):
        return len(value) == 0
    return False


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _flatten(values: Sequence[Any]) -> list:
    flat: list = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(_flatten(value))
        elif value is not None:
            flat.append(value)
    return flat


def _to_number(value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            return float(text)
    raise ValueError(f"cannot convert {type(value).__name__} to a number")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"cannot convert {type(value).__name__} to a date")


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    # clamp to the last day of the target month
    for day in (moment.day, 30, 29, 28):
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError("invalid month arithmetic")


_UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
    "weeks": 604800,
}


def _date_add(value: Any, amount: Any, unit: str = "days") -> datetime:
    moment = _to_datetime(value)
    unit = unit.lower()
    number = _to_number(amount)
    if unit == "months":
        return _add_months(moment, int(number))
    if unit == "years":
        return _add_months(moment, int(number) * 12)
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"unknown date unit '{unit}'")
    return moment + timedelta(seconds=number * _UNIT_SECONDS[unit])


def _date_diff(start: Any, end: Any, unit: str = "days") -> int:
    first, second = _to_datetime(start), _to_datetime(end)
    unit = unit.lower()
    if unit == "months":
        return (second.year - first.year) * 12 + second.month - first.month
    if unit == "years":
        return second.year - first.year
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"unknown date unit '{unit}'")
    return int((second - first).total_seconds() // _UNIT_SECONDS[unit])


def _round_away(value: Any, digits: int = 0) -> float:
    factor = 10 ** int(digits)
    number = _to_number(value)
    return math.copysign(math.ceil(abs(number) * factor) / factor, number)


def _round_toward(value: Any, digits: int = 0) -> float:
    factor = 10 ** int(digits)
    number = _to_number(value)
    return math.copysign(math.floor(abs(number) * factor) / factor, number)


def _mid(text: str, start: int, length: int | None = None) -> str:
    begin = max(int(start) - 1, 0)
    if length is None:
        return text[begin:]
    return text[begin : begin + int(length)]


def _check_format_spec(fmt: Any) -> None:
    # width and precision are the only digit runs a format spec can carry
    if isinstance(fmt, str) and any(
        int(run) > _MAX_REPEAT for run in _FORMAT_NUMBER.findall(fmt)
    ):
        raise ValueError("format width or precision too large")


def _text(value: Any, fmt: str | None = None) -> str:
    if value is None:
        return ""
    if fmt is None:
        return value.isoformat() if isinstance(value, (date, datetime)) else str(value)
    if isinstance(value, (date, datetime)):
        return value.strftime(fmt)
    _check_format_spec(fmt)
    return format(value, fmt)


def _average(*values: Any) -> float:
    flat = [_to_number(v) for v in _flatten(values)]
    if not flat:
        raise ValueError("Average of an empty set")
    return sum(flat) / len(flat)


def _aggregate(fn: Callable[[list], Any]) -> Callable[..., Any]:
    def run(*values: Any) -> Any:
        flat = [_to_number(v) for v in _flatten(values)]
        if not flat:
            return None if fn is not sum else 0
        return fn(flat)

    return run


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "Coalesce": lambda *values: next((v for v in values if not _is_blank(v)), None),
    "IsBlank": _is_blank,
    "IsEmpty": _is_empty,
    "IsNumeric": _is_numeric,
    "Upper": lambda s: str(s).upper(),
    "Lower": lambda s: str(s).lower(),
    "Proper": lambda s: str(s).title(),
    "Trim": lambda s: " ".join(str(s).split()),
    "Len": lambda v: 0 if v is None else len(v),
    "Left": lambda s, n: str(s)[: int(n)],
    "Right": lambda s, n: str(s)[-int(n) :] if int(n) > 0 else "",
    "Mid": _mid,
    "Concatenate": lambda *parts: "".join("" if p is None else str(p) for p in parts),
    "Replace": lambda s, old, new: str(s).replace(str(old), str(new)),
    "Split": lambda s, sep=",": str(s).split(str(sep)),
    "Sum": _aggregate(sum),
    "Average": _average,
    "Min": _aggregate(min),
    "Max": _aggregate(max),
    "CountRows": lambda rows: 0 if rows is None else len(rows),
    "First": lambda rows: rows[0] if rows else None,
    "Last": lambda rows: rows[-1] if rows else None,
    "Round": lambda v, digits=0: round(_to_number(v), int(digits)),
    "RoundUp": _round_away,
    "RoundDown": _round_toward,
    "Abs": lambda v: abs(_to_number(v)),
    "Power": lambda base, exp: _safe_pow(_to_number(base), _to_number(exp)),
    "Sqrt": lambda v: math.sqrt(_to_number(v)),
    "Now": lambda: datetime.now(timezone.utc),
    "Today": lambda: datetime.now(timezone.utc).date(),
    "DateAdd": _date_add,
    "DateDiff": _date_diff,
    "Year": lambda v: _to_datetime(v).year,
    "Month": lambda v: _to_datetime(v).month,
    "Day": lambda v: _to_datetime(v).day,
    "Text": _text,
    "Value": _to_number,
    "Json": lambda v: json.dumps(v, default=str),
    "ParseJson": lambda s: json.loads(s),
}

# Functions that receive unevaluated argument nodes so untaken branches never run
_LAZY_FUNCTIONS = frozenset({"If", "Switch"})


# ============================================================================
# EVALUATOR
# ============================================================================


def _eval_lazy(
    name: str, args: list[ast.AST], names: Mapping[str, Any], depth: int
) -> Any:
    def ev(node: ast.AST) -> Any:
        return _eval_node(node, names, depth + 1)

    if name == "If":
        if len(args) < 2:
            raise ValueError("If requires a condition and a result")
        pairs = len(args) // 2
        for i in range(pairs):
            if ev(args[2 * i]):
                return ev(args[2 * i + 1])
        return ev(args[-1]) if len(args) % 2 else None

    # Switch(value, match1, result1, ..., [default])
    if len(args) < 3:
        raise ValueError("Switch requires a value and at least one match/result pair")
    subject = ev(args[0])
    rest = args[1:]
    for i in range(len(rest) // 2):
        if subject == ev(rest[2 * i]):
            return ev(rest[2 * i + 1])
    return ev(rest[-1]) if len(rest) % 2 else None


def _eval_node(node: ast.AST, names: Mapping[str, Any], _depth: int = 0) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, _depth + 1)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.Attribute):
        target = _eval_node(node.value, names, _depth + 1)
        if target is None:
            return None
        if not isinstance(target, Mapping):
            raise ValueError(
                f"cannot read '{node.attr}' from a {type(target).__name__} value"
            )
        return target.get(node.attr)

    if isinstance(node, ast.BoolOp):
        # Python semantics: yields the deciding operand, not a coerced bool
        result: Any = isinstance(node.op, ast.And)
        for value in node.values:
            result = _eval_node(value, names, _depth + 1)
            if isinstance(node.op, ast.And) and not result:
                break
            if isinstance(node.op, ast.Or) and result:
                break
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, _depth + 1)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        return op(
            _eval_node(node.left, names, _depth + 1),
            _eval_node(node.right, names, _depth + 1),
        )

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, _depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = _eval_node(comparator, names, _depth + 1)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, names, _depth + 1):
            return _eval_node(node.body, names, _depth + 1)
        return _eval_node(node.orelse, names, _depth + 1)

    if isinstance(node, ast.Call):
        name = node.func.id  # validated as a simple library name at parse time
        if name in _LAZY_FUNCTIONS:
            return _eval_lazy(name, node.args, names, _depth)
        args = [_eval_node(arg, names, _depth + 1) for arg in node.args]
        kwargs = {
            kw.arg: _eval_node(kw.value, names, _depth + 1) for kw in node.keywords
        }
        return FUNCTIONS[name](*args, **kwargs)

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, names, _depth + 1)
        index = _eval_node(node.slice, names, _depth + 1)
        if target is None:
            return None
        if isinstance(target, Mapping):
            return target.get(index)
        if not isinstance(target, (Sequence, str)):
            raise ValueError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (IndexError, TypeError) as exc:
            raise ValueError(f"invalid subscript access: {exc}")

    if isinstance(node, ast.Slice):
        parts = (node.lower, node.upper, node.step)
        return slice(
            *(None if p is None else _eval_node(p, names, _depth + 1) for p in parts)
        )

    if isinstance(node, ast.Tuple):
        return tuple(_eval_node(elt, names, _depth + 1) for elt in node.elts)

    if isinstance(node, ast.List):
        return [_eval_node(elt, names, _depth + 1) for elt in node.elts]

    if isinstance(node, ast.Dict):
        if any(k is None for k in node.keys):
            raise ValueError("dict unpacking is not permitted")
        return {
            _eval_node(k, names, _depth + 1): _eval_node(v, names, _depth + 1)
            for k, v in zip(node.keys, node.values)
        }

    if isinstance(node, ast.JoinedStr):
        return "".join(_eval_node(v, names, _depth + 1) for v in node.values)

    if isinstance(node, ast.FormattedValue):
        if node.format_spec is not None:
            raise ValueError("format specs are not permitted")
        value = _eval_node(node.value, names, _depth + 1)
        return "" if value is None else str(value)

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.keyword,
    ast.Subscript,
    ast.Slice,
    ast.Tuple,
    ast.List,
    ast.Dict,
    ast.JoinedStr,
    ast.FormattedValue,
    *_BIN_OPS.keys(),
    *_CMP_OPS.keys(),
)


@lru_cache(maxsize=1024)
def compile_expression(expression: str) -> ast.Expression:
    """Parse and vet an expression; results are memoised per source string."""
    try:
        parsed = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionSyntaxError(
            f"invalid expression: {exc.msg}",
            details={"expression": expression, "offset": exc.offset},
        ) from exc

    for node in ast.walk(parsed):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionSyntaxError(
                f"disallowed syntax in expression: {type(node).__name__}",
                details={"expression": expression},
            )
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ExpressionSyntaxError(
                f"names starting with '_' are not permitted: {node.id}",
                details={"expression": expression},
            )
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionSyntaxError(
                f"attributes starting with '_' are not permitted: {node.attr}",
                details={"expression": expression},
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                raise ExpressionSyntaxError(
                    "callable references must be simple names",
                    details={"expression": expression},
                )
            if node.func.id not in FUNCTIONS and node.func.id not in _LAZY_FUNCTIONS:
                raise ExpressionSyntaxError(
                    f"unknown function {node.func.id}",
                    details={"expression": expression},
                )
            if any(kw.arg is None for kw in node.keywords) or any(
                isinstance(a, ast.Starred) for a in node.args
            ):
                raise ExpressionSyntaxError(
                    "argument unpacking is not permitted",
                    details={"expression": expression},
                )
    return parsed


def evaluate(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate ``expression`` against ``context``.

    Raises :class:`ExpressionSyntaxError` (CONFIGURATION) for expressions that
    do not parse or step outside the language, and
    :class:`ExpressionEvaluationError` (INTERNAL) for runtime failures.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionSyntaxError("expression must be a non-empty string")
    parsed = compile_expression(expression)
    try:
        return _eval_node(parsed, context)
    except RecursionError as exc:
        raise ExpressionEvaluationError("expression too deeply nested") from exc
    except ExecutionError:
        raise
    except Exception as exc:
        raise ExpressionEvaluationError(
            str(exc) or type(exc).__name__,
            details={"expression": expression},
        ) from exc


def evaluate_mapping(mapping: Any, context: Mapping[str, Any]) -> Any:
    """Evaluate every string leaf of ``mapping``; other leaves are literals."""
    if isinstance(mapping, str):
        return evaluate(mapping, context)
    if isinstance(mapping, Mapping):
        return {key: evaluate_mapping(value, context) for key, value in mapping.items()}
    if isinstance(mapping, list):
        return [evaluate_mapping(item, context) for item in mapping]
    return mapping
