from datetime import datetime, timezone

import pytest

from lowcode_runtime.service.errors import ErrorKind
from lowcode_runtime.service.expressions import (
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    evaluate,
    evaluate_mapping,
)


def _names(**body):
    return {
        "request": {"body": body, "query": {"q": "abc"}, "params": {}, "headers": {}},
        "user": {"id": "u1", "name": "Ada"},
        "env": {"region": "eu"},
    }


def test_dotted_access_and_arithmetic():
    assert evaluate("request.body.n * 2", _names(n=21)) == 42


def test_missing_keys_yield_null():
    names = _names()
    assert evaluate("request.body.missing", names) is None
    assert evaluate("request.body.missing.deeper", names) is None
    assert evaluate("Coalesce(request.body.missing, 'fallback')", names) == "fallback"


def test_literal_names_and_conditionals():
    names = _names(active=True)
    assert evaluate("null", names) is None
    assert evaluate("'yes' if request.body.active == true else 'no'", names) == "yes"
    assert evaluate("If(request.body.active, 1, 2)", names) == 1


def test_lazy_functions_skip_untaken_branches():
    names = _names(n=0)
    # the division by zero lives in the branch that is never taken
    assert evaluate("If(request.body.n == 0, 'zero', 10 / request.body.n)", names) == "zero"
    assert evaluate("Switch(env.region, 'us', 1, 'eu', 2, 3)", names) == 2
    assert evaluate("Switch(env.region, 'us', 1, 'ap', 2, 3)", names) == 3


def test_string_and_collection_functions():
    names = _names(items=[3, 1, 2], title="  hello   world ")
    assert evaluate("Upper(request.query.q)", names) == "ABC"
    assert evaluate("Trim(request.body.title)", names) == "hello world"
    assert evaluate("Sum(request.body.items)", names) == 6
    assert evaluate("Max(request.body.items)", names) == 3
    assert evaluate("Average(1, 2, 3)", names) == 2
    assert evaluate("CountRows(request.body.items)", names) == 3
    assert evaluate("Mid('abcdef', 2, 3)", names) == "bcd"
    assert evaluate("Split('a,b', ',')", names) == ["a", "b"]
    assert evaluate("f'{user.name}-{env.region}'", names) == "Ada-eu"


def test_date_functions():
    names = {"start": "2024-01-31T00:00:00Z"}
    moved = evaluate("DateAdd(start, 1, 'months')", names)
    assert moved == datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert evaluate("DateDiff(start, '2024-02-10T00:00:00Z')", names) == 10
    assert evaluate("Year(start)", names) == 2024


def test_dict_and_list_displays():
    result = evaluate("{'total': request.body.a + request.body.b, 'tags': [1, 2]}", _names(a=1, b=2))
    assert result == {"total": 3, "tags": [1, 2]}


@pytest.mark.parametrize(
    "expression",
    [
        "(lambda z: z)(1)",
        "__import__('os')",
        "request.__class__",
        "[x for x in [1, 2]]",
        "open('/etc/passwd')",
        "request.body.keys()",
        "Sum(*request.body.items)",
    ],
)
def test_disallowed_constructs_are_configuration_errors(expression):
    with pytest.raises(ExpressionSyntaxError) as exc_info:
        evaluate(expression, _names(items=[1]))
    assert exc_info.value.kind is ErrorKind.CONFIGURATION


def test_syntax_error_is_configuration_error():
    with pytest.raises(ExpressionSyntaxError):
        evaluate("1 +", {})
    with pytest.raises(ExpressionSyntaxError):
        evaluate("   ", {})


def test_runtime_failure_is_internal_with_message():
    with pytest.raises(ExpressionEvaluationError) as exc_info:
        evaluate("1 / request.body.n", _names(n=0))
    assert exc_info.value.kind is ErrorKind.INTERNAL
    assert "division" in exc_info.value.message


def test_attribute_on_scalar_is_rejected_at_runtime():
    with pytest.raises(ExpressionEvaluationError):
        evaluate("request.body.n.real", _names(n=3))


def test_oversized_exponent_rejected():
    with pytest.raises(ExpressionEvaluationError):
        evaluate("10 ** 100000", {})


def test_evaluate_mapping_recurses_over_string_leaves():
    mapping = {"total": "request.body.n + 1", "static": 5, "nested": ["user.id", True]}
    assert evaluate_mapping(mapping, _names(n=1)) == {
        "total": 2,
        "static": 5,
        "nested": ["u1", True],
    }


def test_text_format_width_is_bounded():
    names = {"request": {"query": {"fmt": ">200000000"}}}
    with pytest.raises(ExpressionEvaluationError):
        evaluate("Len(Text(1, request.query.fmt))", names)
    assert evaluate("Text(3.14159, '.2f')", {}) == "3.14"
    assert evaluate("Text(7, '0>4')", {}) == "0007"
