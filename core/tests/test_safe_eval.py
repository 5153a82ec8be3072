"""Tests for template interpolation and the sandboxed expression evaluator."""

import pytest

from flowgraph.graph.errors import ExpressionError
from flowgraph.graph.safe_eval import (
    evaluate,
    evaluate_guard,
    interpolate,
    interpolate_value,
    normalize,
    safe_eval,
)


class TestInterpolate:
    def test_json_rendering_by_default(self):
        ctx = {"amount": 1500, "name": "Ada", "tags": ["a", "b"]}
        assert interpolate("{{amount}} > 1000", ctx) == "1500 > 1000"
        assert interpolate("{{name}}", ctx) == '"Ada"'
        assert interpolate("${tags}", ctx) == '["a", "b"]'

    def test_plain_rendering_for_prompts(self):
        ctx = {"name": "Ada", "ok": True, "missing": None}
        assert interpolate("Hi {{name}}", ctx, as_json=False) == "Hi Ada"
        assert interpolate("{{ok}}/{{missing}}", ctx, as_json=False) == "true/null"

    def test_dotted_paths(self):
        ctx = {"fetch": {"response": {"items": [{"id": 7}]}}}
        assert interpolate("{{fetch.response.items.0.id}}", ctx) == "7"

    def test_unknown_placeholder_left_in_place(self):
        assert interpolate("{{nope}} and ${also.nope}", {}) == "{{nope}} and ${also.nope}"

    def test_non_string_passthrough(self):
        assert interpolate(42, {}) == 42

    def test_interpolate_value_walks_structures(self):
        value = {"greeting": "Hi {{name}}", "list": ["{{n}}", 3], "flag": True}
        out = interpolate_value(value, {"name": "Ada", "n": 2})
        assert out == {"greeting": "Hi Ada", "list": ["2", 3], "flag": True}


class TestNormalize:
    def test_js_operators_rewritten(self):
        assert safe_eval(normalize("a === 1 && !b || c !== 2"), {"a": 1, "b": False, "c": 2})

    def test_operators_inside_strings_untouched(self):
        assert safe_eval("x == 'a && b'", {"x": "a && b"}) is True
        assert safe_eval('x == "!"', {"x": "!"}) is True


class TestSafeEval:
    def test_arithmetic_and_comparison(self):
        assert safe_eval("(a + b) * 2 >= 10", {"a": 2, "b": 3}) is True
        assert safe_eval("10 // 3 + 10 % 3", {}) == 4
        assert safe_eval("1 < x < 5", {"x": 3}) is True

    def test_js_literals(self):
        assert safe_eval("true && !false", {}) is True
        assert safe_eval("x === null", {"x": None}) is True

    def test_property_access_on_dicts(self):
        ctx = {"check": {"result": True, "score": 0.4}}
        assert safe_eval("check.result && check.score < 0.5", ctx) is True
        assert safe_eval("check['score']", ctx) == 0.4
        assert safe_eval("check.missing", ctx) is None

    def test_length_and_string_methods(self):
        ctx = {"items": [1, 2, 3], "name": "Ada Lovelace"}
        assert safe_eval("items.length == 3", ctx) is True
        assert safe_eval("name.toLowerCase().startsWith('ada')", ctx) is True
        assert safe_eval("name.split(' ')[1]", ctx) == "Lovelace"
        assert safe_eval("items.includes(2)", ctx) is True

    def test_whitelisted_functions(self):
        ctx = {"values": [3, 1, 2]}
        assert safe_eval("max(values) + min(values)", ctx) == 4
        assert safe_eval("Math.floor(2.7) + math.ceil(0.2)", {}) == 3
        assert safe_eval("JSON.parse('{\"a\": 1}').a", {}) == 1
        assert safe_eval("json_stringify([1])", {}) == "[1]"
        assert safe_eval("sorted(values)", ctx) == [1, 2, 3]

    def test_ternary_and_literals(self):
        assert safe_eval("'big' if n > 10 else 'small'", {"n": 11}) == "big"
        assert safe_eval("{'a': [1, 2]}", {}) == {"a": [1, 2]}

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "().__class__",
            "x.__class__",
            "open('/etc/passwd')",
            "eval('1')",
            "lambda: 1",
            "[i for i in range(3)]",
            "getattr(x, 'y')",
            "x.update({})",
        ],
    )
    def test_forbidden_constructs(self, expression):
        with pytest.raises(ExpressionError):
            safe_eval(expression, {"x": {}})

    def test_resource_limits(self):
        with pytest.raises(ExpressionError):
            safe_eval("2 ** 100000", {})
        with pytest.raises(ExpressionError):
            safe_eval("'a' * 10000000", {})

    @pytest.mark.parametrize("expression", ["[0] * 99999 * 99999", "(10 ** 1000) ** 1000"])
    def test_chained_growth_is_bounded(self, expression):
        with pytest.raises(ExpressionError, match="too large"):
            safe_eval(expression, {})

    def test_large_but_bounded_values_allowed(self):
        assert len(safe_eval("[0] * 1000", {})) == 1000
        assert safe_eval("10 ** 3", {}) == 1000

    def test_unknown_name(self):
        with pytest.raises(ExpressionError, match="Unknown name"):
            safe_eval("missing + 1", {})

    def test_syntax_error(self):
        with pytest.raises(ExpressionError, match="syntax"):
            safe_eval("1 +", {})

    def test_empty_expression(self):
        with pytest.raises(ExpressionError):
            safe_eval("   ", {})


class TestEvaluate:
    def test_returns_value_and_error_pair(self):
        assert evaluate("1 + 1", {}) == (2, None)
        value, error = evaluate("1 / 0", {})
        assert value is None
        assert error

    def test_deterministic(self):
        ctx = {"a": [1, 2, 3]}
        assert evaluate("sum(a) * 2", ctx) == evaluate("sum(a) * 2", ctx)


class TestEvaluateGuard:
    def test_interpolates_before_evaluating(self):
        assert evaluate_guard("{{amount}} > 1000", {"amount": 1500}) is True
        assert evaluate_guard("{{amount}} > 1000", {"amount": 500}) is False

    def test_failure_degrades_to_false(self, caplog):
        assert evaluate_guard("{{missing}} > 1", {}) is False
        assert "Condition evaluation failed" in caplog.text

    @pytest.mark.parametrize("expression", ["keys(1)", "values(1)", "{[1]}", "{[1]: 2}"])
    def test_runtime_type_errors_degrade_to_false(self, expression):
        assert evaluate_guard(expression, {}) is False
        value, error = evaluate(expression, {})
        assert value is None
        assert error

    def test_truthiness(self):
        assert evaluate_guard("items", {"items": [1]}) is True
        assert evaluate_guard("items", {"items": []}) is False
