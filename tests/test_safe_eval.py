"""Tests for the AST-whitelist expression evaluator."""

import pytest

from conductor.errors import ExpressionError
from conductor.workflow.safe_eval import safe_eval


class TestAllowedExpressions:
    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("1 + 2 * 3", 7),
            ("7 // 2", 3),
            ("2 ** 10", 1024),
            ("-x", -5),
            ("x > 3 and x < 10", True),
            ("x > 10 or 'fallback'", "fallback"),
            ("not flag", False),
            ("'yes' if x == 5 else 'no'", "yes"),
            ("1 < x <= 5", True),
            ("'b' in letters", True),
            ("letters[0]", "a"),
            ("letters[-2:]", ["b", "c"]),
            ("len(letters)", 3),
            ("sum([1, 2, 3])", 6),
            ("true and not null", True),
            ("{'k': x}", {"k": 5}),
        ],
    )
    def test_evaluates(self, expression, expected):
        variables = {"x": 5, "flag": True, "letters": ["a", "b", "c"]}

        assert safe_eval(expression, variables) == expected

    def test_mapping_attribute_reads_key(self):
        variables = {"item": {"price": 30, "count": 2}, "qty": 4}

        assert safe_eval("item.price * qty > 100", variables) is True
        assert safe_eval("item.count", variables) == 2
        assert safe_eval("item.missing", variables) is None

    def test_whitelisted_methods(self):
        assert safe_eval("name.upper()", {"name": "ada"}) == "ADA"
        assert safe_eval("row.get('a', 0)", {"row": {}}) == 0
        assert safe_eval("', '.join(names)", {"names": ["a", "b"]}) == "a, b"

    def test_comprehensions(self):
        variables = {"items": [{"n": 1}, {"n": 2}, {"n": 3}]}

        assert safe_eval("[i.n * 10 for i in items if i.n > 1]", variables) == [20, 30]
        assert safe_eval("sum(i.n for i in items)", variables) == 6
        assert safe_eval("[k for k, v in pairs if v]", {"pairs": [("a", 1), ("b", 0)]}) == ["a"]


class TestRejectedExpressions:
    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "open('/etc/passwd')",
            "x.__class__",
            "(lambda: 1)()",
            "x.bit_length()",
            "[y := 1]",
            "2 ** 100000",
        ],
    )
    def test_rejects(self, expression):
        with pytest.raises(ExpressionError):
            safe_eval(expression, {"x": 5})

    def test_unknown_name(self):
        with pytest.raises(ExpressionError, match="Unknown name"):
            safe_eval("missing + 1")

    def test_syntax_error(self):
        with pytest.raises(ExpressionError, match="Invalid expression"):
            safe_eval("1 +")

    def test_runtime_errors_are_wrapped(self):
        with pytest.raises(ExpressionError):
            safe_eval("1 / 0")
        with pytest.raises(ExpressionError):
            safe_eval("letters[10]", {"letters": []})

    @pytest.mark.parametrize("expression", ["", "   ", None])
    def test_empty_expression(self, expression):
        with pytest.raises(ExpressionError):
            safe_eval(expression)
