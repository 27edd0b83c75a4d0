"""Tests for ${{ }} expression evaluation.

Covers:
- Literals, context access, object filters
- Loose equality and comparison coercion
- Built-in functions (format, join, toJSON, fromJSON, contains, ...)
- Null handling in required vs optional positions
- Condition evaluation with the implicit success() guard
- Template rendering (type-preserving vs string interpolation)
"""

from __future__ import annotations

import math

import pytest

from gantry.errors import ErrorKind, EvaluationError
from gantry.pipeline.context import ContextSnapshot
from gantry.pipeline.expressions import (
    ExpressionEvaluator,
    ValueKind,
    kind_of,
    split_template,
    to_number,
    to_string,
    truthy,
    uses_status_function,
)


class FakeHasher:
    def __init__(self, digests):
        self.digests = digests
        self.calls = []

    def hash_files(self, patterns):
        self.calls.append(list(patterns))
        return self.digests


def make_snapshot(**contexts) -> ContextSnapshot:
    base = {
        "github": {"ref": "refs/heads/main", "event_name": "push", "sha": "abc123"},
        "env": {"REGISTRY": "ghcr.io"},
        "needs": {},
        "matrix": {},
    }
    base.update(contexts)
    return ContextSnapshot(base)


@pytest.fixture
def evaluator():
    return ExpressionEvaluator()


# ── Literals and access ──────────────────────────────────────────────────────


class TestLiteralsAndAccess:
    def test_literals(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate("null", snap) is None
        assert evaluator.evaluate("true", snap) is True
        assert evaluator.evaluate("false", snap) is False
        assert evaluator.evaluate("42", snap) == 42
        assert evaluator.evaluate("0xff", snap) == 255
        assert evaluator.evaluate("1.5e2", snap) == 150
        assert evaluator.evaluate("'it''s'", snap) == "it's"

    def test_context_property(self, evaluator):
        assert evaluator.evaluate("github.ref", make_snapshot()) == "refs/heads/main"

    def test_property_lookup_is_case_insensitive(self, evaluator):
        assert evaluator.evaluate("GitHub.Event_Name", make_snapshot()) == "push"

    def test_index_access(self, evaluator):
        snap = make_snapshot(needs={"build": {"outputs": {"image": "app:1"}}})
        assert evaluator.evaluate("needs.build.outputs['image']", snap) == "app:1"

    def test_array_index(self, evaluator):
        snap = make_snapshot(matrix={"versions": [3, 4, 5]})
        assert evaluator.evaluate("matrix.versions[1]", snap) == 4
        assert evaluator.evaluate("matrix.versions[9]", snap) is None

    def test_missing_path_is_null(self, evaluator):
        assert evaluator.evaluate("github.nothing.deeper", make_snapshot()) is None

    def test_object_filter(self, evaluator):
        snap = make_snapshot(
            needs={"a": {"result": "success"}, "b": {"result": "failure"}}
        )
        assert evaluator.evaluate("needs.*.result", snap) == ("success", "failure")

    def test_object_filter_feeds_contains(self, evaluator):
        snap = make_snapshot(
            needs={"a": {"result": "success"}, "b": {"result": "failure"}}
        )
        assert evaluator.evaluate("contains(needs.*.result, 'failure')", snap) is True


# ── Operators and coercion ───────────────────────────────────────────────────


class TestCoercion:
    def test_string_equality_ignores_case(self, evaluator):
        assert evaluator.evaluate("'ABC' == 'abc'", make_snapshot()) is True

    def test_number_string_equality(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate("1 == '1'", snap) is True
        assert evaluator.evaluate("'0x10' == 16", snap) is True

    def test_null_equals_zero_and_false(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate("null == 0", snap) is True
        assert evaluator.evaluate("false == 0", snap) is True
        assert evaluator.evaluate("null == null", snap) is True

    def test_nan_never_equal(self, evaluator):
        assert evaluator.evaluate("'abc' == 1", make_snapshot()) is False

    def test_comparisons(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate("2 > 1", snap) is True
        assert evaluator.evaluate("'10' >= 9", snap) is True
        assert evaluator.evaluate("'b' > 'A'", snap) is True
        assert evaluator.evaluate("'abc' < 1", snap) is False

    def test_logical_operators_return_operands(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate("'' || 'fallback'", snap) == "fallback"
        assert evaluator.evaluate("'x' && 'y'", snap) == "y"
        assert evaluator.evaluate("0 && 'y'", snap) == 0
        assert evaluator.evaluate("!''", snap) is True

    def test_precedence(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate("true || false && false", snap) is True
        assert evaluator.evaluate("(true || false) && false", snap) is False

    def test_helpers(self):
        assert kind_of([1]) is ValueKind.ARRAY
        assert kind_of({"a": 1}) is ValueKind.OBJECT
        assert to_number(None) == 0
        assert to_number("") == 0
        assert math.isnan(to_number("abc"))
        assert to_string(None) == ""
        assert to_string(True) == "true"
        assert to_string(3.0) == "3"
        assert to_string(2.5) == "2.5"
        assert to_string([1]) == "Array"
        assert not truthy(0)
        assert not truthy(math.nan)
        assert truthy("false")
        assert truthy([])


# ── Functions ────────────────────────────────────────────────────────────────


class TestFunctions:
    def test_format(self, evaluator):
        assert evaluator.evaluate("format('img-{0}:{1}', 'x', 'y')", make_snapshot()) == "img-x:y"

    def test_format_escaped_braces(self, evaluator):
        assert evaluator.evaluate("format('{{{0}}}', 'x')", make_snapshot()) == "{x}"

    def test_format_missing_argument(self, evaluator):
        with pytest.raises(EvaluationError) as exc:
            evaluator.evaluate("format('img-{0}', )", make_snapshot())
        assert exc.value.kind == ErrorKind.ARITY_MISMATCH

    def test_format_bad_placeholder(self, evaluator):
        with pytest.raises(EvaluationError) as exc:
            evaluator.evaluate("format('{x}', 1)", make_snapshot())
        assert exc.value.kind == ErrorKind.INVALID_SYNTAX

    def test_starts_and_ends_with(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate("startsWith(github.ref, 'REFS/heads')", snap) is True
        assert evaluator.evaluate("endsWith(github.ref, '/main')", snap) is True

    def test_contains_string(self, evaluator):
        assert evaluator.evaluate("contains('Hello', 'ELL')", make_snapshot()) is True

    def test_join(self, evaluator):
        snap = make_snapshot(matrix={"os": ["linux", "mac"]})
        assert evaluator.evaluate("join(matrix.os)", snap) == "linux,mac"
        assert evaluator.evaluate("join(matrix.os, ' + ')", snap) == "linux + mac"

    def test_to_json(self, evaluator):
        snap = make_snapshot(matrix={"os": "linux"})
        assert evaluator.evaluate("toJSON(matrix)", snap) == '{\n  "os": "linux"\n}'

    def test_from_json(self, evaluator):
        value = evaluator.evaluate("fromJSON('{\"a\": [1, 2]}')", make_snapshot())
        assert value["a"] == (1, 2)

    def test_from_json_malformed(self, evaluator):
        with pytest.raises(EvaluationError) as exc:
            evaluator.evaluate("fromJSON('{oops')", make_snapshot())
        assert exc.value.kind == ErrorKind.MALFORMED_JSON

    def test_unknown_function(self, evaluator):
        with pytest.raises(EvaluationError) as exc:
            evaluator.evaluate("explode()", make_snapshot())
        assert exc.value.kind == ErrorKind.UNKNOWN_FUNCTION

    def test_arity_mismatch(self, evaluator):
        with pytest.raises(EvaluationError) as exc:
            evaluator.evaluate("contains('a')", make_snapshot())
        assert exc.value.kind == ErrorKind.ARITY_MISMATCH

    def test_hash_files_without_hasher(self, evaluator):
        with pytest.raises(EvaluationError) as exc:
            evaluator.evaluate("hashFiles('**/*.lock')", make_snapshot())
        assert exc.value.kind == ErrorKind.UNKNOWN_FUNCTION

    def test_hash_files_combines_digests(self):
        hasher = FakeHasher({"a.lock": "00" * 32, "b.lock": "11" * 32})
        evaluator = ExpressionEvaluator(file_hasher=hasher)
        first = evaluator.evaluate("hashFiles('**/*.lock')", make_snapshot())
        second = evaluator.evaluate("hashFiles('**/*.lock')", make_snapshot())
        assert len(first) == 64
        assert first == second
        assert hasher.calls[0] == ["**/*.lock"]

    def test_hash_files_no_match_is_empty(self):
        evaluator = ExpressionEvaluator(file_hasher=FakeHasher({}))
        assert evaluator.evaluate("hashFiles('nothing')", make_snapshot()) == ""


# ── Errors and null handling ─────────────────────────────────────────────────


class TestNullHandling:
    def test_missing_output_renders_empty(self, evaluator):
        snap = make_snapshot(needs={"build": {"outputs": {}}})
        assert evaluator.render("tag=${{ needs.build.outputs.missing }}", snap) == "tag="

    def test_missing_output_in_required_position(self, evaluator):
        snap = make_snapshot(needs={"build": {"outputs": {}}})
        with pytest.raises(EvaluationError) as exc:
            evaluator.evaluate("needs.build.outputs.missing", snap, required=True)
        assert exc.value.kind == ErrorKind.UNDEFINED_REFERENCE

    def test_syntax_errors(self, evaluator):
        snap = make_snapshot()
        for source in ("", "github.", "1 +", "(true", "a ~ b"):
            with pytest.raises(EvaluationError) as exc:
                evaluator.evaluate(source, snap)
            assert exc.value.kind == ErrorKind.INVALID_SYNTAX

    def test_evaluation_is_repeatable(self, evaluator):
        snap = make_snapshot(needs={"a": {"result": "success"}})
        first = evaluator.evaluate("format('{0}-{1}', github.sha, needs.a.result)", snap)
        assert evaluator.evaluate("format('{0}-{1}', github.sha, needs.a.result)", snap) == first


# ── Conditions ───────────────────────────────────────────────────────────────


class TestConditions:
    def test_absent_condition_means_success(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate_condition(None, snap) is True
        assert evaluator.evaluate_condition(None, snap.with_status(succeeded=False)) is False

    def test_implicit_success_guard(self, evaluator):
        failed = make_snapshot().with_status(succeeded=False, failed=True)
        assert evaluator.evaluate_condition("github.event_name == 'push'", failed) is False
        assert evaluator.evaluate_condition("always()", failed) is True
        assert evaluator.evaluate_condition("failure()", failed) is True

    def test_cancelled_status(self, evaluator):
        cancelled = make_snapshot().with_status(cancelled=True)
        assert evaluator.evaluate_condition("success()", cancelled) is False
        assert evaluator.evaluate_condition("cancelled()", cancelled) is True
        assert evaluator.evaluate_condition(None, cancelled) is False

    def test_wrapped_condition(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate_condition("${{ github.ref == 'refs/heads/main' }}", snap) is True
        assert evaluator.evaluate_condition("${{ github.ref == 'refs/heads/dev' }}", snap) is False

    def test_boolean_condition(self, evaluator):
        snap = make_snapshot()
        assert evaluator.evaluate_condition(True, snap) is True
        assert evaluator.evaluate_condition(False, snap) is False

    def test_uses_status_function(self):
        assert uses_status_function("always()")
        assert uses_status_function("!cancelled() && true")
        assert not uses_status_function("github.ref == 'x'")


# ── Rendering ────────────────────────────────────────────────────────────────


class TestRender:
    def test_whole_expression_keeps_type(self, evaluator):
        snap = make_snapshot(matrix={"shards": [1, 2]})
        assert evaluator.render("${{ matrix.shards }}", snap) == [1, 2]
        assert evaluator.render("${{ 3 }}", snap) == 3

    def test_mixed_text_becomes_string(self, evaluator):
        snap = make_snapshot(matrix={"os": "linux", "n": 2})
        assert evaluator.render("${{ env.REGISTRY }}/app-${{ matrix.os }}-${{ matrix.n }}", snap) == (
            "ghcr.io/app-linux-2"
        )

    def test_nested_structures(self, evaluator):
        snap = make_snapshot()
        rendered = evaluator.render({"ref": "${{ github.ref }}", "list": ["${{ github.sha }}", 1]}, snap)
        assert rendered == {"ref": "refs/heads/main", "list": ["abc123", 1]}

    def test_plain_values_pass_through(self, evaluator):
        snap = make_snapshot()
        assert evaluator.render("plain", snap) == "plain"
        assert evaluator.render(7, snap) == 7
        assert evaluator.render(None, snap) is None

    def test_closing_braces_inside_string(self):
        assert split_template("a ${{ '}}' }} b") == [(False, "a "), (True, "'}}'"), (False, " b")]

    def test_unterminated_template(self, evaluator):
        with pytest.raises(EvaluationError) as exc:
            evaluator.render("${{ github.ref", make_snapshot())
        assert exc.value.kind == ErrorKind.INVALID_SYNTAX
