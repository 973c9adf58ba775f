import pytest

from flowci.errors import ExpressionError
from flowci.expressions import StatusContext, find_expressions, interpolate, parse, parse_condition, truthy


@pytest.fixture
def context(run_env):
    ctx = run_env.context()
    ctx["steps"] = {"build": {"outputs": {"url": "https://x", "count": "3"}}}
    return ctx


def test_interpolates_repository_name(context):
    text = "trunk build --public-url /${{ github.event.repository.name }}/"
    assert interpolate(text, context) == "trunk build --public-url /site/"


def test_interpolates_step_outputs_and_missing_values(context):
    assert interpolate("${{ steps.build.outputs.url }}/index", context) == "https://x/index"
    assert interpolate("[${{ steps.build.outputs.nope }}]", context) == "[]"


def test_text_without_templates_is_untouched(context):
    assert interpolate("echo $HOME {0}", context) == "echo $HOME {0}"


@pytest.mark.parametrize(
    "source, expected",
    [
        ("github.event_name == 'push'", True),
        ("github.event_name == 'PUSH'", True),
        ("github.ref != 'refs/heads/main'", False),
        ("steps.build.outputs.count > 2", True),
        ("steps.build.outputs.count == 3", True),
        ("!startsWith(github.ref, 'refs/tags/')", True),
        ("contains(github.repository, 'octo') && endsWith(github.repository, 'site')", True),
        ("github.actor || 'nobody'", "nobody"),
        ("format('{0}-{1}', github.ref_name, 1)", "main-1"),
        ("(false || true) && !null", True),
        ("'it''s'", "it's"),
    ],
)
def test_evaluate(source, expected, context):
    assert parse(source).evaluate(context) == expected


def test_status_functions(context):
    failed = StatusContext(failure=True)
    ok = StatusContext()

    assert parse("failure()").evaluate(context, failed) is True
    assert parse("success()").evaluate(context, failed) is False
    assert parse("success()").evaluate(context, ok) is True
    assert parse("cancelled()").evaluate(context, StatusContext(cancelled=True)) is True
    assert parse("always()").evaluate(context) is True


def test_status_function_needs_run_state(context):
    with pytest.raises(ExpressionError, match="only available"):
        parse("success()").evaluate(context)


@pytest.mark.parametrize("source", ["github.ref ==", "nosuch(1)", "(a", "a b", "success(1)", "'open"])
def test_malformed_expressions(source):
    with pytest.raises(ExpressionError):
        parse(source)


def test_static_and_run_always_classification():
    assert parse_condition("${{ github.event_name == 'push' }}").is_static
    assert not parse("steps.a.outputs.x == '1'").is_static
    assert not parse("success()").is_static
    assert parse("always()").runs_always
    assert parse("failure() && github.ref == 'x'").runs_always
    assert not parse("success()").runs_always


def test_find_expressions_collects_references():
    exprs = find_expressions("a ${{ steps.x.outputs.y }} b ${{ env.FOO }}")
    assert [e.references for e in exprs] == [("steps.x.outputs.y",), ("env.FOO",)]


@pytest.mark.parametrize("value, expected", [("", False), ("0", True), (0, False), (None, False), ([], True)])
def test_truthy(value, expected):
    assert truthy(value) is expected
