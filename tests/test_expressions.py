import pytest

from pipewright.expressions import ExpressionContext, ExpressionError, render, secret_refs
from pipewright.model import Event, EventKind


@pytest.fixture
def ctx(tmp_path):
    (tmp_path / "app.csproj").write_text("<Project/>")
    return ExpressionContext(
        workspace=tmp_path,
        event=Event(kind=EventKind.PULL_REQUEST, branch="master", sha="deadbeef"),
        env={"CONFIG": "Release"},
        secrets={"TOKEN": "t0k3n"},
        os_name="Linux",
    )


def test_cache_key_expression(ctx):
    key = render("${{ runner.os }}-nuget-${{ hashFiles('**/*.csproj') }}", ctx)
    prefix, _, digest = key.rpartition("-")
    assert prefix == "Linux-nuget"
    assert len(digest) == 64


def test_event_env_and_secret_lookups(ctx):
    assert render("${{ event.branch }}/${{ event.kind }}/${{ event.sha }}", ctx) == "master/pull_request/deadbeef"
    assert render("${{ github.ref }} ${{ github.event_name }}", ctx) == "refs/heads/master pull_request"
    assert render("${{env.CONFIG}}", ctx) == "Release"
    assert render("${{ env.MISSING }}", ctx) == ""
    assert render("${{ secrets.TOKEN }}", ctx) == "t0k3n"


def test_render_walks_nested_values(ctx):
    value = {"args": ["--os", "${{ runner.os }}"], "n": 3, "flag": True}
    assert render(value, ctx) == {"args": ["--os", "Linux"], "n": 3, "flag": True}


def test_unresolved_secret_is_an_error(ctx):
    with pytest.raises(ExpressionError):
        render("${{ secrets.OTHER }}", ctx)


@pytest.mark.parametrize("expr", ["${{ nonsense }}", "${{ matrix.os }}", "${{ event.actor }}", "${{ hashFiles() }}"])
def test_unsupported_expressions(ctx, expr):
    with pytest.raises(ExpressionError):
        render(expr, ctx)


def test_secret_refs_are_collected_once():
    value = {"env": {"A": "${{ secrets.SONAR_TOKEN }}", "B": "${{secrets.NUGET}}"}, "run": ["${{ secrets.SONAR_TOKEN }}"]}
    assert secret_refs(value) == ["SONAR_TOKEN", "NUGET"]
    assert secret_refs("no refs here") == []
