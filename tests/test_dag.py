import pytest

from pipewright import dag
from pipewright.errors import ValidationError
from pipewright.model import JobStatus

from conftest import diamond, make_definition, make_job


def test_levels_follow_needs():
    graph = dag.load(diamond())
    assert graph.levels() == [["build"], ["scan1", "scan2"], ["test"], ["deploy"]]
    assert graph.topological_order() == ["build", "scan1", "scan2", "test", "deploy"]


def test_cycle_is_rejected():
    definition = make_definition(
        make_job("a", ["c"]),
        make_job("b", ["a"]),
        make_job("c", ["b"]),
    )
    with pytest.raises(ValidationError) as exc:
        dag.load(definition)
    assert "cycle" in exc.value.message
    assert "a" in str(exc.value)


def test_missing_and_self_needs_are_all_reported():
    definition = make_definition(
        make_job("build", ["nope"]),
        make_job("loop", ["loop"]),
    )
    with pytest.raises(ValidationError) as exc:
        dag.load(definition)
    problems = "\n".join(exc.value.problems)
    assert "missing job 'nope'" in problems
    assert "'loop' needs itself" in problems


def test_duplicate_job_names():
    with pytest.raises(ValidationError, match="invalid job graph"):
        dag.load(make_definition(make_job("a"), make_job("a")))


def test_empty_pipeline_is_invalid():
    with pytest.raises(ValidationError):
        dag.load(make_definition())


def test_ready_jobs_only_after_every_need_succeeded():
    graph = dag.load(diamond())
    statuses = {name: JobStatus.PENDING for name in graph}
    assert graph.ready_jobs(statuses) == ["build"]

    statuses["build"] = JobStatus.SUCCEEDED
    assert graph.ready_jobs(statuses) == ["scan1", "scan2"]

    statuses["scan1"] = JobStatus.SUCCEEDED
    statuses["scan2"] = JobStatus.RUNNING
    assert graph.ready_jobs(statuses) == []

    statuses["scan2"] = JobStatus.FAILED
    assert graph.ready_jobs(statuses) == []


def test_ready_jobs_keep_declaration_order():
    definition = make_definition(make_job("zeta"), make_job("alpha"), make_job("mid"))
    graph = dag.load(definition)
    assert graph.ready_jobs({}) == ["zeta", "alpha", "mid"]


def test_transitive_dependents():
    graph = dag.load(diamond())
    assert graph.transitive_dependents("scan2") == ["test", "deploy"]
    assert graph.transitive_dependents("build") == ["scan1", "scan2", "test", "deploy"]
    assert graph.transitive_dependents("deploy") == []
    assert graph.dependents("build") == ["scan1", "scan2"]
