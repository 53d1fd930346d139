# self_pipeline.py
# Pipeline for pipewright itself: lint, test and a packaging check.
#   pipewright run --pipeline examples/self_pipeline.py --branch main
from __future__ import annotations

from pipewright.dsl import define, job, manual, push, sh, uses


def pipeline():
    return define(
        "pipewright",
        # Lint job - ruff over the sources, pip cache keyed on pyproject.toml
        job(
            "lint",
            uses("Checkout", "actions/checkout@v3"),
            uses(
                "Cache pip",
                "actions/cache@v3",
                path="~/.cache/pip",
                key="${{ runner.os }}-pip-${{ hashFiles('pyproject.toml') }}",
                restore_keys="${{ runner.os }}-pip-",
            ),
            sh("Ruff check", "ruff check src tests"),
            optional=True,
        ),

        # Test job
        job(
            "test",
            uses("Checkout", "actions/checkout@v3"),
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
        ),

        # Build job - only once tests pass
        job(
            "build",
            uses("Checkout", "actions/checkout@v3"),
            sh("Build sdist and wheel", "python -m pip wheel --no-deps -w dist ."),
            needs=["test"],
        ),
        on=[push("main"), manual()],
        env={"PIP_DISABLE_PIP_VERSION_CHECK": "1"},
    )
