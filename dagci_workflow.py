# dagci_workflow.py
# Pipeline for dagci itself: lint, tests across Python versions, a build check
from __future__ import annotations
from dagci import job, pipeline, sh


def workflow():
    return pipeline(
        "dagci",
        # Lint job - style findings are reported but do not fail the run
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
            continue_on_error=True,
            caches={"~/.cache/pip": "pip-lint-${{ hashFiles('pyproject.toml') }}"},
        ),

        # Test job - one instance per interpreter image
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            image="python:${{ matrix.python }}",
            matrix={"python": ["3.12", "3.13"]},
            caches={"/root/.cache/pip": "pip-${{ matrix.python }}-${{ hashFiles('pyproject.toml') }}"},
        ),

        # Build check - the sdist and wheel must build once every test passed
        job(
            "build",
            sh("Build", "pip install build && python -m build"),
            needs=["lint", "test"],
        ),

        # Summary runs whatever happened upstream
        job(
            "summary",
            sh("Summary", "echo \"run $DAGCI_RUN_ID finished\""),
            needs=["build"],
            always=True,
        ),
        on=["push", "pull_request"],
    )
