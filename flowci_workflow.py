# flowci_workflow.py
# Workflow for flowci itself: lint, test, and a small output-passing demo
from __future__ import annotations

from flowci.dsl import wf, job, sh


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
        ),

        # Test job - runs pytest once lint passed
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            needs=["lint"],
        ),

        # Outputs demo: the second step receives the first step's output
        job(
            "version",
            sh(
                "Read version",
                "echo \"version=$(grep '^version' pyproject.toml | cut -d'\"' -f2)\" >> \"$FLOWCI_OUTPUT\"",
                id="read",
                outputs=["version"],
            ),
            sh("Show version", "echo building flowci ${{ steps.read.outputs.version }}"),
        ),
        name="flowci",
        on={"push": None, "pull_request": ["main"]},
    )
