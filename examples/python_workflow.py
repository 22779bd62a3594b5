# Same shape as rust.yml, declared in Python:
#   matrixci run --config examples/python_workflow.py
from matrixci.dsl import build, job, pipeline, sh


def workflow():
    lint = (
        build("lint")
        .define_step("ruff check .", name="Ruff")
        .build()
    )

    test = job(
        "test",
        sh("python${{ matrix.python }} -m pip install -e '.[test]'", name="Install"),
        sh("python${{ matrix.python }} -m pytest -q", name="Pytest"),
        runs_on="${{ matrix.os }}",
        matrix={"os": ["ubuntu", "macos"], "python": ["3.11", "3.12"]},
        exclude=[{"os": "macos", "python": "3.11"}],
        needs=["lint"],
        fail_fast=True,
    )

    return pipeline(lint, test, on=["push", "pull_request"], name="python")
