import pytest

from matrixci.config import load_config, load_yaml, parse_config
from matrixci.errors import DuplicateJobName, MalformedConfig
from matrixci.model import ACTION, COMMAND

from conftest import config_from_yaml

RUST_WORKFLOW = """
name: Rust

on: [push]

env:
  CARGO_TERM_COLOR: always

jobs:
  build:
    runs-on: ${{matrix.os}}
    strategy:
      matrix:
        os: [ubuntu-20.04]
        rust: [nightly]
    steps:
    - name: Install dependencies
      run: sudo apt-get install -y libhwloc-dev
    - name: Set up a Rust toolchain
      uses: hecrj/setup-rust-action@v1.0.2
      with:
        rust-version: ${{ matrix.rust }}
    - uses: actions/checkout@v2
    - name: Build
      run: cargo build --verbose
"""


class TestParseConfig:

    def test_rust_workflow(self):
        config = config_from_yaml(RUST_WORKFLOW)
        assert config.name == "Rust"
        assert config.triggers == frozenset({"push"})
        assert config.env == {"CARGO_TERM_COLOR": "always"}

        build = config.job("build")
        assert build.runs_on == "${{matrix.os}}"
        assert build.matrix == {"os": ("ubuntu-20.04",), "rust": ("nightly",)}
        assert [s.kind for s in build.steps] == [COMMAND, ACTION, ACTION, COMMAND]

        setup = build.steps[1]
        assert setup.action.name == "hecrj/setup-rust-action"
        assert setup.action.version == "v1.0.2"
        assert setup.action.params == {"rust-version": "${{ matrix.rust }}"}
        assert build.steps[2].display_name == "Run actions/checkout@v2"

    def test_on_key_read_as_boolean(self):
        # a bare `on:` is YAML 1.1 boolean true
        document = load_yaml("on: push\njobs:\n  a:\n    steps:\n      - run: echo\n")
        assert True in document
        assert parse_config(document).triggers == frozenset({"push"})

    def test_trigger_mapping(self):
        config = config_from_yaml("""
            on:
              push:
                branches: [main]
              pull_request:
            jobs:
              a:
                steps:
                  - run: echo
        """)
        assert config.triggers == frozenset({"push", "pull_request"})

    def test_list_form_jobs(self):
        config = config_from_yaml("""
            on: push
            jobs:
              - name: lint
                steps: [{run: ruff check .}]
              - name: test
                needs: lint
                steps: [{run: pytest}]
        """)
        assert config.job_names == ["lint", "test"]
        assert config.job("test").needs == ("lint",)

    def test_defaults_and_step_options(self):
        config = config_from_yaml("""
            on: push
            jobs:
              docs:
                defaults:
                  run:
                    working-directory: docs
                strategy:
                  fail-fast: true
                env:
                  DEBUG: true
                steps:
                  - run: make html
                    working-directory: site
                    env:
                      LEVEL: 2
        """)
        docs = config.job("docs")
        assert docs.cwd == "docs"
        assert docs.fail_fast is True
        assert docs.env == {"DEBUG": "true"}
        assert docs.steps[0].command.cwd == "site"
        assert docs.steps[0].env == {"LEVEL": "2"}
        assert docs.runs_on == "local"

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "nightly.yml"
        path.write_text("on: schedule\njobs:\n  a:\n    steps:\n      - run: echo\n")
        assert load_config(path).name == "nightly"


class TestMalformed:

    @pytest.mark.parametrize("document, where", [
        ("jobs:\n  a:\n    steps:\n      - run: echo\n", "on"),
        ("on: push\n", "jobs"),
        ("on: push\njobs:\n  a:\n    runs-on: local\n", "jobs.a.steps"),
        ("on: push\njobs:\n  a:\n    steps: []\n", "jobs.a.steps"),
        ("on: push\njobs:\n  a:\n    steps:\n      - name: nothing\n", "jobs.a.steps[0]"),
        ("on: push\njobs:\n  a:\n    steps:\n      - run: echo\n        uses: x@v1\n", "jobs.a.steps[0]"),
        ("on: push\njobs:\n  a:\n    steps:\n      - run: echo\n        with: {a: 1}\n", "jobs.a.steps[0]"),
        ("on: push\njobs:\n  a:\n    steps:\n      - uses: no-version\n", "jobs.a.steps[0]"),
        ("on: push\njobs:\n  a:\n    runs-on: [a, b]\n    steps:\n      - run: echo\n", "jobs.a.runs-on"),
        ("on: push\njobs:\n  a:\n    strategy:\n      matrix:\n        os: ubuntu\n    steps:\n      - run: echo\n",
         "jobs.a.strategy.matrix.os"),
        ("on: push\njobs:\n  a:\n    strategy:\n      fail-fast: maybe\n    steps:\n      - run: echo\n",
         "jobs.a.strategy.fail-fast"),
    ])
    def test_reports_location(self, document, where):
        with pytest.raises(MalformedConfig) as exc:
            parse_config(load_yaml(document), source="ci.yml")
        assert exc.value.where == where
        assert str(exc.value).startswith("ci.yml: ")

    def test_not_a_mapping(self):
        with pytest.raises(MalformedConfig):
            parse_config(["on", "push"])

    def test_invalid_yaml(self):
        with pytest.raises(MalformedConfig, match="invalid YAML"):
            load_yaml("on: [push\n")

    def test_unknown_axis_reference(self):
        with pytest.raises(MalformedConfig) as exc:
            config_from_yaml("""
                on: push
                jobs:
                  build:
                    strategy:
                      matrix:
                        os: [ubuntu]
                    steps:
                      - run: cargo +${{ matrix.rust }} build
            """)
        assert "rust" in exc.value.message
        assert exc.value.where == "jobs.build.steps[0]"

    def test_include_key_may_be_referenced(self):
        config = config_from_yaml("""
            on: push
            jobs:
              build:
                strategy:
                  matrix:
                    os: [ubuntu]
                    include:
                      - os: ubuntu
                        flags: --release
                steps:
                  - run: cargo build ${{ matrix.flags }}
        """)
        assert config.job("build").known_axes == frozenset({"os", "flags"})

    def test_unsupported_namespace(self):
        with pytest.raises(MalformedConfig, match="secrets"):
            config_from_yaml("""
                on: push
                jobs:
                  a:
                    steps:
                      - run: echo ${{ secrets.TOKEN }}
            """)

    def test_duplicate_axis_value(self):
        with pytest.raises(MalformedConfig, match="more than once"):
            config_from_yaml("""
                on: push
                jobs:
                  a:
                    strategy:
                      matrix:
                        os: [ubuntu, ubuntu]
                    steps:
                      - run: echo
            """)

    def test_unknown_need(self):
        with pytest.raises(MalformedConfig) as exc:
            config_from_yaml("""
                on: push
                jobs:
                  test:
                    needs: build
                    steps:
                      - run: pytest
            """)
        assert exc.value.where == "jobs.test.needs"

    def test_needs_cycle(self):
        with pytest.raises(MalformedConfig, match="cycle"):
            config_from_yaml("""
                on: push
                jobs:
                  a:
                    needs: b
                    steps: [{run: echo a}]
                  b:
                    needs: a
                    steps: [{run: echo b}]
            """)


class TestDuplicateJobs:

    def test_duplicate_yaml_keys(self):
        with pytest.raises(DuplicateJobName) as exc:
            config_from_yaml("""
                on: push
                jobs:
                  build:
                    steps: [{run: make}]
                  build:
                    steps: [{run: make install}]
            """, source="dup.yml")
        assert exc.value.name == "build"
        assert exc.value.source == "dup.yml"

    def test_duplicate_list_names(self):
        with pytest.raises(DuplicateJobName):
            config_from_yaml("""
                on: push
                jobs:
                  - name: build
                    steps: [{run: make}]
                  - name: build
                    steps: [{run: make}]
            """)


class TestLoadConfig:

    def test_python_workflow(self, tmp_path):
        path = tmp_path / "matrixci_workflow.py"
        path.write_text(
            "from matrixci.dsl import job, pipeline, sh\n"
            "\n"
            "def workflow():\n"
            "    return pipeline(job('build', sh('make')), on=['push'], name='py')\n"
        )
        config = load_config(path)
        assert config.name == "py"
        assert config.job_names == ["build"]

    def test_python_mapping(self, tmp_path):
        path = tmp_path / "wf.py"
        path.write_text("PIPELINE = {'on': ['push'], 'jobs': {'a': {'steps': [{'run': 'echo'}]}}}\n")
        assert load_config(path).job_names == ["a"]

    def test_python_without_workflow(self, tmp_path):
        path = tmp_path / "wf.py"
        path.write_text("x = 1\n")
        with pytest.raises(TypeError):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "ci.toml"
        path.write_text("")
        with pytest.raises(ValueError):
            load_config(path)
