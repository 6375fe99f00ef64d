from __future__ import annotations

import json

import pytest
import yaml

from grind import (
    DEFAULT_CONFIG_YAML,
    CheckSpec,
    ConfigError,
    GrindConfig,
    ensure_config_defaults,
    load_config,
    matches_any,
    parse_config,
    resource_key_for,
)


def test_defaults_match_original_hook():
    config = parse_config({})

    assert config.threshold == 5
    assert config.namespace == "grind"
    assert config.match == ("src/**/*", "tests/**/*")
    assert config.check_names == ["lint", "test"]
    assert config.checks[0].cmd == "npx eslint {file} --format json"


def test_ensure_defaults_writes_loadable_files(tmp_path):
    grind_dir = tmp_path / ".grind"
    ensure_config_defaults(grind_dir)

    assert yaml.safe_load((grind_dir / "grind.yaml").read_text(encoding="utf-8")) == DEFAULT_CONFIG_YAML
    assert json.loads((grind_dir / "state.json").read_text(encoding="utf-8")) == {}
    assert load_config(grind_dir / "grind.yaml") == parse_config({})


def test_ensure_defaults_keeps_existing_files(tmp_path):
    grind_dir = tmp_path / ".grind"
    grind_dir.mkdir()
    (grind_dir / "grind.yaml").write_text("threshold: 2\n", encoding="utf-8")
    (grind_dir / "state.json").write_text('{"grind:a:iterations": 1}', encoding="utf-8")

    ensure_config_defaults(grind_dir)

    assert load_config(grind_dir / "grind.yaml").threshold == 2
    assert json.loads((grind_dir / "state.json").read_text(encoding="utf-8")) == {"grind:a:iterations": 1}


def test_load_custom_checks(tmp_path):
    path = tmp_path / "grind.yaml"
    path.write_text(
        """
threshold: 3
parallel: false
checks:
  - name: ruff
    cmd: ruff check {file}
  - name: pytest
    cmd: pytest -q
    timeout_sec: 600
""",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config == GrindConfig(
        threshold=3,
        namespace="grind",
        match=("src/**/*", "tests/**/*"),
        parallel=False,
        max_diagnostic_chars=8000,
        checks=(
            CheckSpec(name="ruff", cmd="ruff check {file}", timeout_sec=None),
            CheckSpec(name="pytest", cmd="pytest -q", timeout_sec=600),
        ),
    )


@pytest.mark.parametrize(
    "obj",
    [
        {"threshold": 0},
        {"threshold": "5"},
        {"threshold": True},
        {"checks": []},
        {"checks": [{"name": "lint"}]},
        {"checks": [{"name": "", "cmd": "true"}]},
        {"unknown_key": 1},
        ["not", "a", "mapping"],
    ],
)
def test_invalid_config_is_rejected(obj):
    with pytest.raises(ConfigError):
        parse_config(obj)


def test_duplicate_check_names_are_rejected():
    with pytest.raises(ConfigError, match="Duplicate check name"):
        parse_config({"checks": [{"name": "lint", "cmd": "a"}, {"name": "lint", "cmd": "b"}]})


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match="grind init"):
        load_config(tmp_path / "nope.yaml")


def test_unparseable_yaml(tmp_path):
    path = tmp_path / "grind.yaml"
    path.write_text("checks: [unclosed", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "grind.yaml"
    path.write_text("", encoding="utf-8")

    assert load_config(path) == parse_config({})


def test_render_quotes_file_path():
    spec = CheckSpec(name="lint", cmd="eslint {file} --format json")

    assert spec.render("src/my file.ts") == "eslint 'src/my file.ts' --format json"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("src/a.ts", True),
        ("src/deep/nested/a.ts", True),
        ("tests/a.test.ts", True),
        ("README.md", False),
        ("lib/src/a.ts", False),
    ],
)
def test_match_patterns(path, expected):
    assert matches_any(path, ["src/**/*", "tests/**/*"]) is expected


def test_resource_key_is_repo_relative(tmp_path):
    assert resource_key_for(tmp_path, "src/a.ts") == "src/a.ts"
    assert resource_key_for(tmp_path, str(tmp_path / "src" / "a.ts")) == "src/a.ts"
    assert resource_key_for(tmp_path, "./src/../src/a.ts") == "src/a.ts"
