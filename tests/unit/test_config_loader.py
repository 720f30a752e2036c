"""Unit tests for the YAML configuration loader."""

from __future__ import annotations

from pathlib import Path

import yaml

from modelgate.config_loader import (
    ConfigLoader,
    deep_merge,
    get_global_config_path,
    get_project_config_path,
    init_project_config,
    load_config,
    load_yaml_file,
)


def write_yaml(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


class TestDeepMerge:
    """Test dictionary merging."""

    def test_nested_override(self):
        base = {"routing": {"default_model": "a", "fast_model": "b"}, "x": 1}
        override = {"routing": {"default_model": "c"}}
        assert deep_merge(base, override) == {
            "routing": {"default_model": "c", "fast_model": "b"},
            "x": 1,
        }

    def test_base_not_mutated(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}

    def test_non_dict_replaces(self):
        assert deep_merge({"a": {"b": 1}}, {"a": [1]}) == {"a": [1]}


class TestLoadYamlFile:
    """Test reading single files."""

    def test_missing_file(self, tmp_path):
        assert load_yaml_file(tmp_path / "absent.yaml") == {}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("routing: [unclosed")
        assert load_yaml_file(path) == {}

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        assert load_yaml_file(path) == {}


class TestHierarchy:
    """Test global, project and explicit file precedence."""

    def test_project_found_from_subdirectory(self, tmp_path):
        config_path = write_yaml(tmp_path / "repo" / ".modelgate" / "config.yaml", {"a": 1})
        nested = tmp_path / "repo" / "src" / "pkg"
        nested.mkdir(parents=True)
        assert get_project_config_path(nested) == config_path.resolve()

    def test_no_project_config(self, tmp_path):
        assert get_project_config_path(tmp_path) is None

    def test_precedence(self, tmp_path):
        write_yaml(get_global_config_path(), {"settings": {"slow_response_ms": 1000, "debug": True}})
        project = tmp_path / "repo"
        write_yaml(project / ".modelgate" / "config.yaml", {"settings": {"slow_response_ms": 2000}})
        explicit = write_yaml(tmp_path / "explicit.yaml", {"settings": {"log_level": "debug"}})

        config = load_config(project, explicit)

        assert config["settings"] == {"slow_response_ms": 2000, "debug": True, "log_level": "debug"}

    def test_init_project_config(self, tmp_path):
        path = init_project_config(tmp_path)
        assert path == tmp_path / ".modelgate" / "config.yaml"
        assert yaml.safe_load(path.read_text())["routing"]["task_model_map"]["chat"] == "openrouter-llama"

        path.write_text("settings: {}\n")
        assert init_project_config(tmp_path) == path
        assert path.read_text() == "settings: {}\n"


class TestConfigLoader:
    """Test the loader facade."""

    def test_get_dot_notation(self, tmp_path):
        write_yaml(tmp_path / ".modelgate" / "config.yaml", {"routing": {"default_model": "groq"}})
        loader = ConfigLoader(cwd=tmp_path)
        assert loader.get("routing.default_model") == "groq"
        assert loader.get("routing.fast_model", "none") == "none"

    def test_reload(self, tmp_path):
        path = write_yaml(tmp_path / ".modelgate" / "config.yaml", {"a": 1})
        loader = ConfigLoader(cwd=tmp_path)
        assert loader.get("a") == 1
        write_yaml(path, {"a": 2})
        assert loader.get("a") == 1
        assert loader.reload()["a"] == 2

    def test_catalog_overrides(self, tmp_path):
        write_yaml(
            tmp_path / ".modelgate" / "config.yaml",
            {"models": {"groq": {"temperature": 0}}, "aliases": {"fast": "groq"}, "settings": {}},
        )
        overrides = ConfigLoader(cwd=tmp_path).catalog_overrides()
        assert set(overrides) == {"models", "aliases"}

    def test_to_env_vars(self, tmp_path):
        write_yaml(
            tmp_path / ".modelgate" / "config.yaml",
            {
                "settings": {
                    "slow_response_ms": 5000,
                    "enable_provider_fallback": False,
                    "default_model": "groq",
                    "not_a_setting": 1,
                    "models_config_path": None,
                }
            },
        )
        env = ConfigLoader(cwd=tmp_path).to_env_vars()
        assert env == {
            "AI_SLOW_RESPONSE_MS": "5000",
            "AI_ENABLE_PROVIDER_FALLBACK": "false",
            "AI_DEFAULT_MODEL": "groq",
        }
