from pathlib import Path

import yaml

import picobot.config as config_module
from picobot.config import Config, get_config, set_config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: openai\n"
            "  model: gpt-4o-mini\n"
            "telegram:\n"
            "  allowed_users:\n"
            "    - '12345'\n"
            "    - alice\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "openai"
    assert cfg.model.model == "gpt-4o-mini"
    assert cfg.telegram.allowed_users == ["12345", "alice"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "agent:\n"
            "  max_iterations: 7\n"
            "subagents:\n"
            "  question_timeout_seconds: 30\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.agent.max_iterations == 7
    assert cfg.subagents.question_timeout_seconds == 30
    assert "research" in cfg.subagents.agent_types


def test_missing_file_gives_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.model.provider == "openrouter"
    assert cfg.agent.max_iterations == 15
    assert cfg.session.max_messages == 50
    assert cfg.agent.tools.categories == ["general"]
    assert "subagent" in cfg.subagents.denied_tools


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("PICOBOT_AGENT__MAX_ITERATIONS", "3")
    monkeypatch.setenv("PICOBOT_TELEGRAM__TOKEN", "123:abc")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 3
    assert cfg.telegram.token == "123:abc"


def test_save_round_trip(tmp_path: Path):
    cfg = Config(model={"model": "openai/gpt-5-mini"}, workspace={"path": "ws"})

    path = cfg.save(tmp_path / "nested" / "config.yaml")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data["model"]["model"] == "openai/gpt-5-mini"
    assert Config.from_yaml(path).workspace.path == "ws"


def test_relative_workspace_is_anchored_to_cwd(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    cfg = Config(workspace={"path": "ws"})

    assert cfg.resolved_workspace_path() == (tmp_path / "ws").resolve()


def test_set_config_replaces_global():
    original = get_config()
    replacement = Config(agent={"max_iterations": 4})
    try:
        set_config(replacement)
        assert get_config() is replacement
    finally:
        set_config(original)
