import io
from pathlib import Path

import pytest
import yaml
from rich.console import Console

import picobot.onboarding as onboarding
from picobot.onboarding import run_onboarding_wizard

DEFAULT = object()


def _script(monkeypatch, prompts: list, confirms: list[bool]) -> None:
    prompt_answers = list(prompts)
    confirm_answers = list(confirms)

    def fake_prompt(*args, **kwargs):
        answer = prompt_answers.pop(0)
        return kwargs.get("default", "") if answer is DEFAULT else answer

    def fake_confirm(*args, **kwargs):
        return confirm_answers.pop(0)

    monkeypatch.setattr(onboarding, "can_run_onboarding_interactively", lambda: True)
    monkeypatch.setattr(onboarding.Prompt, "ask", fake_prompt)
    monkeypatch.setattr(onboarding.Confirm, "ask", fake_confirm)


def _console() -> Console:
    return Console(file=io.StringIO(), width=120)


def test_wizard_writes_config(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    workspace = tmp_path / "ws"
    _script(
        monkeypatch,
        prompts=["2", DEFAULT, "sk-test", DEFAULT, str(workspace), "123:abc", "alice, 42"],
        confirms=[True, True],
    )

    saved = run_onboarding_wizard(target, console=_console())

    assert saved == target
    data = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert data["model"]["provider"] == "openai"
    assert data["model"]["model"] == "gpt-5-mini"
    assert data["model"]["api_key"] == "sk-test"
    assert data["model"]["base_url"] == "https://api.openai.com/v1"
    assert data["telegram"]["token"] == "123:abc"
    assert data["telegram"]["allowed_users"] == ["alice", "42"]
    assert workspace.is_dir()


def test_wizard_skips_api_key_and_telegram_for_local_setup(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    _script(
        monkeypatch,
        prompts=["3", DEFAULT, DEFAULT, str(tmp_path / "ws")],
        confirms=[False, True],
    )

    run_onboarding_wizard(target, console=_console())

    data = yaml.safe_load(target.read_text(encoding="utf-8"))
    assert data["model"]["provider"] == "ollama"
    assert data["model"]["model"] == "llama3.2"
    assert data["model"]["base_url"] == "http://127.0.0.1:11434/v1"
    assert data["telegram"]["enabled"] is False


def test_declining_save_writes_nothing(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    _script(
        monkeypatch,
        prompts=["1", DEFAULT, "sk", DEFAULT, str(tmp_path / "ws")],
        confirms=[False, False],
    )

    assert run_onboarding_wizard(target, console=_console()) is None
    assert not target.exists()


def test_wizard_requires_terminal(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(onboarding, "can_run_onboarding_interactively", lambda: False)

    with pytest.raises(RuntimeError):
        run_onboarding_wizard(tmp_path / "config.yaml", console=_console())
