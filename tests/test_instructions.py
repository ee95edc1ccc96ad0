from pathlib import Path

import pytest

from picobot.config import AgentTypeConfig
from picobot.exceptions import ConfigurationError
from picobot.instructions import InstructionLoader, build_subagent_system_prompt, build_system_prompt
from picobot.tools.clock import DateTimeTool
from picobot.tools.registry import ToolFilter, ToolRegistry


def _write(directory: Path, name: str, content: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / name).write_text(content, encoding="utf-8")


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(DateTimeTool())
    return registry


def test_personal_prompt_overrides_packaged_default(tmp_path: Path):
    base = tmp_path / "base"
    personal = tmp_path / "personal"
    _write(base, "AGENTS.md", "base agents")
    _write(base, "SOUL.md", "base soul")
    _write(personal, "AGENTS.md", "  my agents  \n")

    loader = InstructionLoader(base_dir=base, personal_dir=personal)

    assert loader.load("AGENTS.md") == "my agents"
    assert loader.load("SOUL.md") == "base soul"


def test_missing_required_template_raises(tmp_path: Path):
    loader = InstructionLoader(base_dir=tmp_path / "empty", personal_dir=tmp_path / "none")

    with pytest.raises(ConfigurationError, match="AGENTS.md"):
        loader.load("AGENTS.md")
    assert loader.load("SOUL.md", required=False) == ""


def test_render_keeps_unknown_placeholders(tmp_path: Path):
    _write(tmp_path, "T.md", "Hello {name}, {unknown}")
    loader = InstructionLoader(base_dir=tmp_path, personal_dir=tmp_path / "none")

    assert loader.render("T.md", name="Ana") == "Hello Ana, {unknown}"


def test_system_prompt_joins_sections_and_lists_tools(tmp_path: Path):
    _write(tmp_path, "AGENTS.md", "You are picobot.")
    _write(tmp_path, "TOOLS.md", "Tools:\n{tools_list}")
    loader = InstructionLoader(base_dir=tmp_path, personal_dir=tmp_path / "none")

    prompt = build_system_prompt(loader, _registry())

    assert prompt.startswith("You are picobot.\n\nTools:")
    assert "- `get_datetime`:" in prompt


def test_subagent_prompt_names_the_agent_and_scopes_tools(tmp_path: Path):
    _write(tmp_path, "SUBAGENT.md", "# {agent_name}\n\n{agent_description}")
    _write(tmp_path, "TOOLS.md", "{tools_list}")
    loader = InstructionLoader(base_dir=tmp_path, personal_dir=tmp_path / "none")
    agent_type = AgentTypeConfig(name="Researcher", description="Finds things.")

    prompt = build_subagent_system_prompt(
        loader,
        _registry(),
        agent_type,
        ToolFilter(exclude=["get_datetime"]),
    )

    assert prompt == "# Researcher\n\nFinds things."


def test_packaged_prompts_are_present():
    loader = InstructionLoader(personal_dir=Path("/nonexistent-picobot-prompts"))

    assert loader.exists("AGENTS.md")
    assert "{tools_list}" in loader.load("TOOLS.md")
