"""Load and render system prompt templates from disk.

Supports a two-layer override system:
  1. Personal overrides in ``~/.picobot/prompts/`` (highest priority)
  2. Packaged defaults in ``picobot/prompts/``

The main agent prompt is ``AGENTS.md`` (required) + ``SOUL.md`` + ``TOOLS.md``;
subagents get ``SUBAGENT.md`` + ``TOOLS.md``. ``TOOLS.md`` may contain a
``{tools_list}`` placeholder.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Mapping

from picobot.exceptions import ConfigurationError
from picobot.logging import get_logger

if TYPE_CHECKING:
    from picobot.config import AgentTypeConfig
    from picobot.tools.registry import ToolFilter, ToolRegistry

log = get_logger(__name__)

_DEFAULT_BASE_DIR = Path(__file__).resolve().parent / "prompts"
_PERSONAL_DIR = Path("~/.picobot/prompts").expanduser()


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render prompt templates with personal-override support."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = Path(base_dir).expanduser().resolve() if base_dir else _DEFAULT_BASE_DIR
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    def _path(self, name: str) -> Path:
        """Return the effective file path, preferring the personal override."""
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def exists(self, name: str) -> bool:
        return self._path(name).is_file()

    def load(self, name: str, *, required: bool = True) -> str:
        """Load template content by filename; optional templates yield ``""``."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            if required:
                raise ConfigurationError(
                    f"{name} is required in prompts directory: {self.personal_dir} or {self.base_dir}"
                )
            log.debug("Prompt template not found, skipping", template=name)
            return ""
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, *, required: bool = True, **variables: object) -> str:
        """Render template with simple ``str.format`` placeholder substitution."""
        template = self.load(name, required=required)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))

    def clear_cache(self) -> None:
        self._cache.clear()


def build_system_prompt(
    loader: InstructionLoader,
    registry: ToolRegistry,
    tool_filter: ToolFilter | None = None,
) -> str:
    """Main agent prompt: AGENTS.md + SOUL.md + TOOLS.md."""
    prompts = [loader.load("AGENTS.md")]

    soul = loader.load("SOUL.md", required=False)
    if soul:
        prompts.append(soul)

    tools = loader.render("TOOLS.md", required=False, tools_list=registry.tools_list(tool_filter))
    if tools:
        prompts.append(tools)

    return "\n\n".join(prompts)


def build_subagent_system_prompt(
    loader: InstructionLoader,
    registry: ToolRegistry,
    agent_type: AgentTypeConfig,
    tool_filter: ToolFilter | None = None,
) -> str:
    """Subagent prompt: SUBAGENT.md + TOOLS.md, scoped to the agent's tools."""
    prompts: list[str] = []

    subagent = loader.render(
        "SUBAGENT.md",
        required=False,
        agent_name=agent_type.name,
        agent_description=agent_type.description,
    )
    if subagent:
        prompts.append(subagent)

    tools = loader.render("TOOLS.md", required=False, tools_list=registry.tools_list(tool_filter))
    if tools:
        prompts.append(tools)

    return "\n\n".join(prompts)
