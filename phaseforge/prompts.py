"""
PHASEFORGE Prompt Registry

Templates are addressed as `<agent>/<name>` (e.g. `code/task`). Built-in
templates ship in `phaseforge/templates/<agent>/<name>.md.j2`; each
directory listed under `prompts.include` is loaded afterwards and
overrides built-ins with the same name.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import DictLoader, Environment, TemplateError
from loguru import logger

from phaseforge.errors import PromptError

BUILTIN_TEMPLATE_DIR = Path(__file__).parent / "templates"
TEMPLATE_SUFFIX = ".md.j2"


def _template_name(root: Path, path: Path) -> str:
    relative = path.relative_to(root).as_posix()
    return relative[: -len(TEMPLATE_SUFFIX)]


class PromptManager:
    def __init__(self, include: list[Path] | None = None, base_dir: Path | None = None):
        self._sources: dict[str, str] = {}
        self.load_dir(BUILTIN_TEMPLATE_DIR)
        for directory in include or []:
            if base_dir is not None and not directory.is_absolute():
                directory = base_dir / directory
            self.load_dir(directory)

        self._env = Environment(
            loader=DictLoader(self._sources),
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )

    def has(self, name: str) -> bool:
        return name in self._sources

    def load_dir(self, directory: Path) -> int:
        """Register every template under `directory`. Later loads win."""
        if not directory.is_dir():
            raise PromptError(f"template directory not found: {directory}")

        count = 0
        for path in sorted(directory.rglob(f"*{TEMPLATE_SUFFIX}")):
            name = _template_name(directory, path)
            if name in self._sources and directory != BUILTIN_TEMPLATE_DIR:
                logger.debug(f"[PROMPTS] Overriding {name} from {path}")
            self._sources[name] = path.read_text(encoding="utf-8")
            count += 1
        return count

    def render(self, name: str, context: dict[str, Any]) -> str:
        if name not in self._sources:
            raise PromptError(f"unknown template: {name}")
        try:
            return self._env.get_template(name).render(**context)
        except TemplateError as e:
            raise PromptError(f"failed to render {name}: {e}") from e
