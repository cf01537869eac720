"""Markdown rendering from the templates shipped with the package."""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

# Allowlist of valid template names (shipped with package)
ALLOWED_TEMPLATES = frozenset([
    "handoff.md.j2",
    "recovery.md.j2",
])

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class TemplateRenderer:
    """Render package templates in a sandboxed Jinja2 environment."""

    def __init__(self, template_dir: Path = TEMPLATE_DIR):
        # StrictUndefined raises on undefined variables (catches typos)
        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,  # Markdown, not HTML
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["plural"] = _plural

    def render(self, template_name: str, **context: Any) -> str:
        if template_name not in ALLOWED_TEMPLATES:
            raise ValueError(
                f"Unknown template '{template_name}'. Allowed: {sorted(ALLOWED_TEMPLATES)}"
            )
        return self.env.get_template(template_name).render(**context)
