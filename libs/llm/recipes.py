"""Prompt recipes per AI operation, loaded from ``config/recipes/*.yaml``."""

from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any, Optional

import yaml

from libs.core.config import get_settings
from libs.core.exceptions import ConfigurationError


@dataclass
class Recipe:
    """Prompt configuration for one operation."""

    name: str
    operation: str
    version: str = "1.0.0"
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 4096
    system_prompt: str = ""
    user_prompt_template: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Path) -> "Recipe":
        """Load recipe from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)

        return cls(
            name=data.get("name", path.stem),
            operation=data.get("operation", path.stem),
            version=str(data.get("version", "1.0.0")),
            model=data.get("model"),
            temperature=data.get("temperature", 0.3),
            max_tokens=data.get("max_tokens", 4096),
            system_prompt=data.get("system_prompt", "").strip(),
            user_prompt_template=data.get("user_prompt_template", ""),
            extra=data.get("extra", {}),
        )

    def render(self, **values: Any) -> str:
        """Fill ``$placeholders`` in the user prompt; unknown ones are left as-is."""
        return Template(self.user_prompt_template).safe_substitute(
            {key: "" if value is None else value for key, value in values.items()}
        ).strip()


class RecipeLoader:
    """Loads and caches recipe configurations."""

    def __init__(self, recipes_dir: Optional[Path] = None):
        self.recipes_dir = recipes_dir or get_settings().config_dir / "recipes"
        self._cache: dict[str, Recipe] = {}

    def load(self, name: str) -> Recipe:
        """
        Load a recipe by name.

        Args:
            name: Recipe name (without .yaml extension)

        Raises:
            ConfigurationError: If recipe file doesn't exist
        """
        if name in self._cache:
            return self._cache[name]

        path = self.recipes_dir / f"{name}.yaml"
        if not path.exists():
            raise ConfigurationError(f"Recipe not found: {path}", {"recipe": name})

        recipe = Recipe.from_yaml(path)
        self._cache[name] = recipe
        return recipe

    def clear_cache(self):
        """Clear recipe cache."""
        self._cache.clear()
