import logging
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from nexcook.domain.modules import Module
from nexcook.domain.recipes import Recipe

logger = logging.getLogger(__name__)


@dataclass
class Catalog:
    modules: List[Module]
    recipes: List[Recipe]


def _bundled_yaml() -> str:
    return resources.files("nexcook").joinpath("data/catalog.yaml").read_text(encoding="utf-8")


def _parse(data: Dict[str, Any]) -> Catalog:
    return Catalog(
        modules=[Module.from_dict(m) for m in data.get("modules") or []],
        recipes=[Recipe.from_dict(r) for r in data.get("recipes") or []],
    )


def load_catalog(path: Optional[str] = None) -> Catalog:
    """Load modules and recipes from `path`, or from the bundled factory catalog."""
    if path:
        raw = Path(path).read_text(encoding="utf-8")
        source = path
    else:
        raw = _bundled_yaml()
        source = "bundled catalog"
    catalog = _parse(yaml.safe_load(raw) or {})
    logger.info("Loaded %d modules and %d recipes from %s", len(catalog.modules), len(catalog.recipes), source)
    return catalog


def apply_persisted_state(catalog: Catalog, state: Dict[str, Any]) -> Catalog:
    """
    Overlay mirrored state on a freshly loaded catalog: module levels and
    recipe times_cooked survive restarts, everything else comes from the
    catalog itself. Ids absent from the catalog are ignored.
    """
    levels = {}
    for raw in state.get("modules") or []:
        try:
            levels[str(raw["id"])] = int(raw.get("currentLevel", raw.get("current_level")))
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed persisted module entry %r", raw)

    counts = {}
    for raw in state.get("recipes") or []:
        try:
            counts[str(raw["id"])] = int(raw.get("timesCooked", raw.get("times_cooked")))
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed persisted recipe entry %r", raw)

    modules = []
    for module in catalog.modules:
        if module.id in levels:
            data = module.to_dict()
            data["currentLevel"] = levels[module.id]
            module = Module.from_dict(data)
        modules.append(module)

    recipes = []
    for recipe in catalog.recipes:
        if recipe.id in counts:
            recipe = recipe.copy()
            recipe.times_cooked = counts[recipe.id]
        recipes.append(recipe)

    return Catalog(modules=modules, recipes=recipes)
