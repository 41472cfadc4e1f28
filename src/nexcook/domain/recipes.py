import logging
import threading
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from nexcook.domain.errors import RecipeNotFound, ValidationError
from nexcook.domain.events import Listeners

logger = logging.getLogger(__name__)


def _pick(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


@dataclass(frozen=True)
class ProcessingStep:
    module_id: str
    operation: str
    duration: Optional[float] = None  # seconds
    speed: Optional[float] = None  # percentage
    temperature: Optional[float] = None  # celsius

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingStep":
        return cls(
            module_id=str(_pick(data, "module_id", "moduleId")),
            operation=str(data.get("operation", "")),
            duration=data.get("duration"),
            speed=data.get("speed"),
            temperature=data.get("temperature"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out = {"moduleId": self.module_id, "operation": self.operation}
        for key in ("duration", "speed", "temperature"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True)
class Ingredient:
    id: str
    name: str
    quantity: float
    unit: str
    module_id: str
    processing_steps: List[ProcessingStep] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ingredient":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            quantity=data.get("quantity", 0),
            unit=str(data.get("unit", "")),
            module_id=str(_pick(data, "module_id", "moduleId")),
            processing_steps=[
                ProcessingStep.from_dict(s)
                for s in (_pick(data, "processing_steps", "processingSteps") or [])
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "moduleId": self.module_id,
        }
        if self.processing_steps:
            out["processingSteps"] = [s.to_dict() for s in self.processing_steps]
        return out


@dataclass
class Recipe:
    id: str
    name: str
    category: str
    cooking_time: float  # minutes
    ingredients: List[Ingredient] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    description: str = ""
    rating: float = 0.0
    times_cooked: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recipe":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            category=str(data.get("category", "")),
            cooking_time=float(_pick(data, "cooking_time", "cookingTime", 0)),
            ingredients=[Ingredient.from_dict(i) for i in data.get("ingredients", [])],
            steps=[str(s) for s in data.get("steps", [])],
            description=str(data.get("description", "")),
            rating=float(data.get("rating", 0.0)),
            times_cooked=int(_pick(data, "times_cooked", "timesCooked", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "cookingTime": self.cooking_time,
            "ingredients": [i.to_dict() for i in self.ingredients],
            "steps": list(self.steps),
            "rating": self.rating,
            "timesCooked": self.times_cooked,
        }

    def copy(self) -> "Recipe":
        return replace(self, ingredients=list(self.ingredients), steps=list(self.steps))


def required_modules(recipe: Recipe) -> List[str]:
    """Ordered union of every ingredient and processing-step module id."""
    seen: Dict[str, None] = {}
    for ingredient in recipe.ingredients:
        seen.setdefault(ingredient.module_id, None)
        for step in ingredient.processing_steps:
            seen.setdefault(step.module_id, None)
    return list(seen)


@dataclass(frozen=True)
class Customization:
    salt: int = 50
    spice: int = 50
    water: int = 50
    oil: int = 50
    temperature: int = 50
    grinding: int = 50
    chopping: int = 50

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Customization":
        """Build from raw input, clamping every knob into [0, 100]."""
        data = data or {}
        values = {}
        for f in fields(cls):
            raw = data.get(f.name, f.default)
            try:
                value = int(round(float(raw)))
            except (TypeError, ValueError):
                raise ValidationError(f"customization.{f.name} must be a number, got {raw!r}")
            values[f.name] = max(0, min(100, value))
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class RecipeCatalog:
    """Read-mostly recipe store; the only mutation is times_cooked on completion."""

    def __init__(
        self,
        recipes: Iterable[Recipe],
        persist: Optional[Callable[[List[Recipe]], None]] = None,
    ) -> None:
        self._recipes: Dict[str, Recipe] = {}
        for recipe in recipes:
            if recipe.id in self._recipes:
                raise ValueError(f"Duplicate recipe id {recipe.id!r}")
            self._recipes[recipe.id] = recipe.copy()
        self._lock = threading.Lock()
        self._persist = persist
        self._listeners: Listeners[Callable[[List[Recipe]], None]] = Listeners("recipes.change")

    def get(self, recipe_id: str) -> Optional[Recipe]:
        with self._lock:
            recipe = self._recipes.get(recipe_id)
            return recipe.copy() if recipe else None

    def require(self, recipe_id: str) -> Recipe:
        recipe = self.get(recipe_id)
        if recipe is None:
            raise RecipeNotFound(recipe_id)
        return recipe

    def list(self) -> List[Recipe]:
        with self._lock:
            return [r.copy() for r in self._recipes.values()]

    def by_category(self, category: str) -> List[Recipe]:
        return [r for r in self.list() if r.category == category]

    def search(self, query: str) -> List[Recipe]:
        q = query.lower()
        return [r for r in self.list() if q in r.name.lower() or q in r.description.lower()]

    def validate_modules(self, known_module_ids: Iterable[str]) -> None:
        known = set(known_module_ids)
        for recipe in self.list():
            missing = [m for m in required_modules(recipe) if m not in known]
            if missing:
                raise ValidationError(
                    f"Recipe {recipe.id!r} references unknown modules: {', '.join(missing)}"
                )

    def increment_times_cooked(self, recipe_id: str) -> Recipe:
        with self._lock:
            recipe = self._recipes.get(recipe_id)
            if recipe is None:
                raise RecipeNotFound(recipe_id)
            recipe.times_cooked += 1
            snapshot = recipe.copy()
            everything = [r.copy() for r in self._recipes.values()]
        logger.info("Recipe %s cooked %d times", recipe_id, snapshot.times_cooked)
        if self._persist is not None:
            try:
                self._persist(everything)
            except Exception:
                logger.exception("Recipe persistence hook failed")
        self._listeners.notify(everything)
        return snapshot

    def on_recipes_change(self, listener: Callable[[List[Recipe]], None]) -> Callable[[], None]:
        return self._listeners.subscribe(listener)
