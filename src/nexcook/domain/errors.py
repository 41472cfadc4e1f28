class NexcookError(Exception):
    """Base class for every error raised by the cooking core."""


class TransportError(NexcookError):
    """Serial port not open, write failure or device unreachable."""


class ParseError(NexcookError):
    """Malformed or unrecognised inbound line. Never fatal."""


class ValidationError(NexcookError):
    """Request rejected before any state was touched."""


class RecipeNotFound(ValidationError):
    def __init__(self, recipe_id: str) -> None:
        super().__init__(f"Recipe '{recipe_id}' not found")
        self.recipe_id = recipe_id


class ModuleNotFound(ValidationError):
    def __init__(self, module_id: str) -> None:
        super().__init__(f"Module '{module_id}' not found")
        self.module_id = module_id


class InternalStateError(NexcookError):
    """Inconsistent internal state; the queue fails closed when it sees one."""
