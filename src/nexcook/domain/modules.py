import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from nexcook.domain.errors import ModuleNotFound
from nexcook.domain.events import Listeners

logger = logging.getLogger(__name__)


class ModuleStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class ModuleType(str, Enum):
    DISPENSER = "dispenser"
    PROCESSOR = "processor"
    HEATER = "heater"
    CLEANER = "cleaner"


class OperationMode(str, Enum):
    CONTINUOUS = "continuous"
    BATCH = "batch"
    TIMED = "timed"


def compute_status(current_level: int, threshold: int) -> ModuleStatus:
    if current_level <= 0:
        return ModuleStatus.CRITICAL
    if current_level <= threshold:
        return ModuleStatus.WARNING
    return ModuleStatus.NORMAL


def _pick(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Module:
    id: str
    name: str
    current_level: int
    max_level: int
    threshold: int
    unit: str
    module_type: ModuleType
    operation_mode: Optional[OperationMode] = None
    status: ModuleStatus = ModuleStatus.NORMAL
    last_updated: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Module":
        max_level = int(_pick(data, "max_level", "maxLevel"))
        current = int(_pick(data, "current_level", "currentLevel", max_level))
        threshold = int(data.get("threshold", 0))
        if max_level <= 0:
            raise ValueError(f"Module {data.get('id')!r}: max_level must be > 0")
        current = max(0, min(max_level, current))
        mode = _pick(data, "operation_mode", "operationMode")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            current_level=current,
            max_level=max_level,
            threshold=threshold,
            unit=str(data.get("unit", "")),
            module_type=ModuleType(_pick(data, "module_type", "moduleType")),
            operation_mode=OperationMode(mode) if mode else None,
            status=compute_status(current, threshold),
            last_updated=_pick(data, "last_updated", "lastUpdated"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "currentLevel": self.current_level,
            "maxLevel": self.max_level,
            "threshold": self.threshold,
            "unit": self.unit,
            "status": self.status.value,
            "moduleType": self.module_type.value,
            "operationMode": self.operation_mode.value if self.operation_mode else None,
            "lastUpdated": self.last_updated,
        }


@dataclass(frozen=True)
class ModuleAlert:
    module_id: str
    module_name: str
    status: ModuleStatus
    current_level: int
    threshold: int
    max_level: int
    unit: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "moduleId": self.module_id,
            "moduleName": self.module_name,
            "status": self.status.value,
            "currentLevel": self.current_level,
            "threshold": self.threshold,
            "maxLevel": self.max_level,
            "unit": self.unit,
            "timestamp": self.timestamp,
        }


class ModuleRegistry:
    """
    Authoritative in-memory model of every appliance module.

    Levels only change through apply_delta / refill; the hardware alert path
    only touches status. Readers always get copies.
    """

    def __init__(
        self,
        modules: Iterable[Module],
        persist: Optional[Callable[[List[Module]], None]] = None,
    ) -> None:
        self._modules: Dict[str, Module] = {}
        for module in modules:
            if module.id in self._modules:
                raise ValueError(f"Duplicate module id {module.id!r}")
            self._modules[module.id] = replace(module)
        self._lock = threading.RLock()
        self._persist = persist
        self._module_listeners: Listeners[Callable[[List[Module]], None]] = Listeners("modules.change")
        self._alert_listeners: Listeners[Callable[[List[ModuleAlert]], None]] = Listeners("modules.alert")

    # ---------------------------------------------------
    # Reads
    # ---------------------------------------------------
    def get(self, module_id: str) -> Optional[Module]:
        with self._lock:
            module = self._modules.get(module_id)
            return replace(module) if module else None

    def require(self, module_id: str) -> Module:
        module = self.get(module_id)
        if module is None:
            raise ModuleNotFound(module_id)
        return module

    def list(self) -> List[Module]:
        with self._lock:
            return [replace(m) for m in self._modules.values()]

    def __contains__(self, module_id: object) -> bool:
        with self._lock:
            return module_id in self._modules

    def alerts(self) -> List[Module]:
        return [m for m in self.list() if m.status is not ModuleStatus.NORMAL]

    def check_availability(self, module_ids: Iterable[str]) -> List[str]:
        """Subset of module_ids that cannot be used right now (critical or unknown)."""
        unavailable: List[str] = []
        with self._lock:
            for module_id in module_ids:
                module = self._modules.get(module_id)
                if module is None or module.status is ModuleStatus.CRITICAL:
                    unavailable.append(module_id)
        return unavailable

    # ---------------------------------------------------
    # Mutations
    # ---------------------------------------------------
    def apply_delta(self, module_id: str, change: int) -> Optional[Module]:
        updated = self.apply_deltas([(module_id, change)])
        return updated[0] if updated else None

    def apply_deltas(self, deltas: Iterable[Tuple[str, int]]) -> List[Module]:
        """Apply signed level changes; unknown ids are reported and skipped."""
        updated: List[Module] = []
        with self._lock:
            for module_id, change in deltas:
                module = self._modules.get(module_id)
                if module is None:
                    logger.warning("%s", ModuleNotFound(module_id))
                    continue
                module.current_level = max(0, min(module.max_level, module.current_level + int(change)))
                module.status = compute_status(module.current_level, module.threshold)
                module.last_updated = _now_iso()
                updated.append(replace(module))
        self._commit(updated)
        return updated

    def apply_status_alert(self, module_id: str, alert: bool) -> Optional[Module]:
        updated = self.apply_status_alerts([(module_id, alert)])
        return updated[0] if updated else self.get(module_id)

    def apply_status_alerts(self, alerts: Iterable[Tuple[str, bool]]) -> List[Module]:
        """
        Hardware override: alert forces critical regardless of level,
        a cleared alert forces normal. Only real status changes are reported.
        """
        updated: List[Module] = []
        with self._lock:
            for module_id, alert in alerts:
                module = self._modules.get(module_id)
                if module is None:
                    logger.warning("%s", ModuleNotFound(module_id))
                    continue
                new_status = ModuleStatus.CRITICAL if alert else ModuleStatus.NORMAL
                if module.status is new_status:
                    continue
                module.status = new_status
                module.last_updated = _now_iso()
                updated.append(replace(module))
        self._commit(updated)
        return updated

    def refill(self, module_id: str) -> Module:
        with self._lock:
            module = self._modules.get(module_id)
            if module is None:
                raise ModuleNotFound(module_id)
            self._fill(module)
            snapshot = replace(module)
        self._commit([snapshot])
        return snapshot

    def refill_all(self) -> List[Module]:
        # Single lock hold, single notification.
        with self._lock:
            for module in self._modules.values():
                self._fill(module)
            updated = [replace(m) for m in self._modules.values()]
        self._commit(updated)
        return updated

    @staticmethod
    def _fill(module: Module) -> None:
        module.current_level = module.max_level
        module.status = compute_status(module.current_level, module.threshold)
        module.last_updated = _now_iso()

    # ---------------------------------------------------
    # Notifications
    # ---------------------------------------------------
    def on_modules_change(self, listener: Callable[[List[Module]], None]) -> Callable[[], None]:
        return self._module_listeners.subscribe(listener)

    def on_alerts(self, listener: Callable[[List[ModuleAlert]], None]) -> Callable[[], None]:
        return self._alert_listeners.subscribe(listener)

    def _commit(self, updated: List[Module]) -> None:
        if not updated:
            return
        everything = self.list()
        if self._persist is not None:
            try:
                self._persist(everything)
            except Exception:
                logger.exception("Module persistence hook failed")
        self._module_listeners.notify(everything)

        alerts = [
            ModuleAlert(
                module_id=m.id,
                module_name=m.name,
                status=m.status,
                current_level=m.current_level,
                threshold=m.threshold,
                max_level=m.max_level,
                unit=m.unit,
                timestamp=m.last_updated or _now_iso(),
            )
            for m in updated
            if m.status is not ModuleStatus.NORMAL
        ]
        if alerts:
            for alert in alerts:
                logger.warning(
                    "Module %s is %s (%s/%s %s)",
                    alert.module_id, alert.status.value, alert.current_level, alert.max_level, alert.unit,
                )
            self._alert_listeners.notify(alerts)
