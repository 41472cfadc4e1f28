"""
Line framing and decoding for the ';'-terminated text protocol spoken by
the cooking microcontroller.

Device -> app:
    STATUS:<module>=<0|1>,...;      0 = alert, 1 = normal (hardware contract,
                                    do not "fix" the polarity)
    MODULE:<module>=<signed int>,...;
App -> device:
    RECIPE:<recipe>;
    MODULE:<module>=<signed int>,...;
    EMERGENCY:stop;
"""

import codecs
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Tuple, Union

from nexcook.domain.errors import ParseError, ValidationError

logger = logging.getLogger(__name__)

TERMINATOR = ";"

_INT_RE = re.compile(r"^[+-]?\d+$")
_RESERVED = (",", "=", ":")


class CommandKind(str, Enum):
    STATUS = "STATUS"
    MODULE = "MODULE"
    RECIPE_ACK = "RECIPE_ACK"
    EMERGENCY = "EMERGENCY"
    UNKNOWN = "UNKNOWN"


_PREFIXES = (
    ("STATUS:", CommandKind.STATUS),
    ("MODULE:", CommandKind.MODULE),
    ("RECIPE:", CommandKind.RECIPE_ACK),
    ("EMERGENCY:", CommandKind.EMERGENCY),
)


@dataclass(frozen=True)
class StatusPair:
    module_id: str
    alert: bool


@dataclass(frozen=True)
class ModuleDelta:
    module_id: str
    change: int


class LineFramer:
    """
    Accumulates an append-only byte/text stream and cuts it into messages
    at the terminator. Whatever follows the last terminator stays buffered
    until the next chunk arrives, so messages split across reads survive.
    An unterminated tail longer than max_pending characters is discarded.
    """

    def __init__(
        self,
        terminator: str = TERMINATOR,
        encoding: str = "utf-8",
        max_pending: int = 4096,
    ) -> None:
        if len(terminator) != 1:
            raise ValueError("terminator must be a single character")
        if max_pending < 1:
            raise ValueError("max_pending must be positive")
        self.terminator = terminator
        self.encoding = encoding
        self.max_pending = max_pending
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        """Append a chunk and return every message it completed, in order."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        messages: List[str] = []
        while True:
            end = self._buffer.find(self.terminator)
            if end < 0:
                break
            message = self._buffer[:end].strip()
            self._buffer = self._buffer[end + 1:]
            # Empty frames (";;" or a bare ";") carry nothing.
            if message:
                messages.append(message)

        if len(self._buffer) > self.max_pending:
            logger.warning(
                "%s", ParseError(f"Discarding {len(self._buffer)} unterminated characters (no {self.terminator!r} seen)")
            )
            self._buffer = ""
        return messages

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""


def classify(message: str) -> CommandKind:
    for prefix, kind in _PREFIXES:
        if message.startswith(prefix):
            return kind
    return CommandKind.UNKNOWN


def _body(message: str) -> str:
    return message.split(":", 1)[1] if ":" in message else ""


def _pairs(body: str) -> Iterable[Tuple[str, str]]:
    for pair in body.split(","):
        module_id, sep, value = pair.partition("=")
        module_id = module_id.strip()
        if not sep or not module_id:
            if pair.strip():
                logger.debug("Skipping malformed pair %r", pair)
            continue
        yield module_id, value.strip()


def parse_status(message: str) -> List[StatusPair]:
    """STATUS:<id>=<0|1>,... -> pairs; anything but 0/1 is skipped."""
    out: List[StatusPair] = []
    for module_id, value in _pairs(_body(message)):
        if value not in ("0", "1"):
            logger.debug("Skipping STATUS value %r for %s", value, module_id)
            continue
        out.append(StatusPair(module_id=module_id, alert=value == "0"))
    return out


def parse_module(message: str) -> List[ModuleDelta]:
    """MODULE:<id>=<signed int>,... -> deltas; non-numeric values are skipped."""
    out: List[ModuleDelta] = []
    for module_id, value in _pairs(_body(message)):
        if not _INT_RE.match(value):
            logger.debug("Skipping MODULE value %r for %s", value, module_id)
            continue
        out.append(ModuleDelta(module_id=module_id, change=int(value)))
    return out


def decode(message: str) -> Tuple[CommandKind, list]:
    """Classify a framed message and decode its payload. Never raises."""
    kind = classify(message)
    if kind is CommandKind.STATUS:
        return kind, parse_status(message)
    if kind is CommandKind.MODULE:
        return kind, parse_module(message)
    if kind is CommandKind.UNKNOWN:
        logger.warning("%s", ParseError(f"Unrecognised device line: {message!r}"))
    return kind, []


# ---------------------------------------------------
# Outbound encoding
# ---------------------------------------------------
def _check_token(value: str, label: str, reserved: Tuple[str, ...] = ()) -> str:
    value = str(value).strip()
    if not value:
        raise ValidationError(f"{label} must not be empty")
    for ch in (TERMINATOR,) + reserved:
        if ch in value:
            raise ValidationError(f"{label} must not contain {ch!r}")
    return value


def encode_recipe(recipe_id: str) -> str:
    return f"RECIPE:{_check_token(recipe_id, 'recipe id')}{TERMINATOR}"


def encode_module_deltas(deltas: Iterable[ModuleDelta]) -> str:
    parts = [
        f"{_check_token(d.module_id, 'module id', _RESERVED)}={int(d.change)}"
        for d in deltas
    ]
    if not parts:
        raise ValidationError("no module deltas to send")
    return "MODULE:" + ",".join(parts) + TERMINATOR


def encode_emergency_stop() -> str:
    return f"EMERGENCY:stop{TERMINATOR}"
