# horizon/core/platform.py
"""
Platform capability matrix.

Which backends exist is decided here, from data, instead of by building a
different engine per platform. The spatial headset (visionOS) has no remote
document store: only the local store and CloudKit.
"""

import logging
import uuid
from enum import Enum
from pathlib import Path

from horizon.core.config import Settings

logger = logging.getLogger(__name__)


class Platform(str, Enum):
    IOS = "iOS"
    MACOS = "macOS"
    WATCHOS = "watchOS"
    TVOS = "tvOS"
    VISIONOS = "visionOS"

    @classmethod
    def parse(cls, raw: str) -> "Platform":
        """Case-insensitive lookup ("visionos" -> Platform.VISIONOS)."""
        for member in cls:
            if member.value.lower() == raw.strip().lower():
                return member
        raise ValueError(f"Unknown platform: {raw!r}")


class Backend(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    APPLE_ECOSYSTEM = "apple_ecosystem"


CONSTRAINED_PLATFORMS: frozenset[Platform] = frozenset({Platform.VISIONOS})

_ALL_BACKENDS = frozenset({Backend.LOCAL, Backend.REMOTE, Backend.APPLE_ECOSYSTEM})
_CONSTRAINED_BACKENDS = frozenset({Backend.LOCAL, Backend.APPLE_ECOSYSTEM})

# Promo codes are a static allow-list, compared after upper-casing the input.
GENERAL_PROMO_CODES: frozenset[str] = frozenset(
    {"INFINITUM2025", "HORIZONFREE", "PREMIUM2025", "UNLOCKALL"}
)
CONSTRAINED_PROMO_CODES: frozenset[str] = frozenset({"VISIONOS2025", "SPATIAL", "PREMIUM"})


def available_backends(platform: Platform) -> frozenset[Backend]:
    """Return the set of backends usable on `platform`."""
    if platform in CONSTRAINED_PLATFORMS:
        return _CONSTRAINED_BACKENDS
    return _ALL_BACKENDS


def promo_codes_for(platform: Platform) -> frozenset[str]:
    if platform in CONSTRAINED_PLATFORMS:
        return CONSTRAINED_PROMO_CODES
    return GENERAL_PROMO_CODES


def resolve_device_id(settings: Settings) -> str:
    """
    Return a stable opaque identifier for this installation.

    Priority:
      1. DEVICE_ID from settings.
      2. The id persisted in DATA_DIR/device_id.
      3. A fresh uuid4, persisted to DATA_DIR/device_id for the next launch.

    If the file cannot be written the fresh id is still returned; the next
    launch will then produce a different id.
    """
    if settings.DEVICE_ID:
        return settings.DEVICE_ID

    id_file = Path(settings.DATA_DIR) / "device_id"
    if id_file.exists():
        stored = id_file.read_text(encoding="utf-8").strip()
        if stored:
            return stored

    device_id = str(uuid.uuid4()).upper()
    try:
        id_file.parent.mkdir(parents=True, exist_ok=True)
        id_file.write_text(device_id, encoding="utf-8")
    except OSError as e:
        logger.warning("Could not persist device id to %s: %s", id_file, e)
    return device_id
