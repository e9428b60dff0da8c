"""
detector.model
AUTHOR: carter-vin

Container identity + deterministic resource serialization.

Design goals:
- One optional attribute ("container.id"), absent when nothing was detected
- Explicit structure (no accidental serialization via __dict__)
- Never serialize an identity whose ID fails the hex gate
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Optional

from detector.hexid import is_valid_hex

DETECTOR_VERSION = "0.1.0"

# Resource attribute key (OpenTelemetry semantic conventions)
CONTAINER_ID_ATTRIBUTE = "container.id"


class ParseMode(enum.Enum):
    """
    Extraction strategy for one probe invocation
    """

    CGROUP_V1 = "cgroup_v1"
    CGROUP_V2 = "cgroup_v2"
    KUBERNETES = "kubernetes"


@dataclass(frozen=True)
class ContainerIdentity:
    """
    Result of one detection
    - container_id: validated hex string, or None when no strategy matched
    """

    container_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.container_id

    def to_dict(self) -> dict[str, Any]:
        if self.is_empty:
            return {}
        return {CONTAINER_ID_ATTRIBUTE: self.container_id}


EMPTY_IDENTITY = ContainerIdentity()


def validate_identity(identity: ContainerIdentity) -> None:
    """
    Raises ValueError when a present container_id is not lowercase hex
    """
    if identity.container_id is None:
        return
    if not is_valid_hex(identity.container_id):
        raise ValueError(f"container_id must be lowercase hex: {identity.container_id!r}")


def resource_to_json(identity: ContainerIdentity) -> str:
    """
    Serialize an identity as a resource attribute map

    Rules:
    - sort_keys=True ensures stable key order
    - separators remove whitespace to avoid formatting drift
    """
    validate_identity(identity)
    return json.dumps(
        identity.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
