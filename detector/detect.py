"""
detector.detect
AUTHOR: carter-vin

Container identity detection

Precedence:
1) Kubernetes API (only when settings are given)
2) cgroup v1 (/proc/self/cgroup)
3) cgroup v2 (/proc/self/mountinfo)

No caching: every detect() call probes again. Absence of a container ID is
a normal outcome (bare metal, VMs) and yields the empty identity.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from detector.config import KubernetesSettings
from detector.logging import emit_event
from detector.model import EMPTY_IDENTITY, ContainerIdentity, ParseMode, validate_identity
from detector.probes.base import run_probe
from detector.probes.cgroup import CGROUP_PATH, MOUNTINFO_PATH, scan_container_id
from detector.probes.kubernetes import KubernetesProbe


class ContainerIdentityDetector:
    """
    Runs the probes in order and returns the first valid container ID
    """

    def __init__(
        self,
        *,
        kubernetes: Optional[KubernetesSettings] = None,
        cgroup_path: Path = CGROUP_PATH,
        mountinfo_path: Path = MOUNTINFO_PATH,
    ) -> None:
        self.kubernetes = kubernetes
        self.cgroup_path = Path(cgroup_path)
        self.mountinfo_path = Path(mountinfo_path)

    def _extract(self, path: Optional[Path], mode: ParseMode) -> Optional[str]:
        if mode is ParseMode.KUBERNETES:
            if self.kubernetes is None:
                emit_event(
                    "probe_skipped",
                    level="debug",
                    probe=mode.value,
                    message="kubernetes environment variables not set",
                )
                return None
            return KubernetesProbe(self.kubernetes).extract_container_id()
        return scan_container_id(path, mode)

    def build_identity(self, path: Optional[Path], mode: ParseMode) -> ContainerIdentity:
        """
        Run one strategy; empty identity if it finds nothing or fails
        """
        outcome = run_probe(mode.value, self._extract, path, mode)

        if not outcome.ok:
            emit_event(
                "probe_failed",
                level="warning",
                probe=mode.value,
                error_type=outcome.error_type,
                message=outcome.error_message,
            )
            return EMPTY_IDENTITY

        if outcome.container_id is None:
            return EMPTY_IDENTITY

        identity = ContainerIdentity(container_id=outcome.container_id)
        try:
            validate_identity(identity)
        except ValueError as e:
            emit_event("probe_failed", level="warning", probe=mode.value, message=str(e))
            return EMPTY_IDENTITY

        emit_event(
            "container_id_found",
            level="debug",
            probe=mode.value,
            container_id=identity.container_id,
        )
        return identity

    def detect(self) -> ContainerIdentity:
        """
        Detect the container identity; never raises
        """
        strategies = (
            (None, ParseMode.KUBERNETES),
            (self.cgroup_path, ParseMode.CGROUP_V1),
            (self.mountinfo_path, ParseMode.CGROUP_V2),
        )
        for path, mode in strategies:
            identity = self.build_identity(path, mode)
            if not identity.is_empty:
                return identity
        return EMPTY_IDENTITY
