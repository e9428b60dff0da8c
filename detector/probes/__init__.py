"""detector.probes package exports."""

from detector.probes.base import ProbeOutcome, run_probe
from detector.probes.cgroup import extract_id_v1, extract_id_v2, scan_container_id
from detector.probes.kubernetes import KubernetesProbe

__all__ = [
    "KubernetesProbe",
    "ProbeOutcome",
    "extract_id_v1",
    "extract_id_v2",
    "run_probe",
    "scan_container_id",
]
