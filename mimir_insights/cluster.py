"""Read-only Kubernetes access via kubectl subprocess calls.

All calls go through ``kubectl`` so discovery uses whatever kubeconfig /
context the operator has active, with no in-process K8s client library.

Contract:
  • ``list_resources`` and ``get_config_resource`` treat "not found" as an
    empty result.
  • A call exceeding its deadline raises ``QueryTimeout``.
  • Any other failure raises ``ClusterError``.
  • No write verbs are ever issued; every command is logged.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol

from mimir_insights.errors import ClusterError, QueryTimeout
from mimir_insights.models import PodUsage, ResourceKind, ResourceMetadata

logger = logging.getLogger(__name__)

# Maximum output we'll capture from kubectl to avoid memory blowup.
_MAX_OUTPUT_BYTES = 8 * 1024 * 1024  # 8 MB

_KUBECTL_NAMES: dict[ResourceKind, str] = {
    ResourceKind.NAMESPACE: "namespaces",
    ResourceKind.DEPLOYMENT: "deployments",
    ResourceKind.STATEFULSET: "statefulsets",
    ResourceKind.DAEMONSET: "daemonsets",
    ResourceKind.SERVICE: "services",
    ResourceKind.CONFIGMAP: "configmaps",
    ResourceKind.POD: "pods",
}

_NOT_FOUND = re.compile(r"NotFound|not found|No resources found", re.IGNORECASE)


class ResourceLister(Protocol):
    """What the discovery engine needs from a cluster."""

    def list_resources(
        self, kind: ResourceKind, namespace: str = "", label_selector: str = ""
    ) -> list[ResourceMetadata]: ...

    def get_config_resource(self, name: str, namespace: str) -> dict[str, str]: ...

    def pod_usage(self, namespace: str) -> list[PodUsage]: ...


@dataclass
class CommandResult:
    """Result of a kubectl command execution."""

    command: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    timeout: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def not_found(self) -> bool:
        return not self.ok and bool(_NOT_FOUND.search(self.stderr))


@dataclass
class ClusterClient:
    """Interface to a Kubernetes cluster via kubectl.

    Parameters
    ----------
    kubeconfig : str
        Path to kubeconfig file.  Empty string means use the default.
    context : str
        Kubernetes context to use.  Empty string means use the current context.
    timeout : int
        Seconds before a single kubectl call is abandoned.
    """

    kubeconfig: str = ""
    context: str = ""
    timeout: int = 30
    _base_cmd: list[str] = field(init=False, default_factory=list)

    def __post_init__(self) -> None:
        self._base_cmd = ["kubectl"]
        if self.kubeconfig:
            self._base_cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            self._base_cmd += ["--context", self.context]

    # ── Low-level executor ────────────────────────────────────────────────

    def _run(self, args: list[str], timeout: int | None = None) -> CommandResult:
        """Run a kubectl command and return the result."""
        timeout = timeout or self.timeout
        cmd = self._base_cmd + args
        cmd_str = shlex.join(cmd)
        logger.debug("kubectl: %s", cmd_str)

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
            return CommandResult(
                command=cmd_str,
                returncode=proc.returncode,
                stdout=proc.stdout[:_MAX_OUTPUT_BYTES],
                stderr=proc.stderr[:_MAX_OUTPUT_BYTES],
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=cmd_str,
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                timed_out=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            return CommandResult(
                command=cmd_str,
                returncode=-1,
                stdout="",
                stderr="kubectl is not installed or not on the PATH.",
            )

    def _check(self, result: CommandResult, source: str) -> None:
        if result.timed_out:
            raise QueryTimeout(source, result.timeout or self.timeout)
        if not result.ok:
            raise ClusterError(source, result.stderr.strip()[:500] or f"rc={result.returncode}")

    @staticmethod
    def _parse_json(result: CommandResult, source: str) -> dict[str, Any]:
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ClusterError(source, f"invalid JSON from kubectl: {exc}") from exc

    # ── Read operations ───────────────────────────────────────────────────

    def list_resources(
        self,
        kind: ResourceKind,
        namespace: str = "",
        label_selector: str = "",
    ) -> list[ResourceMetadata]:
        """List resources of *kind*; an empty *namespace* means all namespaces."""
        source = f"list {kind.value}" + (f" in {namespace}" if namespace else "")
        args = ["get", _KUBECTL_NAMES[kind], "-o", "json"]
        if kind != ResourceKind.NAMESPACE:
            args += ["-n", namespace] if namespace else ["--all-namespaces"]
        if label_selector:
            args += ["-l", label_selector]

        result = self._run(args)
        if result.not_found:
            return []
        self._check(result, source)
        data = self._parse_json(result, source)
        items = [ResourceMetadata.from_item(kind, item) for item in data.get("items", [])]
        logger.debug("%s: %d items", source, len(items))
        return items

    def get_config_resource(self, name: str, namespace: str) -> dict[str, str]:
        """Return the ``data`` of ConfigMap *name*, or ``{}`` if it does not exist."""
        source = f"get ConfigMap {namespace}/{name}"
        result = self._run(["get", "configmap", name, "-n", namespace, "-o", "json"])
        if result.not_found:
            return {}
        self._check(result, source)
        item = self._parse_json(result, source)
        return ResourceMetadata.from_item(ResourceKind.CONFIGMAP, item).data

    def pod_usage(self, namespace: str) -> list[PodUsage]:
        """Current pod CPU/memory usage from metrics-server (``kubectl top pods``)."""
        source = f"top pods in {namespace}"
        result = self._run(["top", "pods", "-n", namespace, "--no-headers"], timeout=15)
        if result.not_found:
            return []
        self._check(result, source)
        return parse_top_output(result.stdout, namespace)

    def check_connectivity(self) -> CommandResult:
        """Quick check that kubectl can reach the cluster."""
        return self._run(["version", "-o", "json"], timeout=10)

    def require_connectivity(self) -> None:
        """Raise ``ClusterError`` (or ``QueryTimeout``) if the cluster is unreachable."""
        self._check(self.check_connectivity(), "cluster connectivity")


# ── Helpers ──────────────────────────────────────────────────────────────

_MEMORY_UNITS = {
    "": 1,
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "K": 1000,
    "M": 1000**2,
    "G": 1000**3,
}
_QUANTITY = re.compile(r"^(\d+(?:\.\d+)?)([A-Za-z]*)$")


def parse_cpu(value: str) -> int:
    """Parse a CPU quantity into millicores (``"250m"`` → 250, ``"2"`` → 2000)."""
    value = value.strip()
    if value.endswith("m"):
        return int(float(value[:-1] or 0))
    m = _QUANTITY.match(value)
    return int(float(m.group(1)) * 1000) if m else 0


def parse_memory(value: str) -> int:
    """Parse a memory quantity into bytes (``"64Mi"`` → 67108864)."""
    m = _QUANTITY.match(value.strip())
    if not m:
        return 0
    return int(float(m.group(1)) * _MEMORY_UNITS.get(m.group(2), 1))


def parse_top_output(text: str, namespace: str = "") -> list[PodUsage]:
    usage: list[PodUsage] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 3 or parts[0] == "NAME":
            continue
        usage.append(
            PodUsage(
                name=parts[0],
                namespace=namespace,
                cpu_millicores=parse_cpu(parts[1]),
                memory_bytes=parse_memory(parts[2]),
            )
        )
    return usage
