"""Optional security-posture checks run against a validated graph before execution.

``passthrough`` applies declarations as written, ``warn`` logs findings, and
``enforce`` refuses the run with ``SecurityPolicyError`` before any provider
call is made.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterator

from .errors import SecurityPolicyError
from .graph import ResourceGraph
from .kinds import ResourceKind

logger = logging.getLogger(__name__)

OPEN_CIDRS = {"0.0.0.0/0", "::/0"}
_ALL_PROTOCOLS = {"-1", "all"}
_SECRET_FIELD_RE = re.compile(r"password|secret|token|api[_-]?key", re.IGNORECASE)


def _open_ingress_findings(name: str, config: dict[str, Any]) -> Iterator[str]:
    for index, rule in enumerate(config.get("ingress_rules") or []):
        if not isinstance(rule, dict):
            continue
        if str(rule.get("cidr", "")).strip() not in OPEN_CIDRS:
            continue
        protocol = str(rule.get("protocol", "all")).strip().lower()
        all_ports = rule.get("from_port", 0) == 0 and rule.get("to_port", 65535) == 65535
        if protocol in _ALL_PROTOCOLS or all_ports:
            yield f"{name}: ingress rule {index} allows all traffic from {rule['cidr']}"


def _literal_secret_findings(name: str, value: Any, path: str = "") -> Iterator[str]:
    if isinstance(value, dict):
        for key, item in value.items():
            field_path = f"{path}.{key}" if path else str(key)
            if _SECRET_FIELD_RE.search(str(key)) and isinstance(item, str) and item:
                yield f"{name}: {field_path} holds a literal credential; use a $secret reference"
            else:
                yield from _literal_secret_findings(name, item, field_path)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from _literal_secret_findings(name, item, f"{path}[{index}]")


def security_findings(graph: ResourceGraph) -> list[str]:
    findings: list[str] = []
    for name in graph.topological_order():
        node = graph.node(name)
        if node.kind == ResourceKind.SECURITY_GROUP:
            findings.extend(_open_ingress_findings(name, node.config))
        findings.extend(_literal_secret_findings(name, node.config))
    return findings


def check_security_policy(graph: ResourceGraph, mode: str = "passthrough") -> list[str]:
    """Evaluate *graph* under *mode*.

    Returns:
        The findings (empty in ``passthrough`` mode, which does not look).

    Raises:
        SecurityPolicyError: In ``enforce`` mode when anything was found.
        ValueError: For an unknown mode.
    """
    if mode == "passthrough":
        return []
    if mode not in {"warn", "enforce"}:
        raise ValueError(f"unknown security policy mode: {mode!r}")
    findings = security_findings(graph)
    if findings and mode == "enforce":
        raise SecurityPolicyError(findings)
    for finding in findings:
        logger.warning("Security finding: %s", finding)
    return findings
