"""Route & Nav Audit.

Cross-checks the tool registry, the route guards and the role navigation for
one role context. Pure: no I/O, the caller owns any counter side effects.

Findings:
- missing_route (critical): a tool whose route has no guard.
- role_mismatch (warning): tool and guard disagree on the required level.
- orphan_route (warning): a platform guard with no tool behind it.
- nav_missing_required (warning): owner nav lacks the tools hub.
- nav_exposes_restricted (critical): nav shows a route the role cannot open.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .auth import RoleContext
from .crypto import _iso_utc
from .registry import (
    ADMIN,
    OWNER,
    PUBLIC,
    ROUTE_GUARDS,
    TOOLS,
    PlatformTool,
    RouteGuard,
    get_nav_routes_for_role,
    get_platform_route_guards,
    get_route_guard,
)

CRITICAL = "critical"
WARNING = "warning"

TOOLS_HUB_ROUTE = "/platform/tools"


@dataclass(frozen=True)
class AuditFinding:
    severity: str
    issue_code: str
    source: str
    identifier: str
    route: str
    description: str
    file_hint: str
    suggested_fix: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RouteNavAuditResult:
    timestamp: str
    context: Dict[str, bool]
    summary: Dict[str, int]
    findings: List[AuditFinding] = field(default_factory=list)
    snapshots: Dict[str, Any] = field(default_factory=dict)

    @property
    def critical(self) -> int:
        return int(self.summary.get("critical", 0))

    def issue_codes(self) -> List[str]:
        return [f.issue_code for f in self.findings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "context": dict(self.context),
            "summary": dict(self.summary),
            "findings": [f.to_dict() for f in self.findings],
            "snapshots": self.snapshots,
        }


def run_route_nav_audit(
    ctx: RoleContext,
    *,
    tools: Sequence[PlatformTool] = TOOLS,
    guards: Sequence[RouteGuard] = ROUTE_GUARDS,
    nav_routes: Optional[List[str]] = None,
) -> RouteNavAuditResult:
    findings: List[AuditFinding] = []
    checks = 0
    if nav_routes is None:
        nav_routes = get_nav_routes_for_role(ctx)

    for tool in tools:
        checks += 1
        guard = get_route_guard(tool.route, guards)
        if guard is None:
            findings.append(AuditFinding(
                severity=CRITICAL,
                issue_code="missing_route",
                source="tool",
                identifier=tool.id,
                route=tool.route,
                description=f'Tool "{tool.name}" has route {tool.route} but no matching route guard',
                file_hint="proof_gate/registry.py:ROUTE_GUARDS",
                suggested_fix=f'Add RouteGuard("{tool.route}", "{tool.requires}")',
            ))
            continue
        if guard.requires != PUBLIC and guard.requires != tool.requires:
            findings.append(AuditFinding(
                severity=WARNING,
                issue_code="role_mismatch",
                source="tool",
                identifier=tool.id,
                route=tool.route,
                description=f'Tool "{tool.name}" requires "{tool.requires}" but its route guard requires "{guard.requires}"',
                file_hint="proof_gate/registry.py",
                suggested_fix=f"Align the tool and guard requirements for {tool.route}",
            ))

    tool_routes = {t.route for t in tools}
    for guard in get_platform_route_guards(guards):
        checks += 1
        if guard.path not in tool_routes:
            findings.append(AuditFinding(
                severity=WARNING,
                issue_code="orphan_route",
                source="route",
                identifier=guard.path,
                route=guard.path,
                description=f"Route guard exists for {guard.path} but no tool is registered for it",
                file_hint="proof_gate/registry.py:TOOLS",
                suggested_fix=f"Register a tool for {guard.path} or remove the guard",
            ))

    checks += 1
    if ctx.is_owner and TOOLS_HUB_ROUTE not in nav_routes:
        findings.append(AuditFinding(
            severity=WARNING,
            issue_code="nav_missing_required",
            source="nav",
            identifier="platform-tools-hub",
            route=TOOLS_HUB_ROUTE,
            description="Platform Tools hub should be in owner navigation but is missing",
            file_hint="proof_gate/registry.py:OWNER_NAV",
            suggested_fix="Add the Platform Tools item to OWNER_NAV",
        ))

    for route in nav_routes:
        guard = get_route_guard(route, guards)
        if guard is None:
            continue
        checks += 1
        if guard.requires == ADMIN and not ctx.is_admin:
            findings.append(_exposure(route, "admin-only", "non-admin"))
        if guard.requires == OWNER and ctx.is_client and not ctx.is_owner:
            findings.append(_exposure(route, "owner-only", "client"))

    critical = sum(1 for f in findings if f.severity == CRITICAL)
    warning = sum(1 for f in findings if f.severity == WARNING)
    return RouteNavAuditResult(
        timestamp=_iso_utc(),
        context=ctx.role_flags(),
        summary={
            "critical": critical,
            "warning": warning,
            "passed": max(0, checks - len(findings)),
            "total_checks": checks,
        },
        findings=findings,
        snapshots={
            "tool_registry": [{"id": t.id, "route": t.route, "requires": t.requires} for t in tools],
            "route_guards": [{"path": g.path, "requires": g.requires} for g in get_platform_route_guards(guards)],
            "nav_routes": list(nav_routes),
        },
    )


def _exposure(route: str, level: str, audience: str) -> AuditFinding:
    return AuditFinding(
        severity=CRITICAL,
        issue_code="nav_exposes_restricted",
        source="nav",
        identifier=route,
        route=route,
        description=f"Navigation exposes {level} route {route} to a {audience} user",
        file_hint="proof_gate/registry.py",
        suggested_fix=f"Remove {route} from the {audience} navigation",
    )


@dataclass(frozen=True)
class SourceScanFinding:
    severity: str
    pattern: str
    line: int
    snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


MALFORMED_PATTERNS = (
    (re.compile(r"""["']/[^"'\s]*//"""), "double_slash", CRITICAL),
    (re.compile(r"""["']/[^"'\s]+/["']"""), "trailing_slash", WARNING),
    (re.compile(r"""["']/[^"'\n]*?\s[^"'\n]*?["']"""), "whitespace_in_route", CRITICAL),
    (re.compile(r"""["']/[^"'{}\n]*\{[^}"'\n]*["']"""), "unbalanced_brace", CRITICAL),
    (re.compile(r"REPLACE_ME|CHANGE_ME|PLACEHOLDER", re.IGNORECASE), "placeholder", CRITICAL),
    (re.compile(r"\b(TODO|FIXME|HACK)\b"), "todo_marker", WARNING),
)


def scan_source_for_malformed(source: str) -> List[SourceScanFinding]:
    """Line-by-line scan of a routing table's source for malformed route literals."""
    findings: List[SourceScanFinding] = []
    for lineno, line in enumerate(source.splitlines(), start=1):
        for pattern, name, severity in MALFORMED_PATTERNS:
            if pattern.search(line):
                findings.append(SourceScanFinding(severity, name, lineno, line.strip()[:100]))
    return findings
