"""Static registries audited by the Route & Nav Audit.

Three independent tables:
- TOOLS: platform tools and the access level each one declares.
- ROUTE_GUARDS: the authority on which routes exist and what they require.
- Navigation: the sidebar items each role is shown.

They are not derived from one another; the audit reports the drift between
them.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

from .auth import RoleContext

PUBLIC = "public"
AUTHENTICATED = "authenticated"
OWNER = "owner"
ADMIN = "admin"


@dataclass(frozen=True)
class PlatformTool:
    id: str
    name: str
    route: str
    requires: str
    category: str
    can_run_inline: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RouteGuard:
    path: str
    requires: str
    description: str = ""


@dataclass(frozen=True)
class NavItem:
    label: str
    href: str


TOOLS: Sequence[PlatformTool] = (
    PlatformTool("tools-hub", "Platform Tools", "/platform/tools", AUTHENTICATED, "diagnostics"),
    PlatformTool("proof-gate", "Proof Gate", "/platform/proof-gate", AUTHENTICATED, "diagnostics", True),
    PlatformTool("db-doctor", "DB Doctor", "/platform/db-doctor", OWNER, "diagnostics", True),
    PlatformTool("edge-console", "Edge Console", "/platform/edge-console", OWNER, "debug"),
    PlatformTool("cloud-wizard", "Cloud Wizard", "/platform/cloud-wizard", OWNER, "configuration"),
    PlatformTool("access", "Access & Identity", "/platform/access", AUTHENTICATED, "diagnostics"),
    PlatformTool("qa-tests", "QA Tests", "/platform/qa-tests", AUTHENTICATED, "diagnostics", True),
    PlatformTool("tenants", "Admin Tenants", "/platform/tenants", ADMIN, "admin"),
    PlatformTool("scheduler", "Scheduler Control", "/platform/scheduler", ADMIN, "admin"),
    PlatformTool("feature-flags", "Feature Flags", "/platform/feature-flags", AUTHENTICATED, "configuration"),
    PlatformTool("schema-snapshot", "Schema Snapshot", "/platform/schema-snapshot", AUTHENTICATED, "diagnostics", True),
    PlatformTool("placeholder-scan", "Placeholder Scanner", "/platform/placeholder-scan", AUTHENTICATED, "diagnostics", True),
    PlatformTool("route-nav-auditor", "Route & Nav Auditor", "/platform/route-nav-auditor", AUTHENTICATED, "diagnostics", True),
)

ROUTE_GUARDS: Sequence[RouteGuard] = (
    RouteGuard("/", PUBLIC, "Landing page"),
    RouteGuard("/blog", PUBLIC, "Blog listing"),
    RouteGuard("/blog/:slug", PUBLIC, "Blog post"),
    RouteGuard("/privacy", PUBLIC, "Privacy policy"),
    RouteGuard("/terms", PUBLIC, "Terms of service"),
    RouteGuard("/cookies", PUBLIC, "Cookie policy"),
    RouteGuard("/auth", PUBLIC, "Authentication"),
    RouteGuard("/login", PUBLIC, "Login"),
    RouteGuard("/app", OWNER, "CEO Dashboard"),
    RouteGuard("/app/onboarding", AUTHENTICATED, "Onboarding"),
    RouteGuard("/app/portal", AUTHENTICATED, "Client portal"),
    RouteGuard("/app/portal/:section", AUTHENTICATED, "Client portal section"),
    RouteGuard("/app/decisions", OWNER, "Decisions"),
    RouteGuard("/app/pipeline", OWNER, "Pipeline"),
    RouteGuard("/app/inbox", OWNER, "Inbox"),
    RouteGuard("/app/analytics", OWNER, "Analytics"),
    RouteGuard("/app/billing", OWNER, "Billing"),
    RouteGuard("/app/content", OWNER, "Content"),
    RouteGuard("/app/clients", OWNER, "Clients"),
    RouteGuard("/app/leads", OWNER, "Leads"),
    RouteGuard("/app/settings", OWNER, "Settings"),
    RouteGuard("/app/health", OWNER, "System Health"),
    RouteGuard("/app/audit", OWNER, "Audit"),
    RouteGuard("/app/help", OWNER, "Help"),
    RouteGuard("/platform/tools", AUTHENTICATED, "Platform Tools Hub"),
    RouteGuard("/platform/proof-gate", AUTHENTICATED, "Proof Gate"),
    RouteGuard("/platform/access", AUTHENTICATED, "Access & Identity"),
    RouteGuard("/platform/qa-tests", AUTHENTICATED, "QA Tests"),
    RouteGuard("/platform/feature-flags", AUTHENTICATED, "Feature Flags"),
    RouteGuard("/platform/schema-snapshot", AUTHENTICATED, "Schema Snapshot"),
    RouteGuard("/platform/placeholder-scan", AUTHENTICATED, "Placeholder Scanner"),
    RouteGuard("/platform/route-nav-auditor", AUTHENTICATED, "Route & Nav Auditor"),
    RouteGuard("/platform/cloud-wizard", OWNER, "Cloud Wizard"),
    RouteGuard("/platform/edge-console", OWNER, "Edge Console"),
    RouteGuard("/platform/db-doctor", OWNER, "DB Doctor"),
    RouteGuard("/platform/tenants", ADMIN, "Admin Tenants"),
    RouteGuard("/platform/scheduler", ADMIN, "Scheduler Control"),
)

OWNER_NAV: Sequence[NavItem] = (
    NavItem("Dashboard", "/app"),
    NavItem("Pipeline", "/app/pipeline"),
    NavItem("Inbox", "/app/inbox"),
    NavItem("Analytics", "/app/analytics"),
    NavItem("Billing", "/app/billing"),
    NavItem("Content", "/app/content"),
    NavItem("Decisions", "/app/decisions"),
    NavItem("Clients", "/app/clients"),
    NavItem("Settings", "/app/settings"),
    NavItem("Platform Tools", "/platform/tools"),
)

CLIENT_NAV: Sequence[NavItem] = (
    NavItem("Portal", "/app/portal"),
    NavItem("Messages", "/app/portal/messages"),
    NavItem("Deliverables", "/app/portal/deliverables"),
    NavItem("Billing", "/app/portal/billing"),
    NavItem("Requests", "/app/portal/requests"),
    NavItem("Meetings", "/app/portal/meetings"),
    NavItem("Help", "/app/portal/help"),
)

ADMIN_NAV: Sequence[NavItem] = (
    NavItem("Tenants", "/platform/tenants"),
    NavItem("QA Tests", "/platform/qa-tests"),
)


@lru_cache(maxsize=256)
def _pattern(path: str) -> "re.Pattern[str]":
    return re.compile("^" + re.sub(r":[^/]+", "[^/]+", re.escape(path)) + "$")


def get_route_guard(path: str, guards: Sequence[RouteGuard] = ROUTE_GUARDS) -> Optional[RouteGuard]:
    """Exact match first, then `:param` patterns in declaration order."""
    for g in guards:
        if g.path == path:
            return g
    for g in guards:
        if ":" in g.path and _pattern(g.path).match(path):
            return g
    return None


def get_platform_route_guards(guards: Sequence[RouteGuard] = ROUTE_GUARDS) -> List[RouteGuard]:
    return [g for g in guards if g.path.startswith("/platform/")]


def meets_requirement(requires: str, ctx: RoleContext) -> bool:
    if requires == PUBLIC:
        return True
    if requires == AUTHENTICATED:
        return ctx.is_authenticated
    if requires == OWNER:
        return ctx.is_owner or ctx.is_admin
    if requires == ADMIN:
        return ctx.is_admin
    return False


def can_access_route(path: str, ctx: RoleContext, guards: Sequence[RouteGuard] = ROUTE_GUARDS) -> bool:
    guard = get_route_guard(path, guards)
    return guard is not None and meets_requirement(guard.requires, ctx)


def get_visible_tools(ctx: RoleContext, tools: Sequence[PlatformTool] = TOOLS) -> List[PlatformTool]:
    if not ctx.is_authenticated:
        return []
    return [t for t in tools if meets_requirement(t.requires, ctx)]


def get_tool(tool_id: str, tools: Sequence[PlatformTool] = TOOLS) -> Optional[PlatformTool]:
    for t in tools:
        if t.id == tool_id:
            return t
    return None


def get_nav_for_role(ctx: RoleContext) -> List[NavItem]:
    if ctx.is_client:
        return list(CLIENT_NAV)
    if ctx.is_owner:
        if ctx.is_admin:
            return list(OWNER_NAV) + list(ADMIN_NAV)
        return list(OWNER_NAV)
    return []


def get_nav_routes_for_role(ctx: RoleContext) -> List[str]:
    return [item.href for item in get_nav_for_role(ctx)]
