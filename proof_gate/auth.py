"""Caller identity and role context.

Identity comes from the `Authorization: Bearer <token>` header. The token is
opaque here: deployments map session tokens to user ids through a JSON map so
the user id is never client-controlled. Roles are rows in the platform
store's ``user_roles`` table.

Env vars:
  - PROOF_GATE_SESSION_TOKENS_JSON: JSON dict mapping token -> user_id
  - PROOF_GATE_SESSION_TOKENS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

ENV_SESSION_TOKENS_JSON = "PROOF_GATE_SESSION_TOKENS_JSON"
ENV_SESSION_TOKENS_FILE = "PROOF_GATE_SESSION_TOKENS_FILE"

ROLE_ADMIN = "admin"
ROLE_OWNER = "owner"
ROLE_CLIENT = "client"


@dataclass(frozen=True)
class RoleContext:
    """Role flags handed to the audit, the registries and the evidence pack."""

    is_authenticated: bool = False
    is_admin: bool = False
    is_owner: bool = False
    is_client: bool = False
    user_id: Optional[str] = None

    @classmethod
    def from_roles(cls, user_id: Optional[str], roles: Iterable[str]) -> "RoleContext":
        rs = {str(r).strip().lower() for r in roles}
        return cls(
            is_authenticated=bool(user_id),
            is_admin=ROLE_ADMIN in rs,
            is_owner=ROLE_OWNER in rs,
            is_client=ROLE_CLIENT in rs,
            user_id=user_id,
        )

    @property
    def role(self) -> str:
        if self.is_admin:
            return ROLE_ADMIN
        if self.is_owner:
            return ROLE_OWNER
        if self.is_client:
            return ROLE_CLIENT
        return "authenticated" if self.is_authenticated else "anonymous"

    def role_flags(self) -> Dict[str, bool]:
        return {
            "isAdmin": self.is_admin,
            "isOwner": self.is_owner,
            "isClient": self.is_client,
            "isAuthenticated": self.is_authenticated,
        }


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    authz = (authorization or "").strip()
    if not authz.lower().startswith("bearer "):
        return None
    token = authz.split(" ", 1)[1].strip()
    return token or None


@dataclass(frozen=True)
class SessionAuth:
    """Bearer session token -> user id resolution."""

    token_to_user: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "SessionAuth":
        """Load the token map from env/file.

        Present-but-malformed configuration yields an instance with
        config_error set, and every resolution then fails.
        """
        mapping: Dict[str, str] = {}
        configured = False
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_SESSION_TOKENS_JSON)
        file_path = os.getenv(ENV_SESSION_TOKENS_FILE)
        if raw_json or file_path:
            configured = True

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_SESSION_TOKENS_JSON} must be a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_SESSION_TOKENS_FILE} must contain a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
        except Exception:
            config_error = "SESSION_CONFIG_INVALID"
            mapping = {}

        return cls(token_to_user=mapping, configured=configured, config_error=config_error)

    def resolve_identity(self, authorization: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Returns (user_id, error). A non-None error means reject the call."""
        if self.config_error:
            return None, self.config_error
        if not (authorization or "").strip():
            return None, "AUTHORIZATION_REQUIRED"
        token = parse_bearer(authorization)
        if not token:
            return None, "AUTHORIZATION_MALFORMED"
        user_id = self.token_to_user.get(token)
        if not user_id:
            return None, "SESSION_INVALID"
        return user_id, None


def resolve_role_context(store: Any, user_id: Optional[str]) -> RoleContext:
    """Build role flags for a user from the store's role rows."""
    if not user_id:
        return RoleContext()
    return RoleContext.from_roles(user_id, store.get_user_roles(user_id))
