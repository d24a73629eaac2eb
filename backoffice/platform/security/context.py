from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from backoffice.platform.security.scope import DataScopeFilter


@dataclass(slots=True)
class AuthContext:
    """Authorization context used by policy evaluation, FLS checks and data scoping."""

    user_id: str
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    data_scope: DataScopeFilter | None = None
    _cache: dict[str, Any] = field(default_factory=dict, repr=False)
