from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError, ForbiddenFieldError, MissingPermissionError
from backoffice.platform.security.fls import MASKED_FIELD_VALUE, apply_fls_read, apply_fls_read_many, evaluate_field_reads
from backoffice.platform.security.repository import BaseRepository
from backoffice.platform.security.scope import DataScopeFilter, ScopeDimension, is_admin_bypass, resolve_data_scope
from backoffice.platform.security.policies import (
    FieldDecision,
    InMemoryPolicyBackend,
    PolicyBackend,
    ResourceAction,
)

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "ForbiddenFieldError",
    "MissingPermissionError",
    "MASKED_FIELD_VALUE",
    "BaseRepository",
    "DataScopeFilter",
    "ScopeDimension",
    "is_admin_bypass",
    "resolve_data_scope",
    "apply_fls_read",
    "apply_fls_read_many",
    "evaluate_field_reads",
    "FieldDecision",
    "PolicyBackend",
    "InMemoryPolicyBackend",
    "ResourceAction",
]
