from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError, ForbiddenFieldError, MissingPermissionError
from backoffice.platform.security.fls import apply_fls_read, apply_fls_read_many
from backoffice.platform.security.repository import BaseRepository
from backoffice.platform.security.scope import DataScopeFilter, resolve_data_scope
from backoffice.platform.security.policies import FieldDecision, InMemoryPolicyBackend, PolicyBackend

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "ForbiddenFieldError",
    "MissingPermissionError",
    "apply_fls_read",
    "apply_fls_read_many",
    "BaseRepository",
    "DataScopeFilter",
    "resolve_data_scope",
    "FieldDecision",
    "PolicyBackend",
    "InMemoryPolicyBackend",
]
