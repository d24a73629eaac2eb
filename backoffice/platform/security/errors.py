from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for policy/FLS enforcement failures."""


class MissingPermissionError(AuthorizationError):
    def __init__(self, resource: str, action: str) -> None:
        self.resource = resource
        self.action = action
        super().__init__(f"Missing permission: {resource}.{action}")


class ForbiddenFieldError(AuthorizationError):
    """Raised when a report definition references fields the caller may not read."""

    def __init__(self, resource: str, fields: list[str]) -> None:
        self.resource = resource
        self.fields = sorted(set(fields))
        super().__init__(f"Forbidden fields for resource '{resource}': {', '.join(self.fields)}")
