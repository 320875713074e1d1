from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for ownership and field allow-list failures."""


class ForbiddenFieldError(AuthorizationError):
    """Raised when a payload contains fields the caller may not write."""

    def __init__(self, resource: str, fields: list[str]) -> None:
        self.resource = resource
        self.fields = sorted(set(fields))
        super().__init__(f"Not allowed to modify fields on '{resource}': {', '.join(self.fields)}")


class UnknownFieldError(ValueError):
    """Raised when a payload names fields outside a resource's allow-list."""

    def __init__(self, resource: str, fields: list[str]) -> None:
        self.resource = resource
        self.fields = sorted(set(fields))
        super().__init__(f"Unknown fields for '{resource}': {', '.join(self.fields)}")
