"""
Errors raised by the permission service layer.

Routes translate these into HTTP responses; the resolver and admin services
never raise HTTPException themselves.
"""


class PermissionConfigError(Exception):
    """A permission configuration change cannot be applied."""


class InvalidPermissionKeyError(PermissionConfigError, ValueError):
    """Raised when a key is not of the form ``module.action``."""

    def __init__(self, key):
        self.key = key
        super().__init__(f"Invalid permission key {key!r}: expected 'module.action'")


class ProtectedPermissionError(PermissionConfigError):
    """Raised when a change would disable a protected owner permission."""

    def __init__(self, role: str, key: str):
        self.role = role
        self.key = key
        super().__init__(f"Cannot disable protected permission {key!r} for role {role!r}")


class CustomPermissionsDisabledError(PermissionConfigError):
    """Raised when overrides are written while the organization uses global permissions."""

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__("Switch the organization to custom permissions before editing overrides")


class OrganizationNotFoundError(LookupError):
    """Raised when an operation targets an organization that does not exist."""

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(f"Organization {organization_id!r} not found")
