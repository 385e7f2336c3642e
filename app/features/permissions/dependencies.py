"""
FastAPI dependencies for organization-scoped permission checks.

Implements:
- Route protection by permission key for the organization in the path
- Member / super admin gating for read endpoints
- Audit logging helpers
"""
from typing import Any, Dict, Optional, Tuple
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.access import check_access, get_membership
from app.features.permissions.constants import SUPER_ADMIN_ROLE
from app.features.permissions.models import AuditLog
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Route protection
# ============================================================================

def require_org_permission(permission_key: str):
    """
    FastAPI dependency requiring a permission key in the path's organization.

    Usage:
        @router.post("/{organization_id}/members")
        async def add_member(
            organization_id: str,
            user: User = Depends(require_org_permission("settings.team_members"))
        ):
            pass

    Raises:
        HTTPException: 403 if the access check denies the request
    """
    async def permission_dependency(
        organization_id: str,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        decision = await check_access(
            db, current_user, organization_id, permission_key=permission_key
        )
        if not decision.has_access:
            log.debug(
                "User %s denied %s in org %s: %s",
                current_user.id, permission_key, organization_id, decision.message,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=decision.message or f"Permission denied: {permission_key}"
            )
        return current_user

    return permission_dependency


async def require_member_or_super_admin(
    db: AsyncSession,
    user: User,
    organization_id: str
) -> Optional[str]:
    """
    Return the user's organization role, or None for a super admin.

    Raises:
        HTTPException: 403 if the user is neither a member nor a super admin
    """
    if user.is_super_admin:
        return None
    membership = await get_membership(db, user.id, organization_id)
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a member of this organization"
        )
    return membership.role


# ============================================================================
# Audit Logging
# ============================================================================

def request_meta(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Client IP address and user agent of a request."""
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return ip_address, user_agent[:255] if user_agent else None


def create_audit_log(
    db: AsyncSession,
    user: Optional[User],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    actor_role: Optional[str] = None,
) -> AuditLog:
    """
    Add an audit log entry to the session.

    The entry is committed together with the change it describes.

    Args:
        db: Database session
        user: User performing the action
        action: Action performed (e.g., "update", "reset", "plan_change")
        resource_type: Type of resource (e.g., "global_permission", "subscription")
        resource_id: ID of the resource
        organization_id: Organization context
        details: Before/after values and other context
        request: Incoming request, for IP address and user agent
        actor_role: Role the actor acted with; defaults to super_admin for super admins
    """
    ip_address, user_agent = request_meta(request) if request is not None else (None, None)
    if actor_role is None and user is not None and user.is_super_admin:
        actor_role = SUPER_ADMIN_ROLE

    audit_log = AuditLog(
        user_id=user.id if user is not None else None,
        actor_role=actor_role,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        organization_id=organization_id,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent
    )
    db.add(audit_log)

    log.info(
        "Audit: user=%s action=%s resource=%s:%s org=%s",
        audit_log.user_id, action, resource_type, resource_id, organization_id,
    )
    return audit_log
