from fastapi import HTTPException, status, Depends
from auth import get_current_user
import logging

logger = logging.getLogger(__name__)

ADMIN_ROLE = "Admin"
BILLING_ROLES = ("Admin", "StoreManager", "Cashier")
STOCK_ROLES = ("Admin", "StoreManager")


class PermissionChecker:
    """
    Permission enforcement for the billing API.

    RULES:
    1. User must be authenticated (valid bearer token)
    2. User must not be flagged inactive in the token
    3. Role-based permissions apply:
       - billing and payments: Admin, StoreManager, Cashier
       - stock adjustment: Admin, StoreManager
       - manual status override: Admin only
    """

    async def get_authenticated_user(self, current_user: dict = Depends(get_current_user)):
        """Get and validate authenticated user"""
        if current_user.get("active_status") is False:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )
        return current_user

    async def check_role(self, user: dict, allowed_roles, action: str = "this operation"):
        if user.get("role") not in allowed_roles:
            logger.warning(
                f"[PERMISSION] user:{user.get('user_id')} role:{user.get('role')} denied {action}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role {user.get('role')!r} is not allowed to perform {action}"
            )
        return True

    async def check_billing_access(self, user: dict):
        return await self.check_role(user, BILLING_ROLES, "billing operations")

    async def check_stock_access(self, user: dict):
        return await self.check_role(user, STOCK_ROLES, "stock adjustment")

    async def check_admin_role(self, user: dict):
        """Check if user has Admin role"""
        if user.get("role") != ADMIN_ROLE:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin role required for this operation"
            )
        return True
