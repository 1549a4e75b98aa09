from fastapi import Depends, HTTPException, status

from sourcing.middleware.auth import get_current_user


def require_roles(*allowed_roles: str):
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        @router.post("/{solicitation_id}/publish")
        async def publish(
            current_user: dict = Depends(get_current_user),
            _auth: None = Depends(require_roles("buyer", "admin")),
        ):
    """
    async def check_role(current_user: dict = Depends(get_current_user)):
        if current_user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": {
                        "code": "INSUFFICIENT_PERMISSIONS",
                        "message": (
                            f"Role '{current_user['role']}' cannot perform this action. "
                            f"Required: {allowed_roles}"
                        ),
                    }
                },
            )
        return None

    return check_role


def check_owner_scope(current_user: dict, owner_id) -> None:
    """Buyers only act on their own solicitations; admins act on all."""
    if current_user["role"] == "buyer" and str(owner_id) != str(current_user["user_id"]):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": {
                    "code": "INSUFFICIENT_PERMISSIONS",
                    "message": "You can only manage your own solicitations",
                }
            },
        )
