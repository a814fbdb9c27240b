from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from dealdesk.core.auth import AuthUser, get_current_user


def require_roles(*roles: str) -> Callable[[AuthUser], AuthUser]:
    """Dependency that lets the request through only if the token carries every listed role claim."""

    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing_roles = [role for role in roles if role not in user.roles]
        if missing_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing roles: {', '.join(missing_roles)}",
            )
        return user

    return checker
