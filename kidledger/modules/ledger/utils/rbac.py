from fastapi import Depends, HTTPException, status

from kidledger.modules.auth.deps import CHILD_ROLE, PARENT_ROLE, RequireAuthenticated, UserContext


def IsParent(user: UserContext) -> bool:
    return user.Role == PARENT_ROLE


def IsChild(user: UserContext) -> bool:
    return user.Role == CHILD_ROLE


def RequireChild():
    def _checker(user: UserContext = Depends(RequireAuthenticated)) -> UserContext:
        if not IsChild(user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        return user

    return _checker


def RequireParent():
    def _checker(user: UserContext = Depends(RequireAuthenticated)) -> UserContext:
        if not IsParent(user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        return user

    return _checker
