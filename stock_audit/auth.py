from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    SUPERUSER = "SUPERUSER"
    SUPERVISOR = "SUPERVISOR"
    SCANNER = "SCANNER"


@dataclass
class Principal:
    id: int
    email: str
    role: Role
    active: bool


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


def assert_scanner_identity(principal: Principal, scanner_id: int) -> None:
    # Supervisors and superusers may submit on behalf of any scanner.
    if principal.role != Role.SCANNER:
        return
    if principal.id != scanner_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
