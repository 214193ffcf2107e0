from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from mailbuddy.utils.jwt import verify_token

security = HTTPBearer()


class CurrentAccount(BaseModel):
    id: str
    email: str = ""


async def get_current_account(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentAccount:
    """Resolve the caller's account from the session token issued by the auth service."""
    payload = verify_token(credentials.credentials, token_type="access")
    if not payload or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    return CurrentAccount(id=payload["sub"], email=payload.get("email", ""))
