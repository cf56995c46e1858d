from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from starraffle.core.config import settings
from starraffle.core.security import decode_access_token
from starraffle.schemas.user import Participant

security = HTTPBearer(auto_error=False)

async def get_current_participant(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Participant:
    if creds is None or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        payload = decode_access_token(creds.credentials)
        sub = payload.get("sub")
        if not sub:
            raise ValueError("no sub")
        telegram_id = int(sub)
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from e

    return Participant(
        telegram_id=telegram_id,
        username=payload.get("username"),
        first_name=payload.get("first_name"),
    )

async def require_admin(participant: Participant = Depends(get_current_participant)) -> Participant:
    if participant.telegram_id not in settings.ADMIN_TELEGRAM_IDS:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return participant
