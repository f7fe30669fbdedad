from typing import Optional

from fastapi import Header, HTTPException

USER_HEADER = "X-User-Id"


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias=USER_HEADER)) -> str:
    """Caller identity as verified by the upstream auth gateway. Trusted as-is."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Access Denied")
    return user_id
