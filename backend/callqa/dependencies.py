"""
Shared FastAPI dependencies and ownership checks.
"""
from fastapi import Header, HTTPException

from callqa.services.auth import verify_bearer


async def get_current_user(authorization: str | None = Header(default=None)) -> int:
    """Authenticated user id, or 401."""
    try:
        return verify_bearer(authorization)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=f"Authentication required: {e}")


def ensure_owner(row, user_id: int, label: str = "Session"):
    """404 when the row does not exist, 403 when it belongs to someone else."""
    if row is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    if row.user_id != user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return row
