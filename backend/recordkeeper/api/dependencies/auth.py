"""Owner identity supplied by the upstream authentication layer."""

from fastapi import Header, HTTPException, status


def get_owner_id(x_owner_id: str | None = Header(None, alias="X-Owner-Id")) -> str:
    """Return the verified owner id; requests without one are rejected."""
    if x_owner_id is None or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized"},
        )
    return x_owner_id.strip()
