"""Pydantic schemas for the authenticated principal."""

from typing import Optional

from pydantic import BaseModel


class AuthContext(BaseModel):
    """
    Principal on whose behalf a relationship operation runs.

    Passed through every persistence call so the data layer can enforce
    row-level authorization. Background jobs carry the user id of the
    request that enqueued them.
    """

    user_id: str
    token: Optional[str] = None
    is_admin: bool = False

    @classmethod
    def for_job(cls, user_id: Optional[str]) -> "AuthContext":
        """Context for background work acting on behalf of a user."""
        return cls(user_id=user_id or "", token=None)
