"""Explicit per-call user context. Nothing in the core reads a global current user."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import NotAuthenticatedError


class AuthState(str, Enum):
    LOADING = "loading"
    SIGNED_OUT = "signed_out"
    SIGNED_IN = "signed_in"


@dataclass(frozen=True)
class WorkspaceSession:
    user_id: Optional[str]
    state: AuthState = AuthState.SIGNED_IN

    @classmethod
    def signed_in(cls, user_id: str) -> "WorkspaceSession":
        return cls(user_id=user_id, state=AuthState.SIGNED_IN)

    @classmethod
    def loading(cls) -> "WorkspaceSession":
        return cls(user_id=None, state=AuthState.LOADING)

    @classmethod
    def signed_out(cls) -> "WorkspaceSession":
        return cls(user_id=None, state=AuthState.SIGNED_OUT)

    def require_user(self) -> str:
        """The signed-in user's id; loading and signed-out sessions may do nothing."""
        if self.state is not AuthState.SIGNED_IN or not self.user_id:
            raise NotAuthenticatedError(self.state.value)
        return self.user_id
