"""The acting identity handed to workflows by the identity provider."""

from dataclasses import dataclass
from typing import Optional

from .errors import AuthorizationError
from .models.user import UserRole


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller. ``user_id is None`` means anonymous."""

    user_id: Optional[int] = None
    role: str = UserRole.USER

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @property
    def is_admin(self) -> bool:
        return self.user_id is not None and self.role in UserRole.ADMINS

    def require_user(self) -> int:
        if self.user_id is None:
            raise AuthorizationError("Sign in to continue")
        return self.user_id

    def require_admin(self) -> int:
        if not self.is_admin:
            raise AuthorizationError("Admin access required")
        return self.user_id  # type: ignore[return-value]


ANONYMOUS = Actor()
