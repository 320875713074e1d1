from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(slots=True)
class AuthContext:
    """Resolved caller for one request; the role comes from the stored user, never from the client."""

    user_id: uuid.UUID
    role: str = "agent"
    correlation_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
