# backend/app/services/context.py
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Caller metadata carried into audit records and new sessions."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


ANONYMOUS = RequestContext()
