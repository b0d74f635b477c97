"""Request context for ownership enforcement."""

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class RequestContext:
    """Request context containing the caller's identity.

    Used to scope every document, chunk and chat query to its owner.
    """

    user_id: UUID
