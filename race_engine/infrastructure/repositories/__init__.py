from .base import BaseRepository, TenantScopeRequiredError
from .broadcast_repository import BroadcastRepository
from .response_repository import ResponseRepository
from .rfq_repository import RfqRepository
from .status_event_repository import StatusEventRepository

__all__ = [
    "BaseRepository",
    "BroadcastRepository",
    "ResponseRepository",
    "RfqRepository",
    "StatusEventRepository",
    "TenantScopeRequiredError",
]
