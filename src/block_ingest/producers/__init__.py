from .historical import BackfillCoordinator, BackfillResult, BackfillState
from .realtime import RealtimeSubscriber

__all__ = ["BackfillCoordinator", "BackfillResult", "BackfillState", "RealtimeSubscriber"]
