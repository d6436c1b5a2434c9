"""Storage layer - Database schemas and repositories."""

from copytrade_tracker.storage.database import DatabaseManager, async_database_url
from copytrade_tracker.storage.models import (
    Base,
    LeadTraderModel,
    PositionStateModel,
    PositionTransitionModel,
    RawIngestModel,
    TradeEventModel,
    TraderScoreModel,
)
from copytrade_tracker.storage.repos import (
    LeadTraderDTO,
    LeadTraderRepository,
    PositionStateDTO,
    PositionStateRepository,
    PositionTransitionDTO,
    PositionTransitionRepository,
    RawIngestDTO,
    RawIngestRepository,
    TradeEventDTO,
    TradeEventRepository,
    TraderScoreDTO,
    TraderScoreRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "LeadTraderDTO",
    "LeadTraderModel",
    "LeadTraderRepository",
    "PositionStateDTO",
    "PositionStateModel",
    "PositionStateRepository",
    "PositionTransitionDTO",
    "PositionTransitionModel",
    "PositionTransitionRepository",
    "RawIngestDTO",
    "RawIngestModel",
    "RawIngestRepository",
    "TradeEventDTO",
    "TradeEventModel",
    "TradeEventRepository",
    "TraderScoreDTO",
    "TraderScoreModel",
    "TraderScoreRepository",
    "async_database_url",
]
