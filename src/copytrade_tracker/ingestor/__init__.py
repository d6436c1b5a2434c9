"""Data ingestion layer - Binance copy-trade lead payloads."""

from copytrade_tracker.ingestor.binance_client import BinanceCopyTradeClient
from copytrade_tracker.ingestor.models import (
    LeadPayload,
    PositionAudit,
    RawOrder,
    RawPosition,
)
from copytrade_tracker.ingestor.payload_cache import LeadPayloadCache

__all__ = [
    "BinanceCopyTradeClient",
    "LeadPayload",
    "LeadPayloadCache",
    "PositionAudit",
    "RawOrder",
    "RawPosition",
]
