"""Leverage estimates for positions whose leverage is not published.

Derived positions of hidden leads carry no leverage. The estimate falls
back through three sources:

    historical_average  the lead's own live-position leverage, last 7 days
    peer_average        leads with a quality score within 10 points
    default             10x

Confidence:
    historical_average  high at 20+ samples, medium at 10+, else low
    peer_average        medium at 50+ samples, else low
    default             low
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from copytrade_tracker.ingestor.models import RawPosition

ESTIMATE_WINDOW = timedelta(days=7)
MAX_OWN_SAMPLES = 100
PEER_QUALITY_SPREAD = 10
DEFAULT_LEVERAGE = 10

HIGH_CONFIDENCE_SAMPLES = 20
MEDIUM_CONFIDENCE_SAMPLES = 10
MEDIUM_CONFIDENCE_PEER_SAMPLES = 50

METHOD_HISTORICAL = "historical_average"
METHOD_PEER = "peer_average"
METHOD_DEFAULT = "default"


@dataclass(frozen=True)
class LeverageEstimate:
    leverage: int
    confidence: str  # high | medium | low
    sample_size: int
    method: str


def leverage_samples(payload: Mapping[str, Any]) -> list[int]:
    """Positive leverages of the live positions in a stored payload."""
    positions = payload.get("activePositions")
    if not isinstance(positions, list):
        return []
    samples = []
    for item in positions:
        if not isinstance(item, dict):
            continue
        leverage = RawPosition.from_dict(item).leverage
        if leverage is not None and leverage > 0:
            samples.append(leverage)
    return samples


def _rounded_mean(samples: Sequence[int]) -> int:
    return math.floor(sum(samples) / len(samples) + 0.5)


def estimate_leverage(
    own_samples: Sequence[int],
    peer_samples: Sequence[int] = (),
) -> LeverageEstimate:
    """Estimate from the lead's newest samples first, then its peers.

    Args:
        own_samples: The lead's samples, newest first; only the first
            ``MAX_OWN_SAMPLES`` count.
        peer_samples: Samples of leads with a similar quality score.
    """
    own = own_samples[:MAX_OWN_SAMPLES]
    if own:
        if len(own) >= HIGH_CONFIDENCE_SAMPLES:
            confidence = "high"
        elif len(own) >= MEDIUM_CONFIDENCE_SAMPLES:
            confidence = "medium"
        else:
            confidence = "low"
        return LeverageEstimate(_rounded_mean(own), confidence, len(own), METHOD_HISTORICAL)

    if peer_samples:
        confidence = "medium" if len(peer_samples) >= MEDIUM_CONFIDENCE_PEER_SAMPLES else "low"
        return LeverageEstimate(
            _rounded_mean(peer_samples), confidence, len(peer_samples), METHOD_PEER
        )

    return LeverageEstimate(DEFAULT_LEVERAGE, "low", 0, METHOD_DEFAULT)
