"""Encoding profiles and the retention tiers they belong to."""
import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List


class QualityTier(str, enum.Enum):
    low = "low-tier"
    mid = "mid-tier"
    high = "high-tier"


TIER_RANK = {QualityTier.low: 0, QualityTier.mid: 1, QualityTier.high: 2}

RETENTION = {
    QualityTier.low: timedelta(days=30),
    QualityTier.mid: timedelta(days=14),
    QualityTier.high: timedelta(days=7),
}


@dataclass(frozen=True)
class QualityProfile:
    name: str
    tier: QualityTier
    height: int
    bitrate: str
    preset: str

    @property
    def rank(self):
        return (TIER_RANK[self.tier], self.height)


PROFILES: Dict[str, QualityProfile] = {
    p.name: p
    for p in (
        QualityProfile("360p", QualityTier.low, 360, "800k", "fast"),
        QualityProfile("540p", QualityTier.low, 540, "1500k", "fast"),
        QualityProfile("720p", QualityTier.mid, 720, "2500k", "medium"),
        QualityProfile("1080p", QualityTier.high, 1080, "5000k", "medium"),
        QualityProfile("2160p", QualityTier.high, 2160, "15000k", "slow"),
        # generic preset per tier
        QualityProfile("low-tier", QualityTier.low, 360, "800k", "fast"),
        QualityProfile("mid-tier", QualityTier.mid, 720, "2500k", "medium"),
        QualityProfile("high-tier", QualityTier.high, 1080, "5000k", "medium"),
    )
}


def is_known(quality: str) -> bool:
    return quality in PROFILES


def profile(quality: str) -> QualityProfile:
    return PROFILES[quality]


def tier_of(quality: str) -> QualityTier:
    """Tier of a quality; unknown names fall into the low tier (longest retention)."""
    p = PROFILES.get(quality)
    return p.tier if p else QualityTier.low


def retention_for(quality: str) -> timedelta:
    return RETENTION[tier_of(quality)]


def fallback_candidates(quality: str) -> List[str]:
    """Qualities in strictly lower tiers, best first.

    Only mid- and high-tier requests have candidates; a low-tier request never
    falls back.
    """
    requested = PROFILES[quality]
    if requested.tier == QualityTier.low:
        return []
    lower = [p for p in PROFILES.values() if TIER_RANK[p.tier] < TIER_RANK[requested.tier]]
    lower.sort(key=lambda p: (p.rank, p.name), reverse=True)
    return [p.name for p in lower]


def lowest(qualities: Iterable[str]) -> str:
    """Lowest quality of a non-empty collection, ties broken by name."""
    return min(qualities, key=lambda q: (TIER_RANK[tier_of(q)], PROFILES[q].height if q in PROFILES else 0, q))


def is_higher(candidate: str, requested: str) -> bool:
    return PROFILES[candidate].rank > PROFILES[requested].rank
