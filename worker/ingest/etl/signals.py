"""Keyword scoring for how likely a business is Muslim-owned or Muslim-serving."""

from typing import Dict, List, Optional, Tuple

from ingest.core.models import Signal, SignalAnalysis

SIGNAL_TABLE_VERSION = "2024.1"

STRONG = 20
MEDIUM = 15
WEAK = 5


def _tier(tier: str, weight: int, *keywords: str) -> Tuple[Signal, ...]:
    return tuple(Signal(keyword=keyword, weight=weight, tier=tier) for keyword in keywords)


# Short or ambiguous tokens ("eid", "dua", "al-") are left out on purpose:
# they match inside ordinary English words and names.
SIGNAL_TABLE: Tuple[Signal, ...] = (
    _tier(
        "strong",
        STRONG,
        "halal",
        "zabiha",
        "masjid",
        "mosque",
        "islamic center",
        "muslim-owned",
        "muslim owned",
        "halal certified",
        "hand slaughtered",
        "islamically slaughtered",
        "sharia compliant",
        "shariah compliant",
        "riba-free",
        "islamic finance",
        "takaful",
        "murabaha",
    )
    + _tier(
        "medium",
        MEDIUM,
        "islamic",
        "muslim",
        "jummah",
        "quran",
        "ramadan",
        "iftar",
        "suhoor",
        "bismillah",
        "assalamu alaikum",
        "hijab",
        "abaya",
        "sukuk",
        "interest-free",
    )
    + _tier("weak", WEAK, "prayer room", "crescent", "ummah", "wudu", "musalla", "imam", "ablution", "minaret")
)

_WEIGHTS: Dict[str, int] = {signal.keyword: signal.weight for signal in SIGNAL_TABLE}


def analyze(text: Optional[str]) -> SignalAnalysis:
    """Score ``text`` against the signal table.

    Each keyword counts once no matter how often it appears. Matched keywords
    are listed in order of first appearance in the text.
    """
    if not text:
        return SignalAnalysis(score=0, signals=())

    lowered = text.casefold()
    hits: List[Tuple[int, int, str]] = []
    for order, signal in enumerate(SIGNAL_TABLE):
        position = lowered.find(signal.keyword)
        if position >= 0:
            hits.append((position, order, signal.keyword))

    hits.sort()
    signals = tuple(keyword for _, _, keyword in hits)
    score = min(100, sum(_WEIGHTS[keyword] for keyword in signals))
    return SignalAnalysis(score=score, signals=signals)


def weight_of(keyword: str) -> int:
    return _WEIGHTS.get(keyword.casefold(), 0)
