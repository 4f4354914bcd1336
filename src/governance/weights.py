"""Ranking weight vector and its normalization.

The feed score is a pure linear combination of five component scores, so
the weight vector must stay in [0, 1] per component and sum to exactly 1.0.
``normalize_weights`` maintains that invariant for every vector that enters
the system (ballots, aggregates, admin overrides).
"""

import math
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Mapping

from src.governance.errors import WeightNormalizationError

# Fixed-point scale used for largest-remainder rounding
WEIGHT_SCALE = 1000
SUM_TOLERANCE = 1e-6


@dataclass(frozen=True)
class WeightParam:
    """A votable ranking component."""

    key: str
    label: str
    description: str
    default: float = 0.2
    min_value: float = 0.0
    max_value: float = 1.0

    @property
    def column(self) -> str:
        """Database column holding this component's weight."""
        return f"{self.key}_weight"


VOTABLE_WEIGHT_PARAMS: tuple[WeightParam, ...] = (
    WeightParam("recency", "Recency", "How much to favor newer posts"),
    WeightParam("engagement", "Engagement", "Likes, reposts and replies"),
    WeightParam("bridging", "Bridging", "Appeal across different communities"),
    WeightParam("source_diversity", "Source Diversity", "Variety of authors in the feed"),
    WeightParam("relevance", "Relevance", "Topical relevance to the community"),
)

WEIGHT_KEYS: tuple[str, ...] = tuple(p.key for p in VOTABLE_WEIGHT_PARAMS)
WEIGHT_COLUMNS: tuple[str, ...] = tuple(p.column for p in VOTABLE_WEIGHT_PARAMS)


def parse_float(value: Any) -> float:
    """Parse a numeric column that may arrive as float, Decimal or text."""
    if isinstance(value, float):
        return value
    if isinstance(value, (int, Decimal)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"Cannot parse {value!r} as a number")


def parse_int(value: Any, default: int = 0) -> int:
    """Parse a count column (COUNT(*) may arrive as text through some drivers)."""
    if value is None:
        return default
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


@dataclass(frozen=True)
class Weights:
    """Five ranking weights, one per votable component."""

    recency: float
    engagement: float
    bridging: float
    source_diversity: float
    relevance: float

    @classmethod
    def default(cls) -> "Weights":
        return cls(**{p.key: p.default for p in VOTABLE_WEIGHT_PARAMS})

    @classmethod
    def from_values(cls, values: list[float] | tuple[float, ...]) -> "Weights":
        if len(values) != len(WEIGHT_KEYS):
            raise ValueError(f"Expected {len(WEIGHT_KEYS)} weights, got {len(values)}")
        return cls(**dict(zip(WEIGHT_KEYS, values)))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Weights":
        """Build from ``{"recency": ..}`` or ``{"recency_weight": ..}`` keys.

        Also accepts the camelCase ``sourceDiversity`` key written by older
        clients into ``proposed_weights``.
        """
        values = {}
        for param in VOTABLE_WEIGHT_PARAMS:
            if param.key in data:
                raw = data[param.key]
            elif param.column in data:
                raw = data[param.column]
            elif param.key == "source_diversity" and "sourceDiversity" in data:
                raw = data["sourceDiversity"]
            else:
                raise KeyError(f"Missing weight {param.key!r}")
            values[param.key] = parse_float(raw)
        return cls(**values)

    @classmethod
    def from_row(cls, row: Any) -> "Weights | None":
        """Read the five ``*_weight`` columns; None if they are all NULL."""
        raw = [row[column] for column in WEIGHT_COLUMNS]
        if all(v is None for v in raw):
            return None
        if any(v is None for v in raw):
            raise ValueError("Weight columns must be all present or all NULL")
        return cls.from_values([parse_float(v) for v in raw])

    def as_tuple(self) -> tuple[float, ...]:
        return tuple(getattr(self, key) for key in WEIGHT_KEYS)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    def total(self) -> float:
        return sum(self.as_tuple())


def _redistribute_negative_deficit(values: list[float]) -> list[float]:
    deficit = 0.0
    result = list(values)
    for i, value in enumerate(result):
        if value < 0:
            deficit += abs(value)
            result[i] = 0.0

    if deficit == 0:
        return result

    positive_total = sum(v for v in result if v > 0)
    if positive_total <= 0:
        raise WeightNormalizationError(
            "Weights cannot be normalized: unable to redistribute negative deficit"
        )

    return [
        max(0.0, v - (deficit * v) / positive_total) if v > 0 else v
        for v in result
    ]


def _round_to_exact_unit_sum(values: list[float]) -> list[float]:
    """Largest-remainder apportionment of WEIGHT_SCALE units."""
    bases = [math.floor(v * WEIGHT_SCALE) for v in values]
    remainders = [v * WEIGHT_SCALE - b for v, b in zip(values, bases)]
    remaining = WEIGHT_SCALE - sum(bases)

    if remaining > 0:
        order = sorted(range(len(values)), key=lambda i: remainders[i], reverse=True)
        for i in order[:remaining]:
            bases[i] += 1
    elif remaining < 0:
        surplus = -remaining
        for i in sorted(range(len(values)), key=lambda i: remainders[i]):
            if surplus > 0 and bases[i] > 0:
                bases[i] -= 1
                surplus -= 1

    return [b / WEIGHT_SCALE for b in bases]


def normalize_weights(weights: Weights) -> Weights:
    """
    Normalize a weight vector to five values in [0, 1] summing to 1.0.

    Steps: reject non-finite input, map all-zero to equal weights, divide by
    the total, zero out negatives while taking their magnitude proportionally
    from the positives, clamp, renormalize, then round to thousandths with
    largest-remainder apportionment so the sum is exact.

    Args:
        weights: Raw weight vector (any finite values).

    Returns:
        Normalized Weights. Idempotent: normalizing the result returns it
        unchanged.

    Raises:
        WeightNormalizationError: Non-finite input, or no positive mass left
            after redistribution/clamping, or the final vector fails checks.
    """
    values = list(weights.as_tuple())
    if any(not math.isfinite(v) for v in values):
        raise WeightNormalizationError("Weights must be finite numbers")

    total = sum(values)
    if total == 0:
        # Also covers the all-zero vector
        return Weights.from_values([1.0 / len(values)] * len(values))

    normalized = [v / total for v in values]
    redistributed = _redistribute_negative_deficit(normalized)
    clamped = [min(1.0, max(0.0, v)) for v in redistributed]
    clamped_total = sum(clamped)
    if clamped_total <= 0:
        raise WeightNormalizationError(
            "Weights cannot be normalized: no positive weight remains after clamping"
        )

    rounded = _round_to_exact_unit_sum([v / clamped_total for v in clamped])

    for key, value in zip(WEIGHT_KEYS, rounded):
        if not math.isfinite(value) or value < 0 or value > 1:
            raise WeightNormalizationError(
                f"Weights cannot be normalized: {key} is outside [0, 1]"
            )
    if abs(sum(rounded) - 1.0) > SUM_TOLERANCE:
        raise WeightNormalizationError(
            "Weights cannot be normalized: sum is not exactly 1.0"
        )

    return Weights.from_values(rounded)


def validate_weights_sum(weights: Weights, tolerance: float = 0.01) -> bool:
    """Check a submitted vector sums to 1.0 within ``tolerance``."""
    return abs(weights.total() - 1.0) < tolerance


def normalize_keywords(
    keywords: list[str] | None,
    max_keywords: int = 20,
    max_length: int = 50,
) -> list[str]:
    """Lower-case, strip, drop empty/overlong entries, dedupe, and cap."""
    seen: set[str] = set()
    result: list[str] = []
    for keyword in keywords or []:
        k = keyword.lower().strip()
        if not k or len(k) > max_length or k in seen:
            continue
        seen.add(k)
        result.append(k)
    return result[:max_keywords]
