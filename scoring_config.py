"""
Scoring and presentation constants for site evaluation.

Owns every threshold that turns a number into a colour or a label, and the
ranges used for placeholder scores and market figures. Nothing here calls
out to a service.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass
from typing import Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class ScoreBand:
    """Maps a minimum score threshold to a colour class."""
    threshold: float
    bg_class: str
    text_class: str = ""


@dataclass(frozen=True)
class IntRange:
    """Inclusive integer range for placeholder values."""
    low: int
    high: int


@dataclass(frozen=True)
class FloatRange:
    """Half-open [0, high) float range for placeholder values."""
    high: float


@dataclass(frozen=True)
class PlaceholderModel:
    """Ranges for the randomly generated parts of a site evaluation.

    QAP / market / priority scores, award probability, flood zone, amenity
    distances, market data and risk data are not computed from any source.
    """
    score: IntRange = IntRange(0, 99)
    award_probabilities: Tuple[str, ...] = ("High", "Medium", "Low")
    flood_zones: Tuple[str, ...] = ("X", "AE", "A")
    risk_levels: Tuple[str, ...] = ("Low", "Medium", "High")

    # amenity -> max distance in miles
    grocery_miles: FloatRange = FloatRange(2.0)
    transit_miles: FloatRange = FloatRange(1.0)
    school_miles: FloatRange = FloatRange(2.0)
    healthcare_miles: FloatRange = FloatRange(5.0)

    job_growth_pct: FloatRange = FloatRange(10.0)
    unemployment_pct: FloatRange = FloatRange(8.0)
    school_rating: IntRange = IntRange(1, 10)
    walk_score: IntRange = IntRange(0, 99)
    transit_score: IntRange = IntRange(0, 99)
    crime_index: IntRange = IntRange(0, 99)

    # address-seeded, stable across re-evaluations
    bike_score: IntRange = IntRange(30, 80)
    traffic_count: IntRange = IntRange(5000, 13000)


# =============================================================================
# Colour bands
# =============================================================================

SCORE_BANDS: Tuple[ScoreBand, ...] = (
    ScoreBand(80, "bg-emerald-500", "text-emerald-600"),
    ScoreBand(70, "bg-green-500", "text-green-600"),
    ScoreBand(60, "bg-lime-500", "text-lime-600"),
    ScoreBand(50, "bg-yellow-500", "text-yellow-600"),
    ScoreBand(40, "bg-amber-500", "text-amber-600"),
    ScoreBand(30, "bg-orange-500", "text-orange-600"),
)
SCORE_BAND_FLOOR = ScoreBand(0, "bg-red-500", "text-red-600")

# Sidebar AMI badge
AMI_BANDS: Tuple[ScoreBand, ...] = (
    ScoreBand(90000, "bg-emerald-100 text-emerald-700"),
    ScoreBand(80000, "bg-amber-100 text-amber-700"),
)
AMI_BAND_FLOOR = ScoreBand(0, "bg-red-100 text-red-700")

# Sidebar headline score: strictly above 85 is top tier
HEADLINE_TOP_EXCLUSIVE = 85
HEADLINE_MID = 70


# =============================================================================
# Thresholds
# =============================================================================

# Batch import "high priority" count
HIGH_PRIORITY_SCORE = 75

# Low-crime filter keeps crime index at or below this
LOW_CRIME_MAX_INDEX = 50

# Flood zone that passes the "exclude flood zones" filter
MINIMAL_FLOOD_ZONE = "X"

AMENITY_KEYS = ("grocery", "transit", "school", "healthcare")

PLACEHOLDERS = PlaceholderModel()

# Fallbacks when no AMI source answers
DEFAULT_AMI = 70000
DEFAULT_VLI = 35000
DEFAULT_SIXTY_PERCENT_AMI = 42000
