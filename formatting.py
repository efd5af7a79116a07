"""Display helpers shared by the dashboard payload and the CSV export."""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from scoring_config import (
    AMI_BANDS,
    AMI_BAND_FLOOR,
    HEADLINE_MID,
    HEADLINE_TOP_EXCLUSIVE,
    SCORE_BANDS,
    SCORE_BAND_FLOOR,
)

EARTH_RADIUS_M = 6371e3
METERS_PER_MILE = 1609.344


def _rounded(value: float, decimals: int) -> Decimal:
    """Round half away from zero: 2.5 -> 3, not banker's 2."""
    return Decimal(str(value)).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


def format_number(num: Optional[float], decimals: int = 0) -> str:
    if num is None:
        return "N/A"
    return f"{_rounded(num, decimals):,.{decimals}f}"


def format_currency(amount: Optional[float]) -> str:
    """Whole US dollars: 72000 -> "$72,000"."""
    if amount is None:
        return "N/A"
    sign = "-" if amount < 0 else ""
    return f"{sign}${_rounded(abs(amount), 0):,.0f}"


def format_percentage(value: Optional[float], decimals: int = 1) -> str:
    """value is already 0-100: 12.345 -> "12.3%"."""
    if value is None:
        return "N/A"
    return f"{_rounded(value, decimals):,.{decimals}f}%"


def _band_for(value: float, bands, floor):
    for band in bands:
        if value >= band.threshold:
            return band
    return floor


def score_color(score: float) -> str:
    return _band_for(score, SCORE_BANDS, SCORE_BAND_FLOOR).bg_class


def score_text_color(score: float) -> str:
    return _band_for(score, SCORE_BANDS, SCORE_BAND_FLOOR).text_class


def ami_color_class(ami: Optional[float]) -> str:
    return _band_for(ami or 0, AMI_BANDS, AMI_BAND_FLOOR).bg_class


def headline_score_color(score: float) -> str:
    if score > HEADLINE_TOP_EXCLUSIVE:
        return "text-emerald-600"
    if score >= HEADLINE_MID:
        return "text-amber-600"
    return "text-red-600"


def truncate(text: Optional[str], length: int) -> str:
    if not text:
        return ""
    return text[:length] + "..." if len(text) > length else text


def distance_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in miles (haversine)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c / METERS_PER_MILE
