"""
County, MSA and Area Median Income lookup.

The FCC Area API resolves a point to state/county/block FIPS. The MSA is
then taken from a static county table (TX, OH, CA, NY) and falls back to
the MSA name the FCC returns. AMI estimates for points outside the HUD map
layer are a state base figure scaled by a county factor.
"""

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import requests

from eval_trace import record_api_outcome

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

_FCC_AREA_API = "https://geo.fcc.gov/api/census/area"
_FCC_TIMEOUT = 10

_COUNTY_SUFFIX = " County"

COUNTY_MSA_TABLE = [
    # Texas
    ("TX", "Harris County", "Houston-The Woodlands-Sugar Land"),
    ("TX", "Travis County", "Austin-Round Rock-Georgetown"),
    ("TX", "Dallas County", "Dallas-Fort Worth-Arlington"),
    ("TX", "Tarrant County", "Dallas-Fort Worth-Arlington"),
    ("TX", "Bexar County", "San Antonio-New Braunfels"),
    ("TX", "El Paso County", "El Paso"),
    ("TX", "Hidalgo County", "McAllen-Edinburg-Mission"),
    ("TX", "Collin County", "Dallas-Fort Worth-Arlington"),
    ("TX", "Denton County", "Dallas-Fort Worth-Arlington"),
    ("TX", "Fort Bend County", "Houston-The Woodlands-Sugar Land"),
    ("TX", "Montgomery County", "Houston-The Woodlands-Sugar Land"),
    ("TX", "Williamson County", "Austin-Round Rock-Georgetown"),
    ("TX", "Nueces County", "Corpus Christi"),
    ("TX", "Victoria County", "Victoria"),
    # Ohio
    ("OH", "Cuyahoga County", "Cleveland-Elyria"),
    ("OH", "Franklin County", "Columbus"),
    ("OH", "Hamilton County", "Cincinnati"),
    ("OH", "Summit County", "Akron"),
    ("OH", "Montgomery County", "Dayton"),
    ("OH", "Lucas County", "Toledo"),
    ("OH", "Butler County", "Cincinnati"),
    ("OH", "Stark County", "Canton-Massillon"),
    ("OH", "Lorain County", "Cleveland-Elyria"),
    ("OH", "Mahoning County", "Youngstown-Warren-Boardman"),
    ("OH", "Lake County", "Cleveland-Elyria"),
    ("OH", "Trumbull County", "Youngstown-Warren-Boardman"),
    ("OH", "Medina County", "Cleveland-Elyria"),
    ("OH", "Portage County", "Akron"),
    ("OH", "Geauga County", "Cleveland-Elyria"),
    # California
    ("CA", "Los Angeles County", "Los Angeles-Long Beach-Anaheim"),
    ("CA", "San Diego County", "San Diego-Chula Vista-Carlsbad"),
    ("CA", "Orange County", "Los Angeles-Long Beach-Anaheim"),
    ("CA", "Riverside County", "Riverside-San Bernardino-Ontario"),
    ("CA", "San Bernardino County", "Riverside-San Bernardino-Ontario"),
    ("CA", "Santa Clara County", "San Jose-Sunnyvale-Santa Clara"),
    ("CA", "Alameda County", "San Francisco-Oakland-Berkeley"),
    # New York
    ("NY", "Kings County", "New York-Newark-Jersey City"),
    ("NY", "Queens County", "New York-Newark-Jersey City"),
    ("NY", "New York County", "New York-Newark-Jersey City"),
    ("NY", "Suffolk County", "New York-Newark-Jersey City"),
    ("NY", "Bronx County", "New York-Newark-Jersey City"),
    ("NY", "Nassau County", "New York-Newark-Jersey City"),
    ("NY", "Westchester County", "New York-Newark-Jersey City"),
    ("NY", "Erie County", "Buffalo-Cheektowaga"),
]

STATE_BASE_AMI = {
    "TX": 72000,
    "CA": 95000,
    "NY": 89000,
    "FL": 68000,
    "OH": 65000,
    "IL": 78000,
}
DEFAULT_BASE_AMI = 70000

VLI_RATIO = 0.5
LI_RATIO = 0.8
SIXTY_PERCENT_RATIO = 0.6

_CITY_STATE_RE = re.compile(r",\s*([^,]+),\s*([A-Z]{2})")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class AreaInfo:
    """FCC Area API result for a point."""
    state_code: str            # "TX"
    state_name: str            # "Texas"
    county_name: str           # "Travis County"
    county_fips: str           # 5-digit state+county FIPS
    block_fips: str = ""       # 15-digit block FIPS, used for tract lookup
    fcc_msa_name: Optional[str] = None


@dataclass
class MsaInfo:
    county: str
    state: str
    fips: str
    msa: Optional[str]
    block_fips: str = ""


@dataclass
class AmiEstimate:
    ami: int
    vli: int
    li: int
    sixty_percent: int


# =============================================================================
# ADDRESS PARSING
# =============================================================================

def parse_city_state(address: str) -> Tuple[str, str]:
    """Pull "City, ST" out of a formatted address.

    >>> parse_city_state("123 Main St, Austin, TX 78701, USA")
    ('Austin', 'TX')
    """
    match = _CITY_STATE_RE.search(address or "")
    if not match:
        return "Unknown", "Unknown"
    return match.group(1), match.group(2)


# =============================================================================
# FCC AREA LOOKUP
# =============================================================================

def lookup_area(lat: float, lng: float) -> Optional[AreaInfo]:
    """Resolve a point to state/county via the FCC Area API, or None."""
    t0 = time.time()
    params = {"lat": lat, "lon": lng, "censusYear": "2020", "format": "json"}
    try:
        resp = requests.get(_FCC_AREA_API, params=params, timeout=_FCC_TIMEOUT)
    except requests.Timeout:
        record_api_outcome("fcc_area", "census/area", t0, 0, False, "timeout")
        logger.warning("FCC Area API timed out for (%.4f, %.4f)", lat, lng)
        return None
    except requests.RequestException:
        record_api_outcome("fcc_area", "census/area", t0, 0, False, "exception")
        logger.warning("FCC Area API failed for (%.4f, %.4f)", lat, lng,
                       exc_info=True)
        return None

    record_api_outcome("fcc_area", "census/area", t0, resp.status_code, resp.ok)
    if not resp.ok:
        logger.warning("FCC Area API returned %d", resp.status_code)
        return None

    try:
        results = resp.json().get("results") or []
    except ValueError:
        logger.warning("FCC Area API returned invalid JSON")
        return None
    if not results or not results[0].get("county_fips"):
        return None

    r = results[0]
    return AreaInfo(
        state_code=r.get("state_code") or "",
        state_name=r.get("state_name") or "",
        county_name=r.get("county_name") or "",
        county_fips=r["county_fips"],
        block_fips=r.get("block_fips") or "",
        fcc_msa_name=r.get("msaName") or None,
    )


# =============================================================================
# MSA TABLE
# =============================================================================

def _strip_suffix(county: str) -> str:
    if county.endswith(_COUNTY_SUFFIX):
        return county[: -len(_COUNTY_SUFFIX)]
    return county


def match_msa(county: str, state_code: str) -> Optional[str]:
    """Scan the county table: exact name, then without/with " County"."""
    rows = [(c, msa) for st, c, msa in COUNTY_MSA_TABLE if st == state_code]

    for c, msa in rows:
        if c == county:
            return msa

    if county.endswith(_COUNTY_SUFFIX):
        bare = _strip_suffix(county)
        for c, msa in rows:
            if _strip_suffix(c) == bare:
                return msa
    else:
        suffixed = county + _COUNTY_SUFFIX
        for c, msa in rows:
            if c == suffixed:
                return msa

    return None


def get_msa(lat: float, lng: float) -> Optional[MsaInfo]:
    """County, state and MSA for a point. None when the FCC lookup fails."""
    area = lookup_area(lat, lng)
    if area is None:
        return None

    msa = match_msa(area.county_name, area.state_code) or area.fcc_msa_name
    return MsaInfo(
        county=area.county_name,
        state=area.state_code or area.state_name,
        fips=area.county_fips,
        msa=msa,
        block_fips=area.block_fips,
    )


# =============================================================================
# AMI ESTIMATE
# =============================================================================

def _round_half_up(x: float) -> int:
    # round() is round-half-to-even; dollar figures round .5 up
    return int(math.floor(x + 0.5))


def get_area_median_income(county: str, state_code: str) -> AmiEstimate:
    """State base AMI scaled by a county factor between 0.8 and 1.2."""
    base = STATE_BASE_AMI.get(state_code, DEFAULT_BASE_AMI)
    county_factor = (len(county or "") % 5) / 10 + 0.8
    ami = _round_half_up(base * county_factor)
    return AmiEstimate(
        ami=ami,
        vli=_round_half_up(ami * VLI_RATIO),
        li=_round_half_up(ami * LI_RATIO),
        sixty_percent=_round_half_up(ami * SIXTY_PERCENT_RATIO),
    )
