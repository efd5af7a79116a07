"""
ACS 5-year demographic profile for an evaluated site.

Tract-level figures from four ACS tables, each paired with the county
value for comparison:
  B11005  households with children under 18
  B25003  tenure (owner / renter)
  B08301  commute mode
  B25064  median gross rent

The tract comes from the block FIPS the FCC lookup already returned; when
that is missing the Census Geocoder resolves it. Profiles are cached in
SQLite for 90 days.

This data is context for the demographics tab only. It never feeds the
QAP, market or priority scores.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

import requests

from eval_trace import record_api_outcome
from models import get_census_cache, set_census_cache

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

_CENSUS_GEOCODER = "https://geocoding.geo.census.gov/geocoder/geographies/coordinates"
_ACS_BASE = "https://api.census.gov/data/2022/acs/acs5"

_GEOCODER_TIMEOUT = 10
_ACS_TIMEOUT = 15

# Census "estimate not available" sentinel
_CENSUS_MISSING = "-666666666"

# variable -> field name in the parsed row
_ACS_FIELDS = {
    "B11005_001E": "households",
    "B11005_002E": "households_with_children",
    "B25003_001E": "occupied_units",
    "B25003_002E": "owner_occupied",
    "B25003_003E": "renter_occupied",
    "B08301_001E": "workers",
    "B08301_003E": "drove_alone",
    "B08301_004E": "carpooled",
    "B08301_010E": "public_transit",
    "B08301_018E": "bicycle",
    "B08301_019E": "walked",
    "B08301_021E": "worked_from_home",
    "B25064_001E": "median_gross_rent",
}

_COMMUTE_FIELDS = (
    "drove_alone", "carpooled", "public_transit",
    "bicycle", "walked", "worked_from_home",
)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class AreaDemographics:
    """Percentages (0-100) for one geography, tract or county."""
    name: str = ""
    households: int = 0
    children_pct: float = 0.0
    owner_pct: float = 0.0
    renter_pct: float = 0.0
    commute_pct: Dict[str, float] = field(default_factory=dict)
    median_gross_rent: Optional[int] = None


@dataclass
class DemographicProfile:
    geoid: str                              # 11-digit tract GEOID
    tract: AreaDemographics
    county: Optional[AreaDemographics] = None


# =============================================================================
# HELPERS
# =============================================================================

def _to_int(val: Any) -> Optional[int]:
    if val is None or val == "" or str(val) == _CENSUS_MISSING:
        return None
    try:
        return int(float(val))
    except (TypeError, ValueError):
        return None


def _pct(part: Optional[int], whole: Optional[int]) -> float:
    if not whole or part is None:
        return 0.0
    return round(part / whole * 100, 1)


def _split_geoid(block_fips: str) -> Optional[Dict[str, str]]:
    # block FIPS = SS CCC TTTTTT BBBB
    if not block_fips or len(block_fips) < 11:
        return None
    return {
        "state": block_fips[:2],
        "county": block_fips[2:5],
        "tract": block_fips[5:11],
    }


# =============================================================================
# TRACT RESOLUTION
# =============================================================================

def lookup_tract(lat: float, lng: float) -> Optional[Dict[str, str]]:
    """Census Geocoder point lookup -> {state, county, tract}, or None."""
    t0 = time.time()
    params = {
        "x": lng,
        "y": lat,
        "benchmark": "Public_AR_Current",
        "vintage": "Current_Current",
        "layers": "Census Tracts",
        "format": "json",
    }
    try:
        resp = requests.get(_CENSUS_GEOCODER, params=params,
                            timeout=_GEOCODER_TIMEOUT)
    except requests.Timeout:
        record_api_outcome("census_geocoder", "geographies/coordinates", t0,
                           0, False, "timeout")
        logger.warning("Census Geocoder timed out for (%.4f, %.4f)", lat, lng)
        return None
    except requests.RequestException:
        record_api_outcome("census_geocoder", "geographies/coordinates", t0,
                           0, False, "exception")
        logger.warning("Census Geocoder failed for (%.4f, %.4f)", lat, lng,
                       exc_info=True)
        return None

    record_api_outcome("census_geocoder", "geographies/coordinates", t0,
                       resp.status_code, resp.ok)
    if not resp.ok:
        logger.warning("Census Geocoder returned %d", resp.status_code)
        return None

    try:
        tracts = (resp.json().get("result", {})
                  .get("geographies", {})
                  .get("Census Tracts", []))
    except ValueError:
        return None
    if not tracts:
        return None
    t = tracts[0]
    if not (t.get("STATE") and t.get("COUNTY") and t.get("TRACT")):
        return None
    return {"state": t["STATE"], "county": t["COUNTY"], "tract": t["TRACT"]}


# =============================================================================
# ACS FETCH + PARSE
# =============================================================================

def _fetch_acs_row(geo_for: str, geo_in: str, api_key: str,
                   endpoint: str) -> Optional[Dict[str, str]]:
    """One ACS row as {variable: value}, or None on any failure."""
    params = {
        "get": "NAME," + ",".join(_ACS_FIELDS),
        "for": geo_for,
        "in": geo_in,
    }
    if api_key:
        params["key"] = api_key

    t0 = time.time()
    try:
        resp = requests.get(_ACS_BASE, params=params, timeout=_ACS_TIMEOUT)
    except requests.Timeout:
        record_api_outcome("census_acs", endpoint, t0, 0, False, "timeout")
        logger.warning("Census ACS timed out for %s in %s", geo_for, geo_in)
        return None
    except requests.RequestException:
        record_api_outcome("census_acs", endpoint, t0, 0, False, "exception")
        logger.warning("Census ACS failed for %s in %s", geo_for, geo_in,
                       exc_info=True)
        return None

    record_api_outcome("census_acs", endpoint, t0, resp.status_code, resp.ok)
    if not resp.ok:
        logger.warning("Census ACS returned %d for %s in %s",
                       resp.status_code, geo_for, geo_in)
        return None

    try:
        data = resp.json()
    except ValueError:
        return None
    if not data or len(data) < 2:
        return None
    return dict(zip(data[0], data[1]))


def parse_acs_row(row: Dict[str, str]) -> AreaDemographics:
    v = {name: _to_int(row.get(var)) for var, name in _ACS_FIELDS.items()}
    workers = v["workers"]
    return AreaDemographics(
        name=(row.get("NAME") or "").split(",")[0],
        households=v["households"] or 0,
        children_pct=_pct(v["households_with_children"], v["households"]),
        owner_pct=_pct(v["owner_occupied"], v["occupied_units"]),
        renter_pct=_pct(v["renter_occupied"], v["occupied_units"]),
        commute_pct={f: _pct(v[f], workers) for f in _COMMUTE_FIELDS},
        median_gross_rent=v["median_gross_rent"],
    )


def _from_cache(key: str) -> Optional[AreaDemographics]:
    cached = get_census_cache(key)
    if cached is None:
        return None
    try:
        return AreaDemographics(**json.loads(cached))
    except (ValueError, TypeError):
        logger.warning("Discarding unreadable census cache entry %s", key)
        return None


def _area(key: str, geo_for: str, geo_in: str, api_key: str,
          endpoint: str) -> Optional[AreaDemographics]:
    area = _from_cache(key)
    if area is not None:
        return area
    row = _fetch_acs_row(geo_for, geo_in, api_key, endpoint)
    if row is None:
        return None
    area = parse_acs_row(row)
    set_census_cache(key, json.dumps(asdict(area)))
    return area


# =============================================================================
# PUBLIC API
# =============================================================================

def get_demographics(lat: float, lng: float,
                     block_fips: str = "") -> Optional[DemographicProfile]:
    """ACS profile for the tract containing the point, or None.

    Never raises for network or data problems; demographics are optional.
    """
    api_key = os.environ.get("CENSUS_API_KEY", "")

    geo = _split_geoid(block_fips) or lookup_tract(lat, lng)
    if not geo:
        logger.info("Could not resolve (%.4f, %.4f) to a census tract", lat, lng)
        return None

    state, county, tract = geo["state"], geo["county"], geo["tract"]
    tract_area = _area(
        f"tract:{state}{county}{tract}",
        f"tract:{tract}", f"state:{state} county:{county}",
        api_key, "acs5/tract",
    )
    if tract_area is None:
        return None

    county_area = _area(
        f"county:{state}{county}",
        f"county:{county}", f"state:{state}",
        api_key, "acs5/county",
    )
    return DemographicProfile(
        geoid=f"{state}{county}{tract}",
        tract=tract_area,
        county=county_area,
    )


def profile_to_dict(profile: Optional[DemographicProfile]) -> Optional[dict]:
    return asdict(profile) if profile else None
