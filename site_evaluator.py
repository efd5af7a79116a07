#!/usr/bin/env python3
"""
Site Evaluator

Evaluates a U.S. address as a candidate affordable-housing (LIHTC) site:
geocodes it, resolves county and MSA, checks the QCT / DDA / HUD AMI map
layers, derives income limits, and assembles the dashboard record.

QAP, market and priority scores, award probability, flood zone, amenity
distances, market and risk data are placeholders drawn from a random
generator. Only location, designations, AMI figures and the ACS
demographics come from real sources.

Requirements:
- Google Maps API key (Geocoding, Places Autocomplete)
- Mapbox public token (Tilequery against the overlay tilesets), optional

Usage:
    python site_evaluator.py "1100 Congress Ave, Austin, TX 78701"
"""

import argparse
import csv
import hashlib
import io
import json
import logging
import os
import random
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests
from dotenv import load_dotenv

from census import get_demographics, profile_to_dict
from eval_trace import get_trace, set_trace
from location_data import (
    get_area_median_income,
    get_msa,
    parse_city_state,
)
from map_layers import Designations, MapboxClient, MapLayerError
from scoring_config import (
    AMENITY_KEYS,
    DEFAULT_AMI,
    DEFAULT_SIXTY_PERCENT_AMI,
    DEFAULT_VLI,
    LOW_CRIME_MAX_INDEX,
    MINIMAL_FLOOD_ZONE,
    PLACEHOLDERS,
    IntRange,
)

load_dotenv()

logger = logging.getLogger(__name__)

SIXTY_PERCENT_RATIO = 0.6
EFFECTIVE_AMI_VLI_MULTIPLIER = 2


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Amenity:
    exists: bool
    distance: float  # miles


@dataclass
class MarketData:
    job_growth: float
    unemployment: float
    school_rating: int
    walk_score: int
    transit_score: int


@dataclass
class RiskData:
    flood_risk: str
    crime_index: int
    natural_disaster_risk: str


@dataclass
class Site:
    """One evaluated address, as shown on the dashboard."""
    address: str
    lat: float
    lng: float
    city: str = "Unknown"
    state: str = "Unknown"
    county: str = "Unknown"
    msa: str = "Unknown"

    is_qct: bool = False
    is_dda: bool = False
    ami: float = DEFAULT_AMI
    vli_amount: float = DEFAULT_VLI
    sixty_percent_ami: float = DEFAULT_SIXTY_PERCENT_AMI
    effective_ami: float = 0
    ami_source: str = "default"   # "map_layer" | "estimate" | "default"

    qap_score: int = 0
    market_score: int = 0
    priority_score: int = 0
    award_probability: str = ""
    flood_zone: str = ""
    amenities: Dict[str, Amenity] = field(default_factory=dict)
    market_data: Optional[MarketData] = None
    risk_data: Optional[RiskData] = None
    bike_score: int = 0
    traffic_count: int = 0

    demographics: Optional[dict] = None
    map_error: Optional[str] = None
    id: Optional[str] = None
    date_evaluated: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# GOOGLE MAPS
# =============================================================================

class GoogleMapsClient:
    """Client for the Google Geocoding and Places Autocomplete APIs."""

    # Per-call timeout in seconds. p99 for these endpoints is well under 2 s.
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with trace and health recording."""
        from health_monitor import record_call

        t0 = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
        except requests.RequestException as e:
            record_call("google_maps", False, int((time.time() - t0) * 1000), type(e).__name__)
            raise
        elapsed_ms = int((time.time() - t0) * 1000)
        data = response.json()
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        ok = response.ok and provider_status in ("OK", "ZERO_RESULTS")
        record_call("google_maps", ok, elapsed_ms, None if ok else provider_status)
        return data

    def geocode(self, address: str, place_id: Optional[str] = None) -> Tuple[float, float, str]:
        """Address (or place_id) -> (lat, lng, formatted_address).

        A place_id from autocomplete is tried first; on failure the address
        text is geocoded instead.
        """
        url = f"{self.base_url}/geocode/json"

        if place_id:
            data = self._traced_get("geocode", url, {"place_id": place_id, "key": self.api_key})
            if data.get("status") == "OK" and data.get("results"):
                return self._first_location(data, address)
            logger.warning(
                "Geocode by place_id=%s failed (%s), falling back to address",
                place_id, data.get("status"),
            )

        data = self._traced_get("geocode", url, {"address": address, "key": self.api_key})
        if data.get("status") != "OK" or not data.get("results"):
            raise ValueError(f"Geocoding failed: {data.get('status')}")
        return self._first_location(data, address)

    @staticmethod
    def _first_location(data: dict, fallback_address: str) -> Tuple[float, float, str]:
        first = data["results"][0]
        location = first["geometry"]["location"]
        return (
            location["lat"],
            location["lng"],
            first.get("formatted_address") or fallback_address,
        )

    def reverse_geocode(self, lat: float, lng: float) -> str:
        """Formatted address for a map click."""
        url = f"{self.base_url}/geocode/json"
        data = self._traced_get("reverse_geocode", url, {"latlng": f"{lat},{lng}", "key": self.api_key})
        if data.get("status") != "OK" or not data.get("results"):
            raise ValueError(
                f"Geocoder failed due to: {data.get('status')}. No results found for coordinates."
            )
        return data["results"][0]["formatted_address"]

    def autocomplete(self, text: str) -> List[Dict[str, str]]:
        """US street-address suggestions: [{description, place_id}]."""
        url = f"{self.base_url}/place/autocomplete/json"
        params = {
            "input": text,
            "types": "address",
            "components": "country:us",
            "key": self.api_key,
        }
        data = self._traced_get("autocomplete", url, params)
        if data.get("status") not in ("OK", "ZERO_RESULTS"):
            raise ValueError(f"Places Autocomplete failed: {data.get('status')}")
        return [
            {"description": p.get("description", ""), "place_id": p.get("place_id", "")}
            for p in data.get("predictions", [])
        ]


# =============================================================================
# PLACEHOLDERS
# =============================================================================

def _rand_int(rng: random.Random, r: IntRange) -> int:
    return rng.randint(r.low, r.high)


def consistent_number(low: int, high: int, seed: str) -> int:
    """Stable pseudo-random integer in [low, high] for a seed string."""
    digest = hashlib.sha256((seed or "").encode("utf-8")).hexdigest()
    return low + int(digest[:12], 16) % (high - low + 1)


def generate_placeholders(site: Site, rng: random.Random) -> None:
    """Fill the randomly generated dashboard fields in place."""
    p = PLACEHOLDERS
    site.qap_score = _rand_int(rng, p.score)
    site.market_score = _rand_int(rng, p.score)
    site.priority_score = _rand_int(rng, p.score)
    site.award_probability = rng.choice(p.award_probabilities)
    site.flood_zone = rng.choice(p.flood_zones)
    site.amenities = {
        "grocery": Amenity(True, round(rng.random() * p.grocery_miles.high, 2)),
        "transit": Amenity(True, round(rng.random() * p.transit_miles.high, 2)),
        "school": Amenity(True, round(rng.random() * p.school_miles.high, 2)),
        "healthcare": Amenity(True, round(rng.random() * p.healthcare_miles.high, 2)),
    }
    site.market_data = MarketData(
        job_growth=round(rng.random() * p.job_growth_pct.high, 1),
        unemployment=round(rng.random() * p.unemployment_pct.high, 1),
        school_rating=_rand_int(rng, p.school_rating),
        walk_score=_rand_int(rng, p.walk_score),
        transit_score=_rand_int(rng, p.transit_score),
    )
    site.risk_data = RiskData(
        flood_risk=rng.choice(p.risk_levels),
        crime_index=_rand_int(rng, p.crime_index),
        natural_disaster_risk=rng.choice(p.risk_levels),
    )
    site.bike_score = consistent_number(p.bike_score.low, p.bike_score.high, site.address)
    site.traffic_count = consistent_number(p.traffic_count.low, p.traffic_count.high, site.address)


# =============================================================================
# AMI
# =============================================================================

def apply_ami(site: Site, designations: Designations) -> None:
    """Income limits from the HUD map layer when present, else the estimate."""
    if designations.ami is not None:
        site.ami = designations.ami
        site.vli_amount = designations.vli or 0
        site.sixty_percent_ami = designations.ami * SIXTY_PERCENT_RATIO
        site.effective_ami = site.vli_amount * EFFECTIVE_AMI_VLI_MULTIPLIER
        site.ami_source = "map_layer"
        return

    estimate = get_area_median_income(site.county, site.state)
    site.ami = estimate.ami
    site.vli_amount = estimate.vli
    site.sixty_percent_ami = estimate.sixty_percent
    site.effective_ami = estimate.vli * EFFECTIVE_AMI_VLI_MULTIPLIER
    site.ami_source = "estimate"


# =============================================================================
# MAIN EVALUATION
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* as one traced stage. Without an active trace, just log its duration."""
    trace = get_trace()
    if trace:
        with trace.stage(stage_name):
            return fn(*args, **kwargs)
    t0 = time.time()
    try:
        return fn(*args, **kwargs)
    finally:
        logger.info("  [stage] %s finished in %.1fs", stage_name, time.time() - t0)


def _timed_stage_in_thread(parent_trace, stage_name, fn, *args, **kwargs):
    """Run _timed_stage in a child thread with trace propagation."""
    set_trace(parent_trace)
    return _timed_stage(stage_name, fn, *args, **kwargs)


def evaluate_site(
    address: Optional[str],
    google_api_key: str,
    mapbox_token: Optional[str] = None,
    place_id: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    rng: Optional[random.Random] = None,
    on_stage: Optional[Callable[[str], None]] = None,
) -> Site:
    """Evaluate one address (or a map click at lat/lng).

    Only the geocode stage is fatal. Every later stage degrades to the
    site defaults: Unknown county/MSA, not QCT/DDA, estimated AMI.

    on_stage: optional callback(stage_name) for progress reporting.
    """
    rng = rng or random.Random()

    def _run_stage(name: str, fn, *args, **kwargs):
        if on_stage:
            on_stage(name)
        return _timed_stage(name, fn, *args, **kwargs)

    maps = GoogleMapsClient(google_api_key)

    if lat is not None and lng is not None:
        if not address:
            address = _run_stage("geocode", maps.reverse_geocode, lat, lng)
    else:
        if not address and not place_id:
            raise ValueError("An address, place_id or lat/lng is required")
        lat, lng, formatted = _run_stage("geocode", maps.geocode, address or "", place_id=place_id)
        address = address or formatted

    city, state = parse_city_state(address)
    site = Site(address=address, lat=lat, lng=lng, city=city, state=state)

    # msa and designations only need coordinates; run them side by side.
    mapbox = MapboxClient(mapbox_token)
    parent_trace = get_trace()
    if on_stage:
        on_stage("location")
    with ThreadPoolExecutor(max_workers=2) as pool:
        msa_future = pool.submit(_timed_stage_in_thread, parent_trace, "msa", get_msa, lat, lng)
        desig_future = pool.submit(
            _timed_stage_in_thread, parent_trace, "designations",
            mapbox.check_location_designations, lng, lat,
        )

        msa_info = None
        try:
            msa_info = msa_future.result()
        except Exception:
            logger.warning("MSA lookup failed for %r", address, exc_info=True)

        designations = Designations()
        try:
            designations = desig_future.result()
        except MapLayerError as e:
            site.map_error = str(e)
            logger.warning("Designation lookup failed for %r: %s", address, e)
        except Exception:
            logger.warning("Designation lookup failed for %r", address, exc_info=True)

    if mapbox.token_error:
        site.map_error = mapbox.token_error

    block_fips = ""
    if msa_info:
        site.county = msa_info.county
        site.state = msa_info.state
        site.msa = msa_info.msa or f"{site.city}, {site.state}"
        block_fips = msa_info.block_fips
        if site.city == "Unknown":
            site.city = site.county.split(" ")[0]

    site.is_qct = designations.is_qct
    site.is_dda = designations.is_dda

    try:
        _run_stage("ami", apply_ami, site, designations)
    except Exception:
        logger.warning("AMI stage failed for %r; keeping defaults", address, exc_info=True)

    try:
        profile = _run_stage("census", get_demographics, lat, lng, block_fips)
        site.demographics = profile_to_dict(profile)
    except Exception:
        logger.warning("Census stage failed for %r", address, exc_info=True)

    _run_stage("scoring", generate_placeholders, site, rng)
    return site


# =============================================================================
# FILTERS
# =============================================================================

ANY = "any"
ALL = "all"


@dataclass
class FilterSettings:
    state: str = ALL
    county: str = ALL
    qct_only: bool = False
    dda_only: bool = False
    min_market_score: float = 0
    min_qap_score: float = 0
    award_probability: str = ANY
    amenities: Dict[str, str] = field(
        default_factory=lambda: {k: ANY for k in AMENITY_KEYS}
    )
    exclude_flood_zones: bool = False
    low_crime_only: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "FilterSettings":
        """Defaults overlaid with whatever keys the caller sent.

        Raises ValueError for unknown keys and for values of the wrong type.
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("filters must be an object")
        defaults = {f.name: f.default for f in fields(cls)}
        settings = cls()
        for key, value in data.items():
            if key not in defaults:
                raise ValueError(f"Unknown filter: {key}")
            if key == "amenities":
                if not isinstance(value, dict):
                    raise ValueError("amenities must be an object")
                for name, limit in value.items():
                    if name not in AMENITY_KEYS:
                        raise ValueError(f"Unknown amenity: {name}")
                    _amenity_limit(limit)
                    settings.amenities[name] = ANY if limit is None else str(limit)
            else:
                setattr(settings, key, _filter_value(key, value, defaults[key]))
        return settings

    def to_dict(self) -> dict:
        return asdict(self)


def _amenity_limit(value: str) -> Optional[float]:
    if value in (ANY, "", None):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Amenity distance must be 'any' or miles, got {value!r}")


def _filter_value(key: str, value, default):
    """Check *value* against the type of the filter's default."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{key} must be true or false")
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool):
            raise ValueError(f"{key} must be a number")
        if isinstance(value, (int, float)):
            return value
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be a number, got {value!r}")
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _site_passes(site: dict, f: FilterSettings, amenity_limits: Dict[str, float]) -> bool:
    if f.state != ALL and (site.get("state") or "").lower() != f.state.lower():
        return False
    if f.county != ALL and (site.get("county") or "").lower() != f.county.lower():
        return False
    if f.qct_only and not site.get("is_qct"):
        return False
    if f.dda_only and not site.get("is_dda"):
        return False
    # A score of 0 is treated as "not scored" and never excluded.
    market = site.get("market_score")
    if market and market < f.min_market_score:
        return False
    qap = site.get("qap_score")
    if qap and qap < f.min_qap_score:
        return False
    if (f.award_probability != ANY
            and (site.get("award_probability") or "").lower() != f.award_probability.lower()):
        return False
    if f.exclude_flood_zones and site.get("flood_zone") != MINIMAL_FLOOD_ZONE:
        return False
    risk = site.get("risk_data")
    if f.low_crime_only and risk and risk.get("crime_index", 0) > LOW_CRIME_MAX_INDEX:
        return False
    for name, limit in amenity_limits.items():
        amenity = (site.get("amenities") or {}).get(name)
        if not amenity or not amenity.get("exists") or amenity.get("distance", 0) > limit:
            return False
    return True


def apply_filters(sites: Iterable[dict], settings: FilterSettings) -> List[dict]:
    """Sites (dict form) that pass every active filter, order preserved."""
    limits = {}
    for name, value in settings.amenities.items():
        limit = _amenity_limit(value)
        if limit is not None:
            limits[name] = limit
    return [s for s in sites if _site_passes(s, settings, limits)]


# =============================================================================
# CSV EXPORT
# =============================================================================

CSV_HEADER = [
    "Address",
    "QAP Score",
    "Market Score",
    "Priority Score",
    "QCT",
    "DDA",
    "AMI",
    "Award Probability",
]


def export_sites_csv(sites: Iterable[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for s in sites:
        writer.writerow([
            s.get("address", ""),
            s.get("qap_score", ""),
            s.get("market_score", ""),
            s.get("priority_score", ""),
            "Yes" if s.get("is_qct") else "No",
            "Yes" if s.get("is_dda") else "No",
            s.get("ami", ""),
            s.get("award_probability", ""),
        ])
    return buf.getvalue()


# =============================================================================
# CLI
# =============================================================================

def main():
    parser = argparse.ArgumentParser(description="Evaluate a candidate LIHTC site")
    parser.add_argument("address", help="Street address to evaluate")
    parser.add_argument("--seed", type=int, help="Seed for placeholder values")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    api_key = os.environ.get("GOOGLE_MAPS_API_KEY")
    if not api_key:
        print("GOOGLE_MAPS_API_KEY is not set", file=sys.stderr)
        sys.exit(1)

    site = evaluate_site(
        args.address,
        api_key,
        mapbox_token=os.environ.get("MAPBOX_ACCESS_TOKEN"),
        rng=random.Random(args.seed) if args.seed is not None else None,
    )
    print(json.dumps(site.to_dict(), indent=2, default=str))


if __name__ == "__main__":
    main()
