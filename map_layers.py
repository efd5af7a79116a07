"""
Mapbox layer configuration and QCT / DDA / HUD AMI designation lookup.

The three overlay layers live in Mapbox vector tilesets. Whether a point
falls inside a Qualified Census Tract or Difficult Development Area, and
the HUD AMI figure for its area, are read with the Tilequery API against
those same tilesets, so the service reports exactly what the map shows.

Retry policy: timeouts, connection errors, 429 and 5xx are retried up to
MAX_RETRY_ATTEMPTS times, RETRY_DELAY seconds apart. Configuration
failures (bad token, missing tileset, billing) are raised immediately.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

import requests

from eval_trace import record_api_outcome

logger = logging.getLogger(__name__)


# =============================================================================
# LAYERS + STYLES
# =============================================================================

@dataclass(frozen=True)
class LayerConfig:
    key: str
    source_id: str
    layer_id: str
    source_layer: str
    tileset: str
    fill_color: str
    fill_opacity: float = 0.5

    @property
    def url(self) -> str:
        return f"mapbox://{self.tileset}"

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "source_id": self.source_id,
            "layer_id": self.layer_id,
            "source_layer": self.source_layer,
            "url": self.url,
            "paint": {
                "fill-color": self.fill_color,
                "fill-opacity": self.fill_opacity,
            },
        }


LAYER_CONFIGS: Dict[str, LayerConfig] = {
    "qct": LayerConfig(
        key="qct",
        source_id="qct-source",
        layer_id="2025_QCT",
        source_layer="2025_QCT",
        tileset=os.environ.get("MAPBOX_QCT_TILESET", "rbmlivingllc.2025_QCT"),
        fill_color="#088",
    ),
    "ami": LayerConfig(
        key="ami",
        source_id="ami-source",
        layer_id="2024_HUD AMI",
        source_layer="2024_HUD_AMI",
        tileset=os.environ.get("MAPBOX_AMI_TILESET", "rbmlivingllc.2024_HUD_AMI"),
        fill_color="#f28cb1",
    ),
    "dda": LayerConfig(
        key="dda",
        source_id="dda-source",
        layer_id="2025_DDA",
        source_layer="2025_DDA",
        tileset=os.environ.get("MAPBOX_DDA_TILESET", "rbmlivingllc.2025_DDA"),
        fill_color="#51bbd6",
    ),
}

MAP_STYLES = {
    "standard": "mapbox://styles/mapbox/streets-v12",
    "satellite": "mapbox://styles/mapbox/satellite-streets-v12",
    "custom": "mapbox://styles/rbmlivingllc/cm9ys0y4c01fd01s5e5v3hb1u",
}
DEFAULT_STYLE = "custom"

# Map views: (lng, lat), zoom
INITIAL_VIEW = {"center": [-98.5795, 39.8283], "zoom": 3}
RESET_VIEW = {"center": [-97.7431, 30.2672], "zoom": 5}
SITE_ZOOM = 14

AMI_PROPERTY = "2025 HUD AMI Data - Condensed Date 4.26.252025 HUD AMI"
VLI_PROPERTIES = ("VLI", "vli")
VLI_RATIO = 0.5

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY = 2  # seconds

_TILEQUERY_URL = "https://api.mapbox.com/v4/{tilesets}/tilequery/{lng},{lat}.json"
_TILEQUERY_TIMEOUT = 10
_CONFIG_ERROR_STATUSES = (401, 402, 403, 404)


def style_url(style: str) -> str:
    """Mapbox style URL for a named style; unknown names fall back to custom."""
    if style not in MAP_STYLES:
        logger.warning("Unexpected map style: %s. Defaulting to custom style.", style)
        return MAP_STYLES[DEFAULT_STYLE]
    return MAP_STYLES[style]


# =============================================================================
# ERRORS
# =============================================================================

class MapLayerError(Exception):
    """Designation lookup failed; message is user-facing."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def validate_mapbox_token(token) -> Optional[str]:
    """Return an error message for an unusable token, or None if it looks valid."""
    if token is None or token == "":
        return "Mapbox access token is missing. Please check your environment variables."
    if not isinstance(token, str):
        return "Invalid Mapbox access token type. Token must be a string."
    if token.strip() == "":
        return "Mapbox access token is empty. Please provide a valid token."
    if not token.startswith("pk."):
        return 'Invalid Mapbox access token format. Public tokens should start with "pk."'
    return None


def describe_map_error(status: Optional[int] = None, message: str = "") -> str:
    """Turn a Mapbox failure into a message fit for the dashboard."""
    if "Mapbox access token" in message:
        return message
    if status == 401:
        return ("Invalid Mapbox access token. Please check your credentials "
                "and ensure the token is valid.")
    if status == 402:
        return ("Mapbox account has reached its rate limit or requires a payment "
                "method. Please check your account status.")
    if status == 403:
        return "Access forbidden. Your Mapbox token may not have the required permissions."
    if status == 404:
        return ("Map style or resource not found. Please check your style "
                "configuration and ensure all URLs are correct.")
    if "style" in message:
        return "Failed to load map style. Please verify the style URL is correct and accessible."
    if "source" in message:
        return "Failed to load map data source. Please check the layer configuration and URLs."
    if "network" in message or "Failed to fetch" in message:
        return "Network error. Please check your internet connection and try again."
    if not message:
        return ("An unexpected error occurred while loading the map. "
                "Please check the logs for more details.")
    return f"Map error: {message}"


# =============================================================================
# ACTIVE LAYER STATE
# =============================================================================

class LayerState:
    """Which overlay layers are switched on. All three by default."""

    def __init__(self, active: Optional[Iterable[str]] = None):
        if active is None:
            active = LAYER_CONFIGS.keys()
        self._active: Set[str] = {k for k in active if k in LAYER_CONFIGS}

    def toggle(self, layer: str) -> bool:
        """Flip a layer on/off. Returns the new visibility."""
        if layer not in LAYER_CONFIGS:
            raise ValueError(f"Unknown map layer: {layer}")
        if layer in self._active:
            self._active.discard(layer)
            return False
        self._active.add(layer)
        return True

    def is_active(self, layer: str) -> bool:
        return layer in self._active

    def to_list(self) -> List[str]:
        return sorted(self._active)


def map_config(style: str, layers: LayerState,
               token: Optional[str] = None) -> dict:
    """Everything a map client needs to draw the overlays."""
    style_name = style if style in MAP_STYLES else DEFAULT_STYLE
    return {
        "style": style_name,
        "style_url": style_url(style),
        "token_error": validate_mapbox_token(token),
        "layers": [
            dict(cfg.to_dict(),
                 visibility="visible" if layers.is_active(key) else "none")
            for key, cfg in LAYER_CONFIGS.items()
        ],
        "initial_view": INITIAL_VIEW,
        "reset_view": RESET_VIEW,
        "site_zoom": SITE_ZOOM,
    }


# =============================================================================
# DESIGNATIONS
# =============================================================================

@dataclass
class Designations:
    is_qct: bool = False
    is_dda: bool = False
    ami: Optional[float] = None
    vli: Optional[float] = None
    layers_hit: List[str] = field(default_factory=list)


def _to_number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).replace("$", "").replace(",", "").strip())
    except ValueError:
        return None


def _feature_layer(feature: dict) -> str:
    return ((feature.get("properties") or {}).get("tilequery") or {}).get("layer", "")


def _matches(layer_name: str, cfg: LayerConfig) -> bool:
    return cfg.layer_id in layer_name or cfg.source_layer in layer_name


def designations_from_features(features: List[dict]) -> Designations:
    """Fold Tilequery features into QCT/DDA flags and AMI/VLI figures."""
    result = Designations()
    ami_value = None
    vli_value = None

    for feature in features:
        layer_name = _feature_layer(feature)
        if _matches(layer_name, LAYER_CONFIGS["qct"]):
            result.is_qct = True
        if _matches(layer_name, LAYER_CONFIGS["dda"]):
            result.is_dda = True
        if _matches(layer_name, LAYER_CONFIGS["ami"]):
            props = feature.get("properties") or {}
            ami_value = _to_number(props.get(AMI_PROPERTY))
            for prop in VLI_PROPERTIES:
                if props.get(prop) is not None:
                    vli_value = _to_number(props[prop])
                    break
        if layer_name and layer_name not in result.layers_hit:
            result.layers_hit.append(layer_name)

    result.ami = ami_value
    if vli_value:
        result.vli = vli_value
    elif ami_value:
        result.vli = ami_value * VLI_RATIO
    else:
        result.vli = 0
    return result


class _RetryableError(Exception):
    pass


class MapboxClient:
    """Tilequery client for the overlay tilesets."""

    def __init__(self, access_token: Optional[str],
                 sleep: Callable[[float], None] = time.sleep):
        self.access_token = access_token
        self.token_error = validate_mapbox_token(access_token)
        self._sleep = sleep

    @property
    def available(self) -> bool:
        return self.token_error is None

    def _query_once(self, lng: float, lat: float, retried: bool = False) -> List[dict]:
        tilesets = ",".join(cfg.tileset for cfg in LAYER_CONFIGS.values())
        url = _TILEQUERY_URL.format(tilesets=tilesets, lng=lng, lat=lat)
        params = {"radius": 0, "limit": 50, "access_token": self.access_token}

        t0 = time.time()
        try:
            resp = requests.get(url, params=params, timeout=_TILEQUERY_TIMEOUT)
        except requests.Timeout as e:
            record_api_outcome("mapbox", "tilequery", t0, 0, False, "timeout", retried)
            raise _RetryableError("network timeout") from e
        except requests.ConnectionError as e:
            record_api_outcome("mapbox", "tilequery", t0, 0, False, "connection", retried)
            raise _RetryableError("network connection failed") from e
        except requests.RequestException as e:
            record_api_outcome("mapbox", "tilequery", t0, 0, False, "exception", retried)
            raise MapLayerError(describe_map_error(message=str(e))) from e

        record_api_outcome("mapbox", "tilequery", t0, resp.status_code, resp.ok,
                           "" if resp.ok else f"HTTP {resp.status_code}", retried)

        if resp.status_code in _CONFIG_ERROR_STATUSES:
            raise MapLayerError(describe_map_error(resp.status_code), resp.status_code)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _RetryableError(f"HTTP {resp.status_code}")
        if not resp.ok:
            raise MapLayerError(describe_map_error(resp.status_code, resp.text[:200]),
                                resp.status_code)
        try:
            return resp.json().get("features") or []
        except ValueError as e:
            raise MapLayerError(describe_map_error(message="source returned invalid JSON")) from e

    def check_location_designations(self, lng: float, lat: float) -> Designations:
        """QCT/DDA/AMI for a point.

        Without a usable token there is no map to consult, so nothing is
        designated and AMI is left for the caller's estimate.
        """
        if not self.available:
            logger.info("Mapbox unavailable (%s); skipping designations", self.token_error)
            return Designations(vli=None)

        last_error = None
        for attempt in range(1 + MAX_RETRY_ATTEMPTS):
            try:
                features = self._query_once(lng, lat, retried=attempt > 0)
                return designations_from_features(features)
            except _RetryableError as e:
                last_error = e
                if attempt < MAX_RETRY_ATTEMPTS:
                    logger.warning(
                        "Tilequery failed (%s). Retry attempt %d of %d in %ds",
                        e, attempt + 1, MAX_RETRY_ATTEMPTS, RETRY_DELAY,
                    )
                    self._sleep(RETRY_DELAY)

        raise MapLayerError(
            describe_map_error(message=f"network error after {MAX_RETRY_ATTEMPTS} retries ({last_error})")
        )
