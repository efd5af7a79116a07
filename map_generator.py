"""Server-side map previews (site pin, pipeline overview) using staticmap + OSM tiles."""

import io
import logging
from typing import Iterable, Optional

from staticmap import StaticMap, CircleMarker

logger = logging.getLogger(__name__)


class SiteStaticMap(StaticMap):
    """StaticMap with zoom clamped to a configurable range."""

    def __init__(self, *args, zoom_min: int = 3, zoom_max: int = 16, **kwargs):
        super().__init__(*args, **kwargs)
        self.zoom_min = zoom_min
        self.zoom_max = zoom_max

    def _calculate_zoom(self):
        z = super()._calculate_zoom()
        return max(self.zoom_min, min(self.zoom_max, z))


USER_AGENT = "SiteEval/1.0 (LIHTC site evaluation tool)"
TILE_URL = "http://a.tile.openstreetmap.org/{z}/{x}/{y}.png"

SITE_COLOR = "#2563eb"    # blue
QCT_RING = "#008888"      # matches the QCT layer fill
DDA_RING = "#51bbd6"      # matches the DDA layer fill

STATUS_COLORS = {
    "prospective": "#2563eb",  # blue
    "active": "#059669",       # emerald
    "closed": "#6b7280",       # gray
    "dead": "#dc2626",         # red
}

# Corner offset (~0.5 km) so a lone pin still shows its surroundings.
MIN_BBOX_DEG = 0.005


def _new_map(width: int, height: int, zoom_min: int, zoom_max: int) -> SiteStaticMap:
    return SiteStaticMap(
        width,
        height,
        padding_x=24,
        padding_y=24,
        url_template=TILE_URL,
        tile_request_timeout=10,
        headers={"User-Agent": USER_AGENT},
        zoom_min=zoom_min,
        zoom_max=zoom_max,
    )


def _pad_bbox(m: StaticMap, lat: float, lng: float) -> None:
    d = MIN_BBOX_DEG
    for lng_offset, lat_offset in [(-d, -d), (d, -d), (-d, d), (d, d)]:
        m.add_marker(CircleMarker((lng + lng_offset, lat + lat_offset), "#ffffff", 1))


def _to_png(m: StaticMap) -> bytes:
    image = m.render()
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", optimize=True)
    return buffer.getvalue()


def generate_site_map(
    lat: float,
    lng: float,
    is_qct: bool = False,
    is_dda: bool = False,
    width: int = 640,
    height: int = 400,
) -> Optional[bytes]:
    """PNG of one site. Outer rings mark QCT (teal) and DDA (light blue).

    Returns None if rendering fails for any reason.
    """
    try:
        m = _new_map(width, height, zoom_min=12, zoom_max=16)
        # staticmap takes (lng, lat)
        if is_qct:
            m.add_marker(CircleMarker((lng, lat), QCT_RING, 22))
        if is_dda:
            m.add_marker(CircleMarker((lng, lat), DDA_RING, 18))
        m.add_marker(CircleMarker((lng, lat), SITE_COLOR, 14))
        m.add_marker(CircleMarker((lng, lat), "white", 10))
        _pad_bbox(m, lat, lng)
        return _to_png(m)
    except Exception:
        logger.exception("Failed to generate site map")
        return None


def generate_pipeline_map(
    deals: Iterable[dict],
    width: int = 800,
    height: int = 500,
) -> Optional[bytes]:
    """PNG with one pin per deal that has coordinates, coloured by status.

    Returns None when no deal can be placed or rendering fails.
    """
    points = []
    for deal in deals:
        site = deal.get("site_data") or {}
        if not isinstance(site, dict):
            continue
        lat, lng = site.get("lat"), site.get("lng")
        if lat is None or lng is None:
            continue
        points.append((lat, lng, STATUS_COLORS.get(deal.get("status"), "#6b7280")))

    if not points:
        return None

    try:
        m = _new_map(width, height, zoom_min=3, zoom_max=14)
        for lat, lng, color in points:
            m.add_marker(CircleMarker((lng, lat), color, 12))
        if len(points) == 1:
            _pad_bbox(m, points[0][0], points[0][1])
        return _to_png(m)
    except Exception:
        logger.exception("Failed to generate pipeline map")
        return None
