import os
import sys
import json
import logging
import uuid

import requests
from flask import Flask, request, jsonify, g, session, Response
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from eval_trace import TraceContext, set_trace, clear_trace
from site_evaluator import (
    GoogleMapsClient, evaluate_site, FilterSettings, apply_filters,
    export_sites_csv,
)
from map_layers import LayerState, MAP_STYLES, DEFAULT_STYLE, map_config
from map_generator import generate_site_map, generate_pipeline_map
from formatting import (
    format_currency, format_number, format_percentage, score_color,
    score_text_color, ami_color_class, headline_score_color, truncate,
    distance_miles,
)
from models import (
    init_db, check_db, save_site, get_site, list_sites, get_sites_by_ids,
    log_event, get_job,
)
from worker import parse_import, create_batch, batch_summary
import pipeline
from pipeline import NotFoundError, InvalidTransitionError
import health_monitor

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN (silent when unset)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from map_layers import MapLayerError

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Bad address (ZERO_RESULTS, etc.)
            if exc_type is ValueError and "Geocoding failed" in msg:
                sentry_sdk.add_breadcrumb(category="geocoding", message=msg, level="warning")
                return None
            # Mapbox Tilequery out of retries or misconfigured
            if exc_type is not None and issubclass(exc_type, MapLayerError):
                sentry_sdk.add_breadcrumb(category="mapbox", message=msg, level="warning")
                return None
            # FCC / Census / Google timeouts and HTTP failures
            if exc_type is not None and issubclass(exc_type, requests.RequestException):
                sentry_sdk.add_breadcrumb(category="http", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("GIT_COMMIT_SHA"),
        environment=os.environ.get("SITEEVAL_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'siteeval-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'siteeval-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: rewrite remote_addr from X-Forwarded-For so
# rate limiting and logs see the client address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection: clients fetch a token from /api/csrf-token and send it
# back as the X-CSRFToken header on every mutating request.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: evaluations and imports fan out to paid Google/Mapbox calls.
# In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_EVAL = os.environ.get("RATE_LIMIT_EVAL", "30/hour")
RATE_LIMIT_AUTOCOMPLETE = os.environ.get("RATE_LIMIT_AUTOCOMPLETE", "60/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Startup: warn immediately if required config is missing
# ---------------------------------------------------------------------------
if not os.environ.get("GOOGLE_MAPS_API_KEY"):
    logger.warning(
        "GOOGLE_MAPS_API_KEY is not set. "
        "Address evaluations will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )
if not os.environ.get("MAPBOX_ACCESS_TOKEN"):
    logger.warning(
        "MAPBOX_ACCESS_TOKEN is not set. QCT/DDA designations and map-layer "
        "AMI are unavailable; AMI falls back to the state/county estimate."
    )


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    """Set visitor ID and request ID on every request."""
    g.request_id = _generate_request_id()
    g.visitor_id = request.cookies.get("se_vid")
    if not g.visitor_id:
        g.visitor_id = uuid.uuid4().hex[:12]
        g.set_visitor_cookie = True
    else:
        g.set_visitor_cookie = False


@app.after_request
def _after_request(response):
    if getattr(g, "set_visitor_cookie", False):
        response.set_cookie(
            "se_vid", g.visitor_id,
            max_age=365 * 24 * 3600, httponly=True, samesite="Lax"
        )
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


def _error(message, status, **extra):
    body = {"error": message, "request_id": getattr(g, "request_id", None)}
    body.update(extra)
    return jsonify(body), status


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("GOOGLE_MAPS_API_KEY"):
        missing.append("GOOGLE_MAPS_API_KEY")
    return (len(missing) == 0, missing)


# ---------------------------------------------------------------------------
# Dashboard payload
# ---------------------------------------------------------------------------

def site_payload(site: dict) -> dict:
    """Stored site plus the display-ready figures the dashboard shows."""
    qap = site.get("qap_score") or 0
    market = site.get("market_score") or 0
    priority = site.get("priority_score") or 0
    payload = {k: v for k, v in site.items() if k != "_trace"}
    payload["display"] = {
        "short_address": truncate(site.get("address"), 40),
        "headline_color": headline_score_color(qap),
        "qap_score_color": score_color(qap),
        "qap_score_text_color": score_text_color(qap),
        "market_score_color": score_color(market),
        "market_score_text_color": score_text_color(market),
        "priority_score_color": score_color(priority),
        "ami_color": ami_color_class(site.get("ami")),
        "ami": format_currency(site.get("ami")),
        "vli_amount": format_currency(site.get("vli_amount")),
        "sixty_percent_ami": format_currency(site.get("sixty_percent_ami")),
        "effective_ami": format_currency(site.get("effective_ami")),
        "traffic_count": format_number(site.get("traffic_count")),
    }
    market_data = site.get("market_data")
    if market_data:
        payload["display"]["job_growth"] = format_percentage(market_data.get("job_growth"))
        payload["display"]["unemployment"] = format_percentage(market_data.get("unemployment"))
    demographics = site.get("demographics")
    if demographics:
        payload["display"]["demographics"] = {
            level: _area_display(demographics.get(level))
            for level in ("tract", "county")
        }
    return payload


def _area_display(area):
    if not area:
        return None
    return {
        "households": format_number(area.get("households")),
        "children": format_percentage(area.get("children_pct")),
        "owner": format_percentage(area.get("owner_pct")),
        "renter": format_percentage(area.get("renter_pct")),
        "commute": {mode: format_percentage(pct)
                    for mode, pct in (area.get("commute_pct") or {}).items()},
        "median_gross_rent": format_currency(area.get("median_gross_rent")),
    }


def _parse_coord(value, name):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

@app.route("/api/evaluate", methods=["POST"])
@limiter.limit(RATE_LIMIT_EVAL)
def api_evaluate():
    """Evaluate an address, an autocomplete place_id, or a map click.

    Body: {"address"?, "place_id"?, "lat"?, "lng"?}
    """
    request_id = g.request_id
    data = _json_body()
    address = (data.get("address") or "").strip() or None
    place_id = (data.get("place_id") or "").strip() or None
    lat = _parse_coord(data.get("lat"), "lat")
    lng = _parse_coord(data.get("lng"), "lng")
    if (lat is None) != (lng is None):
        return _error("lat and lng must be given together", 400)
    if not address and not place_id and lat is None:
        return _error("Please enter an address.", 400)

    config_ok, missing = _check_service_config()
    if not config_ok:
        logger.error("[%s] Missing required config: %s", request_id, missing)
        return _error("Service is misconfigured. Please try again later.", 503,
                      missing_keys=missing)

    logger.info("[%s] Evaluating %r (place_id=%s, lat=%s, lng=%s)",
                request_id, address, place_id, lat, lng)
    trace_ctx = TraceContext(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        site = evaluate_site(
            address,
            os.environ["GOOGLE_MAPS_API_KEY"],
            mapbox_token=os.environ.get("MAPBOX_ACCESS_TOKEN"),
            place_id=place_id,
            lat=lat,
            lng=lng,
        )
    except ValueError as e:
        logger.warning("[%s] Evaluation rejected: %s", request_id, e)
        log_event("evaluation_error", visitor_id=g.visitor_id,
                  metadata={"address": address, "error": str(e),
                            "trace_summary": trace_ctx.summary_dict()})
        return _error(str(e), 400)
    finally:
        trace_ctx.log_summary()
        clear_trace()

    site_dict = site.to_dict()
    site_dict["_trace"] = trace_ctx.full_trace_dict()
    site_id = save_site(site_dict, visitor_id=g.visitor_id)
    site_dict["id"] = site_id
    log_event("site_evaluated", subject_id=site_id, visitor_id=g.visitor_id,
              metadata={"address": site.address, "trace_id": request_id})
    return jsonify(site_payload(site_dict)), 201


@app.route("/api/places/autocomplete")
@limiter.limit(RATE_LIMIT_AUTOCOMPLETE)
def api_autocomplete():
    text = (request.args.get("input") or "").strip()
    if len(text) < 3:
        return jsonify({"predictions": []})
    config_ok, missing = _check_service_config()
    if not config_ok:
        return _error("Service is misconfigured. Please try again later.", 503,
                      missing_keys=missing)
    client = GoogleMapsClient(os.environ["GOOGLE_MAPS_API_KEY"])
    return jsonify({"predictions": client.autocomplete(text)})


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------

@app.route("/api/sites")
def api_sites():
    """Saved sites, newest first. With ?lat=&lng= they are sorted by distance instead."""
    limit = request.args.get("limit", 200, type=int)
    sites = [site_payload(s) for s in list_sites(limit=max(1, min(limit, 500)))]
    lat = _parse_coord(request.args.get("lat"), "lat")
    lng = _parse_coord(request.args.get("lng"), "lng")
    if (lat is None) != (lng is None):
        return _error("lat and lng must be given together", 400)
    if lat is not None:
        for s in sites:
            s["distance_miles"] = round(distance_miles(lat, lng, s["lat"], s["lng"]), 2)
        sites.sort(key=lambda s: s["distance_miles"])
    return jsonify({"sites": sites, "total": len(sites)})


@app.route("/api/sites/filter", methods=["POST"])
def api_filter_sites():
    """Body: {"filters": {...}, "site_ids"?: [...]}; missing filters mean defaults."""
    data = _json_body()
    settings = FilterSettings.from_dict(data.get("filters"))
    ids = data.get("site_ids")
    sites = get_sites_by_ids(ids) if ids else list_sites()
    matched = apply_filters(sites, settings)
    return jsonify({
        "filters": settings.to_dict(),
        "sites": [site_payload(s) for s in matched],
        "total": len(matched),
    })


@app.route("/api/sites/export.csv")
def api_export_sites():
    ids = [i for i in (request.args.get("ids") or "").split(",") if i]
    sites = get_sites_by_ids(ids) if ids else list_sites()
    log_event("sites_exported", visitor_id=g.visitor_id, metadata={"count": len(sites)})
    return Response(
        export_sites_csv(sites),
        mimetype="text/csv",
        headers={"Content-Disposition": 'attachment; filename="site_evaluation.csv"'},
    )


@app.route("/api/sites/<site_id>")
def api_site(site_id):
    site = get_site(site_id)
    if not site:
        return _error("Site not found", 404)
    return jsonify(site_payload(site))


@app.route("/api/sites/<site_id>/trace")
def api_site_trace(site_id):
    """Stage and outbound-call timings recorded when the site was evaluated."""
    site = get_site(site_id)
    if not site:
        return _error("Site not found", 404)
    return jsonify({
        "site_id": site_id,
        "address": site.get("address"),
        "date_evaluated": site.get("date_evaluated"),
        "trace": site.get("_trace"),
    })


@app.route("/api/sites/<site_id>/map.png")
def api_site_map(site_id):
    site = get_site(site_id)
    if not site:
        return _error("Site not found", 404)
    png = generate_site_map(site["lat"], site["lng"],
                            is_qct=site.get("is_qct", False),
                            is_dda=site.get("is_dda", False))
    if png is None:
        return _error("Map preview unavailable", 502)
    return Response(png, mimetype="image/png",
                    headers={"Cache-Control": "public, max-age=86400"})


# ---------------------------------------------------------------------------
# Map configuration (per-session style and layer visibility)
# ---------------------------------------------------------------------------

def _session_layers() -> LayerState:
    return LayerState(session.get("map_layers"))


@app.route("/api/map/config")
def api_map_config():
    token = os.environ.get("MAPBOX_ACCESS_TOKEN")
    config = map_config(session.get("map_style", DEFAULT_STYLE), _session_layers(), token)
    # Public (pk.) tokens are meant for the browser; never echo an invalid one.
    config["access_token"] = None if config["token_error"] else token
    return jsonify(config)


@app.route("/api/map/layers/<layer>/toggle", methods=["POST"])
def api_toggle_layer(layer):
    layers = _session_layers()
    visible = layers.toggle(layer)
    session["map_layers"] = layers.to_list()
    return jsonify({"layer": layer, "visible": visible, "active_layers": layers.to_list()})


@app.route("/api/map/style", methods=["PUT"])
def api_map_style():
    style = _json_body().get("style")
    if style not in MAP_STYLES:
        return _error(f"Unknown map style: {style}", 400, styles=sorted(MAP_STYLES))
    session["map_style"] = style
    return jsonify({"style": style, "style_url": MAP_STYLES[style]})


# ---------------------------------------------------------------------------
# Deal pipeline
# ---------------------------------------------------------------------------

@app.route("/api/deals", methods=["GET", "POST"])
def api_deals():
    if request.method == "GET":
        deals = pipeline.list_deals(request.args.get("status"))
        return jsonify({"deals": [d.to_dict() for d in deals], "total": len(deals)})

    data = _json_body()
    if data.get("site_id"):
        site = get_site(data["site_id"])
        if not site:
            return _error("Site not found", 404)
        deal = pipeline.add_deal_from_site(site, name=data.get("name"))
    else:
        deal = pipeline.add_deal(
            name=data.get("name"),
            address=data.get("address"),
            status=data.get("status", "prospective"),
            site_data=data.get("site_data"),
            processes=data.get("processes"),
            contacts=data.get("contacts"),
            notes=data.get("notes", ""),
        )
    log_event("deal_created", subject_id=deal.id, visitor_id=g.visitor_id,
              metadata={"address": deal.address, "from_site": bool(data.get("site_id"))})
    return jsonify(deal.to_dict()), 201


@app.route("/api/deals/<deal_id>", methods=["GET", "PATCH", "DELETE"])
def api_deal(deal_id):
    if request.method == "GET":
        return jsonify(pipeline.get_deal(deal_id).to_dict())
    if request.method == "DELETE":
        pipeline.delete_deal(deal_id)
        log_event("deal_deleted", subject_id=deal_id, visitor_id=g.visitor_id)
        return "", 204
    deal = pipeline.update_deal(deal_id, _json_body())
    return jsonify(deal.to_dict())


@app.route("/api/deals/<deal_id>/status", methods=["POST"])
def api_deal_status(deal_id):
    status = _json_body().get("status")
    old_status = pipeline.get_deal(deal_id).status.value
    deal = pipeline.update_deal_status(deal_id, status)
    if deal.status.value != old_status:
        log_event("deal_status_changed", subject_id=deal_id, visitor_id=g.visitor_id,
                  metadata={"from": old_status, "to": deal.status.value})
    return jsonify(deal.to_dict())


@app.route("/api/deals/<deal_id>/processes", methods=["POST"])
def api_add_process(deal_id):
    proc = pipeline.add_process(deal_id, _json_body())
    return jsonify(proc.to_dict()), 201


@app.route("/api/deals/<deal_id>/processes/<process_id>", methods=["PATCH"])
def api_update_process(deal_id, process_id):
    proc = pipeline.update_process(deal_id, process_id, _json_body())
    return jsonify(proc.to_dict())


@app.route("/api/deals/<deal_id>/processes/<process_id>/checklist/<item_id>",
           methods=["PATCH"])
def api_update_checklist_item(deal_id, process_id, item_id):
    item = pipeline.update_checklist_item(deal_id, process_id, item_id, _json_body())
    return jsonify(item.to_dict())


@app.route("/api/deals/<deal_id>/contacts", methods=["POST"])
def api_add_contact(deal_id):
    contact = pipeline.add_contact(deal_id, _json_body())
    return jsonify(contact.to_dict()), 201


@app.route("/api/deals/<deal_id>/contacts/<contact_id>", methods=["PATCH", "DELETE"])
def api_contact(deal_id, contact_id):
    if request.method == "DELETE":
        pipeline.remove_contact(deal_id, contact_id)
        return "", 204
    contact = pipeline.update_contact(deal_id, contact_id, _json_body())
    return jsonify(contact.to_dict())


@app.route("/api/pipeline/map.png")
def api_pipeline_map():
    deals = [d.to_dict() for d in pipeline.list_deals(request.args.get("status"))]
    png = generate_pipeline_map(deals)
    if png is None:
        return _error("No deals with coordinates to map", 404)
    return Response(png, mimetype="image/png", headers={"Cache-Control": "no-cache"})


# ---------------------------------------------------------------------------
# Batch import
# ---------------------------------------------------------------------------

def _import_addresses():
    upload = request.files.get("file")
    if upload is not None:
        name = (upload.filename or "").lower()
        fmt = request.form.get("format") or ("json" if name.endswith(".json") else "csv")
        try:
            content = upload.read().decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ValueError("Import file must be UTF-8 text")
        return parse_import(content, fmt)

    data = _json_body()
    if "addresses" in data:
        if not isinstance(data["addresses"], list):
            raise ValueError("addresses must be a list")
        return parse_import(json.dumps(data["addresses"]), "json")
    return parse_import(data.get("content") or "", data.get("format", "csv"))


@app.route("/api/import", methods=["POST"])
@limiter.limit(RATE_LIMIT_EVAL)
def api_import():
    """Queue a batch of addresses for background evaluation.

    Accepts a multipart "file" (CSV or JSON), or a JSON body with either
    {"addresses": [...]} or {"format": "csv"|"json", "content": "..."}.
    """
    config_ok, missing = _check_service_config()
    if not config_ok:
        return _error("Service is misconfigured. Please try again later.", 503,
                      missing_keys=missing)
    addresses = _import_addresses()
    batch_id, job_ids = create_batch(addresses, visitor_id=g.visitor_id,
                                     request_id=g.request_id)
    return jsonify({"batch_id": batch_id, "job_ids": job_ids, "count": len(job_ids)}), 202


@app.route("/api/import/<batch_id>")
@limiter.exempt
def api_import_status(batch_id):
    summary = batch_summary(batch_id)
    if summary is None:
        return _error("Import not found", 404)
    return jsonify(summary)


@app.route("/job/<job_id>")
@limiter.exempt
def job_status(job_id):
    """
    Polling endpoint for a queued evaluation. Returns JSON:
    {status, current_stage, batch_id, site_id?, error?}
    status: queued | running | done | failed
    """
    job = get_job(job_id)
    if not job:
        return _error("Job not found", 404)
    payload = {
        "status": job["status"],
        "current_stage": job["current_stage"],
        "batch_id": job["batch_id"],
    }
    if job.get("result_site_id"):
        payload["site_id"] = job["result_site_id"]
    if job.get("error"):
        payload["error"] = job["error"]
    return jsonify(payload)


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------

@app.route("/api/csrf-token")
@limiter.exempt
def api_csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Config, database and upstream API health for monitoring."""
    config_ok, missing = _check_service_config()
    db_ok = check_db()
    healthy = config_ok and db_ok
    return jsonify({
        "status": "ok" if healthy else "degraded",
        "missing_keys": missing,
        "database": "ok" if db_ok else "error",
        "services": health_monitor.get_status(),
    }), 200 if healthy else 503


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(NotFoundError)
def handle_not_found(e):
    return _error(str(e), 404)


@app.errorhandler(InvalidTransitionError)
def handle_invalid_transition(e):
    return _error(str(e), 409)


@app.errorhandler(ValueError)
def handle_bad_request(e):
    return _error(str(e), 400)


@app.errorhandler(requests.RequestException)
def handle_upstream_error(e):
    logger.warning("[%s] Upstream request failed: %s", getattr(g, "request_id", "-"), e)
    return _error("An upstream service is unavailable. Please try again.", 502)


@app.errorhandler(CSRFError)
def handle_csrf_error(e):
    return _error(e.description, 400)


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return _error("Too many requests. Please wait and try again.", 429)


@app.errorhandler(404)
def not_found(e):
    return _error("Not found", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return _error("Method not allowed", 405)


@app.errorhandler(500)
def internal_error(e):
    logger.error("[%s] Internal error: %s", getattr(g, "request_id", "-"), e)
    return _error("Internal server error", 500)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    # Development: start the import worker and health monitor in this process
    from worker import start_worker
    start_worker()
    health_monitor.start_monitor()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
if os.environ.get("FLASK_RUN_FROM_CLI") == "true" and os.environ.get("START_WORKER") != "1":
    logger.warning(
        "WARNING: No background worker running. Imports will not process. "
        "Use gunicorn or set START_WORKER=1."
    )
elif os.environ.get("START_WORKER") == "1":
    try:
        from worker import start_worker
        start_worker()
    except Exception:
        logger.exception("Failed to start background worker via START_WORKER=1")
