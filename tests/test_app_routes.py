"""Route tests for app.py: evaluation, sites, map settings, deals, import, jobs.

Upstream services are mocked at the app's import of evaluate_site and
GoogleMapsClient; storage runs against the temp SQLite database.
"""

import io
import json
from unittest.mock import patch

import pytest

from app import site_payload
from models import create_job, claim_next_job, complete_job, fail_job, save_site
from site_evaluator import MarketData, Site


def _site(**kwargs):
    args = {
        "address": "1100 Congress Ave, Austin, TX 78701, USA",
        "lat": 30.2747,
        "lng": -97.7404,
        "city": "Austin",
        "state": "TX",
        "county": "Travis County",
        "is_qct": True,
        "ami": 79200,
        "vli_amount": 39600,
        "sixty_percent_ami": 47520,
        "effective_ami": 79200,
        "qap_score": 88,
        "market_score": 64,
        "priority_score": 77,
    }
    args.update(kwargs)
    return Site(**args)


def _stored_site(**kwargs):
    return save_site(_site(**kwargs).to_dict())


# =========================================================================
# Dashboard payload
# =========================================================================

class TestSitePayload:
    def test_display_fields(self):
        payload = site_payload(dict(_site().to_dict(), _trace={"x": 1}))
        assert "_trace" not in payload
        display = payload["display"]
        assert display["ami"] == "$79,200"
        assert display["vli_amount"] == "$39,600"
        assert display["headline_color"] == "text-emerald-600"
        assert display["qap_score_color"] == "bg-emerald-500"
        assert display["market_score_color"] == "bg-lime-500"
        assert display["ami_color"] == "bg-red-100 text-red-700"

    def test_market_and_demographic_display(self):
        demographics = {
            "geoid": "48453001100",
            "tract": {
                "name": "Census Tract 11", "households": 2345, "children_pct": 18.25,
                "owner_pct": 31.0, "renter_pct": 69.0, "commute_pct": {"transit": 4.44},
                "median_gross_rent": 1412,
            },
            "county": None,
        }
        site = _site(traffic_count=12500,
                     market_data=MarketData(job_growth=2.5, unemployment=3.25,
                                            school_rating=7, walk_score=80, transit_score=55),
                     demographics=demographics)
        display = site_payload(site.to_dict())["display"]
        assert display["traffic_count"] == "12,500"
        assert display["job_growth"] == "2.5%"
        assert display["unemployment"] == "3.3%"
        tract = display["demographics"]["tract"]
        assert tract["households"] == "2,345"
        assert tract["children"] == "18.3%"
        assert tract["commute"] == {"transit": "4.4%"}
        assert tract["median_gross_rent"] == "$1,412"
        assert display["demographics"]["county"] is None

    def test_no_demographics(self):
        display = site_payload(_site().to_dict())["display"]
        assert "demographics" not in display
        assert "job_growth" not in display


# =========================================================================
# POST /api/evaluate
# =========================================================================

class TestEvaluate:
    def test_address(self, client):
        with patch("app.evaluate_site", return_value=_site()) as evaluate:
            resp = client.post("/api/evaluate", json={"address": "1100 Congress Ave, Austin"})
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["id"]
        assert data["is_qct"] is True
        assert data["display"]["ami"] == "$79,200"
        assert evaluate.call_args.args[0] == "1100 Congress Ave, Austin"
        assert resp.headers["X-Request-ID"]

        stored = client.get(f"/api/sites/{data['id']}").get_json()
        assert stored["address"] == data["address"]

    def test_trace_saved_with_site(self, client):
        with patch("app.evaluate_site", return_value=_site()):
            site_id = client.post("/api/evaluate", json={"address": "x"}).get_json()["id"]
        resp = client.get(f"/api/sites/{site_id}/trace")
        assert resp.status_code == 200
        assert resp.get_json()["trace"]["final_outcome"] == "empty"

    def test_map_click(self, client):
        with patch("app.evaluate_site", return_value=_site()) as evaluate:
            resp = client.post("/api/evaluate", json={"lat": "30.2747", "lng": -97.7404})
        assert resp.status_code == 201
        kwargs = evaluate.call_args.kwargs
        assert kwargs["lat"] == pytest.approx(30.2747)
        assert kwargs["lng"] == pytest.approx(-97.7404)

    def test_place_id(self, client):
        with patch("app.evaluate_site", return_value=_site()) as evaluate:
            client.post("/api/evaluate", json={"place_id": "ChIJ123"})
        assert evaluate.call_args.kwargs["place_id"] == "ChIJ123"

    def test_empty_request(self, client):
        resp = client.post("/api/evaluate", json={"address": "  "})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Please enter an address."

    def test_lat_without_lng(self, client):
        resp = client.post("/api/evaluate", json={"lat": 30.1})
        assert resp.status_code == 400

    def test_bad_coordinate(self, client):
        resp = client.post("/api/evaluate", json={"lat": "north", "lng": 1})
        assert resp.status_code == 400
        assert "lat must be a number" in resp.get_json()["error"]

    def test_non_object_body(self, client):
        resp = client.post("/api/evaluate", json=["1 Main St"])
        assert resp.status_code == 400

    def test_geocode_failure(self, client):
        with patch("app.evaluate_site", side_effect=ValueError("Geocoding failed: ZERO_RESULTS")):
            resp = client.post("/api/evaluate", json={"address": "nowhere"})
        assert resp.status_code == 400
        assert "ZERO_RESULTS" in resp.get_json()["error"]
        assert client.get("/api/sites").get_json()["total"] == 0

    def test_upstream_outage(self, client):
        import requests
        with patch("app.evaluate_site", side_effect=requests.ConnectionError("down")):
            resp = client.post("/api/evaluate", json={"address": "x"})
        assert resp.status_code == 502

    def test_missing_config(self, client, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY")
        resp = client.post("/api/evaluate", json={"address": "x"})
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["GOOGLE_MAPS_API_KEY"]


# =========================================================================
# Autocomplete
# =========================================================================

class TestAutocomplete:
    def test_short_input(self, client):
        with patch("app.GoogleMapsClient") as cls:
            resp = client.get("/api/places/autocomplete?input=11")
        assert resp.get_json() == {"predictions": []}
        cls.assert_not_called()

    def test_predictions(self, client):
        predictions = [{"description": "1100 Congress Ave, Austin, TX", "place_id": "p1"}]
        with patch("app.GoogleMapsClient") as cls:
            cls.return_value.autocomplete.return_value = predictions
            resp = client.get("/api/places/autocomplete?input=1100 Congress")
        assert resp.get_json() == {"predictions": predictions}
        cls.return_value.autocomplete.assert_called_once_with("1100 Congress")


# =========================================================================
# Sites: list, filter, export, map
# =========================================================================

class TestSites:
    def test_list(self, client):
        _stored_site()
        data = client.get("/api/sites").get_json()
        assert data["total"] == 1
        assert data["sites"][0]["display"]["short_address"].startswith("1100 Congress")

    def test_list_sorted_by_distance(self, client):
        far = _stored_site(address="Houston site", lat=29.7604, lng=-95.3698)
        near = _stored_site(address="Round Rock site", lat=30.5083, lng=-97.6789)
        data = client.get("/api/sites?lat=30.2672&lng=-97.7431").get_json()
        assert [s["id"] for s in data["sites"]] == [near, far]
        assert 15 < data["sites"][0]["distance_miles"] < 20
        assert client.get("/api/sites?lat=30.2672").status_code == 400
        assert client.get("/api/sites?lat=north&lng=-97").status_code == 400

    def test_unknown_site(self, client):
        assert client.get("/api/sites/nope").status_code == 404
        assert client.get("/api/sites/nope/trace").status_code == 404
        assert client.get("/api/sites/nope/map.png").status_code == 404

    def test_filter(self, client):
        qct = _stored_site(address="QCT site")
        _stored_site(address="Plain site", is_qct=False)
        resp = client.post("/api/sites/filter", json={"filters": {"qct_only": True}})
        data = resp.get_json()
        assert data["total"] == 1
        assert data["sites"][0]["id"] == qct
        assert data["filters"]["qct_only"] is True

    def test_filter_unknown_key(self, client):
        resp = client.post("/api/sites/filter", json={"filters": {"color": "red"}})
        assert resp.status_code == 400

    @pytest.mark.parametrize("filters", [
        {"min_market_score": "high"},
        {"state": None},
        {"to_dict": 1},
        {"qct_only": "yes"},
    ])
    def test_filter_bad_values(self, client, filters):
        _stored_site()
        resp = client.post("/api/sites/filter", json={"filters": filters})
        assert resp.status_code == 400
        assert "error" in resp.get_json()

    def test_export_csv(self, client):
        a = _stored_site(address="A St")
        _stored_site(address="B St")
        resp = client.get(f"/api/sites/export.csv?ids={a}")
        assert resp.mimetype == "text/csv"
        assert 'filename="site_evaluation.csv"' in resp.headers["Content-Disposition"]
        lines = resp.get_data(as_text=True).splitlines()
        assert lines[0].startswith("Address,QAP Score")
        assert len(lines) == 2
        assert lines[1].startswith("A St,")

    def test_site_map(self, client):
        site_id = _stored_site()
        with patch("app.generate_site_map", return_value=b"\x89PNG fake") as gen:
            resp = client.get(f"/api/sites/{site_id}/map.png")
        assert resp.status_code == 200
        assert resp.mimetype == "image/png"
        assert gen.call_args.kwargs["is_qct"] is True

    def test_site_map_failure(self, client):
        site_id = _stored_site()
        with patch("app.generate_site_map", return_value=None):
            assert client.get(f"/api/sites/{site_id}/map.png").status_code == 502


# =========================================================================
# Map settings
# =========================================================================

class TestMapSettings:
    def test_config_defaults(self, client, monkeypatch):
        monkeypatch.setenv("MAPBOX_ACCESS_TOKEN", "pk.test")
        data = client.get("/api/map/config").get_json()
        assert data["style"] == "custom"
        assert data["access_token"] == "pk.test"
        assert all(layer["visibility"] == "visible" for layer in data["layers"])

    def test_invalid_token_not_echoed(self, client, monkeypatch):
        monkeypatch.setenv("MAPBOX_ACCESS_TOKEN", "sk.secret")
        data = client.get("/api/map/config").get_json()
        assert data["access_token"] is None
        assert "pk." in data["token_error"]

    def test_toggle_persists_in_session(self, client):
        resp = client.post("/api/map/layers/qct/toggle")
        assert resp.get_json() == {"layer": "qct", "visible": False, "active_layers": ["ami", "dda"]}
        layers = {l["key"]: l["visibility"] for l in client.get("/api/map/config").get_json()["layers"]}
        assert layers["qct"] == "none"
        assert client.post("/api/map/layers/qct/toggle").get_json()["visible"] is True

    def test_toggle_unknown_layer(self, client):
        assert client.post("/api/map/layers/zoning/toggle").status_code == 400

    def test_set_style(self, client):
        resp = client.put("/api/map/style", json={"style": "satellite"})
        assert resp.get_json()["style_url"].endswith("satellite-streets-v12")
        assert client.get("/api/map/config").get_json()["style"] == "satellite"

    def test_unknown_style(self, client):
        resp = client.put("/api/map/style", json={"style": "neon"})
        assert resp.status_code == 400
        assert resp.get_json()["styles"] == ["custom", "satellite", "standard"]


# =========================================================================
# Deals
# =========================================================================

class TestDeals:
    def _create(self, client, **body):
        payload = {"name": "Congress Lofts", "address": "1100 Congress Ave"}
        payload.update(body)
        resp = client.post("/api/deals", json=payload)
        assert resp.status_code == 201
        return resp.get_json()

    def test_create_and_list(self, client):
        deal = self._create(client)
        assert deal["status"] == "prospective"
        data = client.get("/api/deals").get_json()
        assert data["total"] == 1
        assert client.get("/api/deals?status=active").get_json()["total"] == 0

    def test_create_from_site(self, client):
        site_id = _stored_site()
        resp = client.post("/api/deals", json={"site_id": site_id})
        assert resp.status_code == 201
        assert resp.get_json()["site_data"]["id"] == site_id

    def test_create_from_missing_site(self, client):
        assert client.post("/api/deals", json={"site_id": "nope"}).status_code == 404

    def test_create_requires_name(self, client):
        assert client.post("/api/deals", json={"address": "x"}).status_code == 400

    def test_site_data_must_be_object(self, client):
        resp = client.post("/api/deals", json={"name": "n", "address": "a", "site_data": [1, 2]})
        assert resp.status_code == 400
        assert client.get("/api/deals").get_json()["total"] == 0
        assert client.get("/api/pipeline/map.png").status_code == 404

    def test_update_and_delete(self, client):
        deal = self._create(client)
        resp = client.patch(f"/api/deals/{deal['id']}", json={"notes": "LOI signed"})
        assert resp.get_json()["notes"] == "LOI signed"
        assert client.delete(f"/api/deals/{deal['id']}").status_code == 204
        assert client.get(f"/api/deals/{deal['id']}").status_code == 404

    def test_status_transitions(self, client):
        deal = self._create(client)
        url = f"/api/deals/{deal['id']}/status"
        assert client.post(url, json={"status": "active"}).get_json()["status"] == "active"
        resp = client.post(url, json={"status": "prospective"})
        assert resp.status_code == 409
        assert client.post(url, json={"status": "won"}).status_code == 400

    def test_processes_checklist_contacts(self, client):
        deal = self._create(client)
        base = f"/api/deals/{deal['id']}"

        proc = client.post(f"{base}/processes", json={
            "type": "lihtc", "checklist": [{"title": "Site control"}],
        })
        assert proc.status_code == 201
        proc = proc.get_json()

        resp = client.patch(f"{base}/processes/{proc['id']}", json={"progress": 60})
        assert resp.get_json()["progress"] == 60
        assert client.get(base).get_json()["progress"] == 60
        assert client.patch(f"{base}/processes/{proc['id']}",
                            json={"progress": 120}).status_code == 400

        item_id = proc["checklist"][0]["id"]
        resp = client.patch(f"{base}/processes/{proc['id']}/checklist/{item_id}",
                            json={"completed": True})
        assert resp.get_json()["completed"] is True

        contact = client.post(f"{base}/contacts", json={"name": "Dana", "type": "equity"})
        assert contact.status_code == 201
        cid = contact.get_json()["id"]
        assert client.patch(f"{base}/contacts/{cid}",
                            json={"role": "VP"}).get_json()["role"] == "VP"
        assert client.delete(f"{base}/contacts/{cid}").status_code == 204
        assert client.delete(f"{base}/contacts/{cid}").status_code == 404

    def test_pipeline_map(self, client):
        assert client.get("/api/pipeline/map.png").status_code == 404
        self._create(client, site_data={"lat": 30.27, "lng": -97.74})
        with patch("app.generate_pipeline_map", return_value=b"\x89PNG fake") as gen:
            resp = client.get("/api/pipeline/map.png")
        assert resp.status_code == 200
        assert gen.call_args.args[0][0]["site_data"]["lat"] == 30.27


# =========================================================================
# Batch import and job polling
# =========================================================================

class TestImport:
    def test_json_addresses(self, client):
        resp = client.post("/api/import", json={"addresses": ["1 Main St", "2 Main St"]})
        assert resp.status_code == 202
        data = resp.get_json()
        assert data["count"] == 2

        summary = client.get(f"/api/import/{data['batch_id']}").get_json()
        assert summary["total"] == 2
        assert summary["queued"] == 2
        assert summary["complete"] is False

    def test_content_body(self, client):
        resp = client.post("/api/import", json={
            "format": "csv", "content": "address,city\n1 Main St,Austin\n",
        })
        assert resp.get_json()["count"] == 1

    def test_csv_upload(self, client):
        content = "\ufeffAddress,City,State\n1 Main St,Austin,TX\n2 Main St,Austin,TX\n"
        resp = client.post(
            "/api/import",
            data={"file": (io.BytesIO(content.encode("utf-8")), "sites.csv")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 202
        assert resp.get_json()["count"] == 2

    def test_json_upload(self, client):
        content = json.dumps([{"address": "1 Main St"}])
        resp = client.post(
            "/api/import",
            data={"file": (io.BytesIO(content.encode("utf-8")), "sites.json")},
            content_type="multipart/form-data",
        )
        assert resp.get_json()["count"] == 1

    def test_empty_import(self, client):
        resp = client.post("/api/import", json={"addresses": []})
        assert resp.status_code == 400

    def test_addresses_not_list(self, client):
        assert client.post("/api/import", json={"addresses": "1 Main St"}).status_code == 400

    def test_unknown_batch(self, client):
        assert client.get("/api/import/nope").status_code == 404

    def test_missing_config(self, client, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY")
        assert client.post("/api/import", json={"addresses": ["x"]}).status_code == 503


class TestJobStatus:
    def test_unknown_job(self, client):
        assert client.get("/job/nope").status_code == 404

    def test_queued(self, client):
        job_id = create_job("1 Main St", batch_id="b1")
        data = client.get(f"/job/{job_id}").get_json()
        assert data == {"status": "queued", "current_stage": None, "batch_id": "b1"}

    def test_done(self, client):
        job_id = create_job("1 Main St")
        claim_next_job()
        complete_job(job_id, "site1")
        data = client.get(f"/job/{job_id}").get_json()
        assert data["status"] == "done"
        assert data["site_id"] == "site1"

    def test_failed(self, client):
        job_id = create_job("1 Main St")
        fail_job(job_id, "Geocoding failed: ZERO_RESULTS")
        data = client.get(f"/job/{job_id}").get_json()
        assert data["status"] == "failed"
        assert "ZERO_RESULTS" in data["error"]


# =========================================================================
# Service endpoints and error handling
# =========================================================================

class TestServiceEndpoints:
    def test_csrf_token(self, client):
        assert client.get("/api/csrf-token").get_json()["csrf_token"]

    def test_unknown_route_is_json(self, client):
        resp = client.get("/api/nothing-here")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"

    def test_method_not_allowed_is_json(self, client):
        resp = client.get("/api/evaluate")
        assert resp.status_code == 405
        assert resp.get_json()["error"] == "Method not allowed"

    def test_visitor_cookie_set(self, client):
        resp = client.get("/api/sites")
        cookies = resp.headers.getlist("Set-Cookie")
        assert any(c.startswith("se_vid=") for c in cookies)
