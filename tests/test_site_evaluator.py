"""Tests for site_evaluator.py: Google client, evaluate_site orchestration,
placeholder generation, AMI derivation, filtering and CSV export.
"""

import random
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import fake_response, GEOCODE_OK
from eval_trace import TraceContext, set_trace, clear_trace
from location_data import MsaInfo
from map_layers import Designations, MapLayerError
from site_evaluator import (
    CSV_HEADER,
    FilterSettings,
    GoogleMapsClient,
    Site,
    apply_ami,
    apply_filters,
    consistent_number,
    evaluate_site,
    export_sites_csv,
    generate_placeholders,
)

TRAVIS = MsaInfo(
    county="Travis County",
    state="TX",
    fips="48453",
    msa="Austin-Round Rock-Georgetown",
    block_fips="484530011001000",
)


def _client(*responses):
    client = GoogleMapsClient("fake-key")
    client.session = MagicMock()
    client.session.get.side_effect = list(responses)
    return client


# =========================================================================
# Google Maps client
# =========================================================================

class TestGoogleMapsClient:
    def test_geocode(self):
        client = _client(fake_response(GEOCODE_OK))
        lat, lng, formatted = client.geocode("1100 Congress Ave, Austin, TX")
        assert (lat, lng) == (30.2747, -97.7404)
        assert formatted == "1100 Congress Ave, Austin, TX 78701, USA"
        params = client.session.get.call_args.kwargs["params"]
        assert params["address"] == "1100 Congress Ave, Austin, TX"

    def test_geocode_zero_results(self):
        client = _client(fake_response({"status": "ZERO_RESULTS", "results": []}))
        with pytest.raises(ValueError, match="Geocoding failed: ZERO_RESULTS"):
            client.geocode("nowhere at all")

    def test_place_id_used_first(self):
        client = _client(fake_response(GEOCODE_OK))
        client.geocode("1100 Congress Ave", place_id="ChIJabc")
        params = client.session.get.call_args.kwargs["params"]
        assert params["place_id"] == "ChIJabc"
        assert client.session.get.call_count == 1

    def test_place_id_failure_falls_back_to_address(self):
        client = _client(
            fake_response({"status": "INVALID_REQUEST"}),
            fake_response(GEOCODE_OK),
        )
        lat, _, _ = client.geocode("1100 Congress Ave", place_id="stale")
        assert lat == 30.2747
        assert client.session.get.call_count == 2

    def test_reverse_geocode(self):
        client = _client(fake_response(GEOCODE_OK))
        assert client.reverse_geocode(30.2747, -97.7404).startswith("1100 Congress Ave")
        assert client.session.get.call_args.kwargs["params"]["latlng"] == "30.2747,-97.7404"

    def test_reverse_geocode_failure(self):
        client = _client(fake_response({"status": "ZERO_RESULTS", "results": []}))
        with pytest.raises(ValueError, match="Geocoder failed due to: ZERO_RESULTS"):
            client.reverse_geocode(0.0, 0.0)

    def test_autocomplete(self):
        body = {"status": "OK", "predictions": [
            {"description": "1100 Congress Ave, Austin, TX, USA", "place_id": "p1", "types": []},
        ]}
        client = _client(fake_response(body))
        assert client.autocomplete("1100 Cong") == [
            {"description": "1100 Congress Ave, Austin, TX, USA", "place_id": "p1"},
        ]
        params = client.session.get.call_args.kwargs["params"]
        assert params["components"] == "country:us"
        assert params["types"] == "address"

    def test_autocomplete_zero_results(self):
        client = _client(fake_response({"status": "ZERO_RESULTS", "predictions": []}))
        assert client.autocomplete("zzzz") == []

    def test_network_error_propagates(self):
        client = _client(requests.ConnectionError("down"))
        with pytest.raises(requests.ConnectionError):
            client.geocode("1100 Congress Ave")

    def test_calls_recorded_on_active_trace(self):
        client = _client(fake_response(GEOCODE_OK))
        ctx = TraceContext(trace_id="t1")
        set_trace(ctx)
        try:
            client.geocode("1100 Congress Ave")
        finally:
            clear_trace()
        assert len(ctx.api_calls) == 1
        assert ctx.api_calls[0].service == "google_maps"
        assert ctx.api_calls[0].provider_status == "OK"


# =========================================================================
# Placeholders
# =========================================================================

class TestPlaceholders:
    def test_consistent_number_is_stable(self):
        a = consistent_number(30, 80, "1100 Congress Ave")
        b = consistent_number(30, 80, "1100 Congress Ave")
        assert a == b
        assert 30 <= a <= 80

    def test_consistent_number_bounds(self):
        for seed in ("a", "b", "c", "d", "", "1 Main St"):
            assert 5000 <= consistent_number(5000, 13000, seed) <= 13000

    def test_generate_placeholders_ranges(self):
        site = Site(address="1100 Congress Ave, Austin, TX", lat=30.0, lng=-97.0)
        generate_placeholders(site, random.Random(42))

        for score in (site.qap_score, site.market_score, site.priority_score):
            assert 0 <= score <= 99
        assert site.award_probability in ("High", "Medium", "Low")
        assert site.flood_zone in ("X", "AE", "A")
        assert set(site.amenities) == {"grocery", "transit", "school", "healthcare"}
        assert 0 <= site.amenities["transit"].distance < 1.0
        assert 0 <= site.amenities["healthcare"].distance < 5.0
        assert 1 <= site.market_data.school_rating <= 10
        assert 0 <= site.risk_data.crime_index <= 99
        assert 30 <= site.bike_score <= 80
        assert 5000 <= site.traffic_count <= 13000

    def test_same_seed_same_values(self):
        a = Site(address="x", lat=0, lng=0)
        b = Site(address="x", lat=0, lng=0)
        generate_placeholders(a, random.Random(7))
        generate_placeholders(b, random.Random(7))
        assert a.to_dict()["qap_score"] == b.to_dict()["qap_score"]
        assert a.amenities == b.amenities


# =========================================================================
# AMI
# =========================================================================

class TestApplyAmi:
    def test_map_layer_values(self):
        site = Site(address="x", lat=0, lng=0, county="Travis County", state="TX")
        apply_ami(site, Designations(ami=80000, vli=40000))
        assert site.ami == 80000
        assert site.vli_amount == 40000
        assert site.sixty_percent_ami == 48000
        assert site.effective_ami == 80000
        assert site.ami_source == "map_layer"

    def test_estimate_when_no_layer(self):
        site = Site(address="x", lat=0, lng=0, county="Travis County", state="TX")
        apply_ami(site, Designations())
        assert site.ami == 79200
        assert site.vli_amount == 39600
        assert site.sixty_percent_ami == 47520
        assert site.effective_ami == 79200
        assert site.ami_source == "estimate"


# =========================================================================
# evaluate_site
# =========================================================================

@pytest.fixture
def upstream():
    """Patch every outbound lookup evaluate_site makes."""
    with patch("site_evaluator.GoogleMapsClient.geocode",
               return_value=(30.2747, -97.7404, "1100 Congress Ave, Austin, TX 78701, USA")) as geocode, \
            patch("site_evaluator.GoogleMapsClient.reverse_geocode",
                  return_value="1100 Congress Ave, Austin, TX 78701, USA") as reverse, \
            patch("site_evaluator.get_msa", return_value=TRAVIS) as msa, \
            patch("site_evaluator.get_demographics", return_value=None) as demo, \
            patch("site_evaluator.MapboxClient.check_location_designations",
                  return_value=Designations()) as desig:
        yield {
            "geocode": geocode,
            "reverse_geocode": reverse,
            "get_msa": msa,
            "get_demographics": demo,
            "designations": desig,
        }


class TestEvaluateSite:
    def test_location_and_estimate(self, upstream):
        site = evaluate_site("1100 Congress Ave, Austin, TX 78701", "key",
                             mapbox_token="pk.test", rng=random.Random(1))

        assert site.address == "1100 Congress Ave, Austin, TX 78701"
        assert (site.lat, site.lng) == (30.2747, -97.7404)
        assert site.city == "Austin"
        assert site.state == "TX"
        assert site.county == "Travis County"
        assert site.msa == "Austin-Round Rock-Georgetown"
        assert site.ami == 79200
        assert site.ami_source == "estimate"
        assert site.map_error is None
        upstream["get_demographics"].assert_called_once_with(30.2747, -97.7404, "484530011001000")

    def test_map_layer_designations(self, upstream):
        upstream["designations"].return_value = Designations(
            is_qct=True, is_dda=True, ami=90000, vli=45000,
        )
        site = evaluate_site("1100 Congress Ave, Austin, TX", "key", mapbox_token="pk.test")
        assert site.is_qct is True
        assert site.is_dda is True
        assert site.ami == 90000
        assert site.effective_ami == 90000
        assert site.ami_source == "map_layer"

    def test_missing_token_is_reported(self, upstream):
        site = evaluate_site("1100 Congress Ave, Austin, TX", "key", mapbox_token=None)
        assert "Mapbox access token is missing" in site.map_error
        assert site.is_qct is False

    def test_geocode_failure_is_fatal(self, upstream):
        upstream["geocode"].side_effect = ValueError("Geocoding failed: ZERO_RESULTS")
        with pytest.raises(ValueError, match="Geocoding failed"):
            evaluate_site("nowhere", "key")

    def test_msa_failure_keeps_defaults(self, upstream):
        upstream["get_msa"].return_value = None
        site = evaluate_site("1100 Congress Ave, Austin, TX 78701", "key", mapbox_token="pk.test")
        assert site.county == "Unknown"
        assert site.msa == "Unknown"
        assert site.state == "TX"
        # Unknown county still gets a state-based estimate
        assert site.ami_source == "estimate"

    def test_msa_falls_back_to_city_state(self, upstream):
        upstream["get_msa"].return_value = MsaInfo(
            county="Llano County", state="TX", fips="48299", msa=None,
        )
        site = evaluate_site("100 Main St, Llano, TX 78643", "key", mapbox_token="pk.test")
        assert site.msa == "Llano, TX"

    def test_unknown_city_from_county(self, upstream):
        upstream["geocode"].return_value = (30.27, -97.74, "Somewhere")
        site = evaluate_site("Somewhere", "key", mapbox_token="pk.test")
        assert site.city == "Travis"

    def test_designation_error_recorded(self, upstream):
        upstream["designations"].side_effect = MapLayerError("Network error. Please check your internet connection and try again.")
        site = evaluate_site("1100 Congress Ave, Austin, TX", "key", mapbox_token="pk.test")
        assert site.map_error.startswith("Network error")
        assert site.is_qct is False
        assert site.ami_source == "estimate"

    def test_unexpected_designation_error_not_fatal(self, upstream):
        upstream["designations"].side_effect = AttributeError("'list' object has no attribute 'get'")
        site = evaluate_site("1100 Congress Ave, Austin, TX", "key", mapbox_token="pk.test")
        assert site.is_qct is False
        assert site.is_dda is False
        assert site.ami_source == "estimate"
        assert site.county == "Travis County"

    def test_census_failure_not_fatal(self, upstream):
        upstream["get_demographics"].side_effect = RuntimeError("boom")
        site = evaluate_site("1100 Congress Ave, Austin, TX", "key", mapbox_token="pk.test")
        assert site.demographics is None
        assert 0 <= site.qap_score <= 99

    def test_map_click_reverse_geocodes(self, upstream):
        site = evaluate_site(None, "key", lat=30.2747, lng=-97.7404, mapbox_token="pk.test")
        upstream["reverse_geocode"].assert_called_once_with(30.2747, -97.7404)
        upstream["geocode"].assert_not_called()
        assert site.address == "1100 Congress Ave, Austin, TX 78701, USA"

    def test_nothing_to_evaluate(self, upstream):
        with pytest.raises(ValueError):
            evaluate_site(None, "key")

    def test_stage_callbacks(self, upstream):
        stages = []
        evaluate_site("1100 Congress Ave, Austin, TX", "key",
                      mapbox_token="pk.test", on_stage=stages.append)
        assert stages == ["geocode", "location", "ami", "census", "scoring"]

    def test_stages_recorded_on_trace(self, upstream):
        ctx = TraceContext(trace_id="t2")
        set_trace(ctx)
        try:
            evaluate_site("1100 Congress Ave, Austin, TX", "key", mapbox_token="pk.test")
        finally:
            clear_trace()
        names = {s.name for s in ctx.stages}
        assert names == {"geocode", "msa", "designations", "ami", "census", "scoring"}
        assert ctx.summary_dict()["final_outcome"] == "success"


# =========================================================================
# Filters
# =========================================================================

def _site(**overrides):
    site = {
        "address": "1 Main St, Austin, TX",
        "state": "TX",
        "county": "Travis County",
        "is_qct": False,
        "is_dda": False,
        "qap_score": 70,
        "market_score": 60,
        "award_probability": "High",
        "flood_zone": "X",
        "risk_data": {"crime_index": 20},
        "amenities": {
            "grocery": {"exists": True, "distance": 0.5},
            "transit": {"exists": True, "distance": 0.2},
            "school": {"exists": True, "distance": 1.5},
            "healthcare": {"exists": True, "distance": 3.0},
        },
    }
    site.update(overrides)
    return site


class TestFilters:
    def test_defaults_pass_everything(self):
        sites = [_site(), _site(state="OH"), _site(qap_score=0)]
        assert apply_filters(sites, FilterSettings()) == sites

    def test_unknown_filter_key(self):
        with pytest.raises(ValueError, match="Unknown filter"):
            FilterSettings.from_dict({"zoning": "R1"})

    def test_unknown_amenity(self):
        with pytest.raises(ValueError, match="Unknown amenity"):
            FilterSettings.from_dict({"amenities": {"pool": "1"}})

    @pytest.mark.parametrize("key", ["to_dict", "from_dict"])
    def test_method_names_are_not_filters(self, key):
        with pytest.raises(ValueError, match="Unknown filter"):
            FilterSettings.from_dict({key: 1})

    @pytest.mark.parametrize("filters", [
        {"state": None},
        {"county": 48},
        {"award_probability": ""},
        {"qct_only": "yes"},
        {"low_crime_only": 1},
        {"min_market_score": "high"},
        {"min_qap_score": True},
        {"min_qap_score": None},
    ])
    def test_wrong_value_types(self, filters):
        with pytest.raises(ValueError):
            FilterSettings.from_dict(filters)

    def test_numeric_string_score_is_coerced(self):
        f = FilterSettings.from_dict({"min_market_score": "50"})
        assert f.min_market_score == 50.0
        sites = [_site(market_score=40), _site(market_score=60)]
        assert apply_filters(sites, f) == [sites[1]]

    def test_filters_must_be_object(self):
        with pytest.raises(ValueError):
            FilterSettings.from_dict(["qct_only"])

    def test_state_and_county_case_insensitive(self):
        sites = [_site(), _site(state="OH", county="Franklin County")]
        f = FilterSettings.from_dict({"state": "tx", "county": "travis county"})
        assert apply_filters(sites, f) == [sites[0]]

    def test_designation_flags(self):
        qct = _site(is_qct=True)
        dda = _site(is_dda=True)
        plain = _site()
        assert apply_filters([qct, dda, plain], FilterSettings(qct_only=True)) == [qct]
        assert apply_filters([qct, dda, plain], FilterSettings(dda_only=True)) == [dda]

    def test_min_scores_ignore_unscored(self):
        low = _site(market_score=40)
        high = _site(market_score=80)
        unscored = _site(market_score=0)
        result = apply_filters([low, high, unscored], FilterSettings(min_market_score=50))
        assert result == [high, unscored]

    def test_min_qap(self):
        sites = [_site(qap_score=55), _site(qap_score=75)]
        assert apply_filters(sites, FilterSettings(min_qap_score=60)) == [sites[1]]

    def test_award_probability(self):
        sites = [_site(award_probability="High"), _site(award_probability="Low")]
        f = FilterSettings.from_dict({"award_probability": "low"})
        assert apply_filters(sites, f) == [sites[1]]

    def test_flood_and_crime(self):
        flood = _site(flood_zone="AE")
        crime = _site(risk_data={"crime_index": 80})
        ok = _site()
        assert apply_filters([flood, crime, ok], FilterSettings(exclude_flood_zones=True)) == [crime, ok]
        assert apply_filters([flood, crime, ok], FilterSettings(low_crime_only=True)) == [flood, ok]

    def test_amenity_distance(self):
        near = _site()
        far = _site(amenities=dict(_site()["amenities"], transit={"exists": True, "distance": 0.9}))
        f = FilterSettings.from_dict({"amenities": {"transit": "0.5"}})
        assert apply_filters([near, far], f) == [near]

    def test_amenity_bad_value(self):
        with pytest.raises(ValueError, match="Amenity distance"):
            FilterSettings.from_dict({"amenities": {"grocery": "close"}})

    def test_round_trip_settings(self):
        f = FilterSettings.from_dict({"qct_only": True, "amenities": {"school": "1"}})
        d = f.to_dict()
        assert d["qct_only"] is True
        assert d["amenities"]["school"] == "1"
        assert d["amenities"]["grocery"] == "any"


# =========================================================================
# CSV export
# =========================================================================

class TestExportCsv:
    def test_header_only(self):
        assert export_sites_csv([]) == ",".join(CSV_HEADER) + "\n"

    def test_rows(self):
        out = export_sites_csv([
            _site(address="1 Main St, Austin, TX", priority_score=80, is_qct=True, ami=79200),
        ])
        lines = out.splitlines()
        assert lines[0] == "Address,QAP Score,Market Score,Priority Score,QCT,DDA,AMI,Award Probability"
        assert lines[1] == '"1 Main St, Austin, TX",70,60,80,Yes,No,79200,High'
