from datetime import timedelta

import pytest

from app.services.dispatch.geo import (
    compliance_score,
    composite_score,
    filter_warm_candidates,
    haversine_miles,
    is_within_radius,
    rank_warm_candidates,
    round_half_up,
)
from tests.helpers.fakes import NOW, TAMPA, make_technician, north_of


def test_haversine_matches_known_city_pair():
    # Tampa to Orlando is about 77 miles great-circle.
    distance = haversine_miles(TAMPA[0], TAMPA[1], 28.5383, -81.3792)
    assert 75 < distance < 90


def test_haversine_north_offset_round_trips():
    lat, lng = north_of(TAMPA, 10.0)
    assert haversine_miles(TAMPA[0], TAMPA[1], lat, lng) == pytest.approx(10.0, abs=1e-6)


def test_radius_boundary_is_exclusive():
    assert is_within_radius(49.999) is True
    assert is_within_radius(50.0) is False
    assert is_within_radius(50.001) is False


def test_filter_keeps_inside_and_drops_outside_radius():
    inside = make_technician("inside", miles=49.9)
    outside = make_technician("outside", miles=50.1)

    kept = filter_warm_candidates([inside, outside], job_lat=TAMPA[0], job_lng=TAMPA[1])

    assert [tech.id for tech, _ in kept] == ["inside"]
    assert kept[0][1] == pytest.approx(49.9, abs=1e-6)


def test_missing_coordinates_exclude_candidate():
    no_coords = make_technician("nocoords", lat=None, lng=None)
    nearby = make_technician("nearby", miles=1)

    kept = filter_warm_candidates([no_coords, nearby], job_lat=TAMPA[0], job_lng=TAMPA[1])
    assert [tech.id for tech, _ in kept] == ["nearby"]

    assert filter_warm_candidates([nearby], job_lat=None, job_lng=TAMPA[1]) == []


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2


def _iso(days: int) -> str:
    return (NOW + timedelta(days=days)).date().isoformat()


def test_compliance_full_marks():
    tech = make_technician(
        "full",
        insurance=[
            {"type": "general_liability", "expiration_date": _iso(365)},
            {"type": "workers_comp", "expiration_date": _iso(365)},
        ],
        licenses=[{"license_type": "HVAC"}] * 4,
        certifications=[{"name": "EPA 608"}] * 5,
    )
    assert compliance_score(tech, now=NOW) == 100


def test_compliance_expiry_tiers():
    tech = make_technician(
        "tiers",
        insurance=[
            {"type": "general_liability", "expiration_date": _iso(10)},
            {"type": "workers_comp", "expiration_date": _iso(10)},
        ],
        licenses=[{"expiration_date": _iso(10)}, {"expiration_date": _iso(-1)}],
        certifications=[{"expiration_date": _iso(10)}],
    )
    # GL expiring soon 20 + WC expiring soon 8 + license 5 + expired 0 + cert 3
    assert compliance_score(tech, now=NOW) == 36
    # GL expires before the job date drops to 15
    assert compliance_score(tech, job_date=NOW + timedelta(days=20), now=NOW) == 31


def test_composite_weights_compliance_rating_and_response():
    bare = make_technician("bare", average_rating=4.5, response_rate=80)
    # 0 * 0.7 + 90 * 0.2 + 80 * 0.1
    assert composite_score(bare, now=NOW) == 26


def test_rank_orders_by_score_then_distance():
    strong_far = make_technician("strong", miles=40, average_rating=5.0, response_rate=100)
    weak_near = make_technician("weak", miles=2, average_rating=1.0, response_rate=10)
    tie_near = make_technician("tie-near", miles=3, average_rating=3.0, response_rate=50)
    tie_far = make_technician("tie-far", miles=30, average_rating=3.0, response_rate=50)
    out_of_range = make_technician("gone", miles=80, average_rating=5.0, response_rate=100)

    ranked = rank_warm_candidates(
        [weak_near, tie_far, strong_far, out_of_range, tie_near],
        job_lat=TAMPA[0],
        job_lng=TAMPA[1],
    )

    assert [item.technician.id for item in ranked] == ["strong", "tie-near", "tie-far", "weak"]


def test_rank_accepts_custom_scorer():
    first = make_technician("a", miles=5)
    second = make_technician("b", miles=6)

    ranked = rank_warm_candidates(
        [first, second],
        job_lat=TAMPA[0],
        job_lng=TAMPA[1],
        scorer=lambda tech, _job_date: 99 if tech.id == "b" else 1,
    )

    assert [item.technician.id for item in ranked] == ["b", "a"]
    assert ranked[0].score == 99
