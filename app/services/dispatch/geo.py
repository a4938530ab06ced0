"""Geofencing and composite ranking for the warm technician pool."""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Final

from app.models.records import Technician

EARTH_RADIUS_MILES: Final[float] = 3959.0
DEFAULT_RADIUS_MILES: Final[float] = 50.0
EXPIRING_SOON_DAYS: Final[int] = 30

Scorer = Callable[[Technician, "datetime | None"], int]


@dataclass(frozen=True)
class RankedTechnician:
    """Warm candidate that survived the geofence, with its distance and composite score."""

    technician: Technician
    distance_miles: float
    score: int


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in miles."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_within_radius(distance_miles: float, radius_miles: float = DEFAULT_RADIUS_MILES) -> bool:
    """The radius itself is outside the fence."""
    return distance_miles < radius_miles


def distance_to(
    job_lat: float | None, job_lng: float | None, lat: float | None, lng: float | None
) -> float | None:
    """Distance in miles, or None when either side lacks coordinates."""
    if None in (job_lat, job_lng, lat, lng):
        return None
    return haversine_miles(job_lat, job_lng, lat, lng)  # type: ignore[arg-type]


def filter_warm_candidates(
    technicians: Iterable[Technician],
    *,
    job_lat: float | None,
    job_lng: float | None,
    radius_miles: float = DEFAULT_RADIUS_MILES,
) -> list[tuple[Technician, float]]:
    """Keep technicians strictly inside the radius; missing coordinates exclude the technician."""
    kept: list[tuple[Technician, float]] = []
    for tech in technicians:
        distance = distance_to(job_lat, job_lng, tech.lat, tech.lng)
        if distance is None or not is_within_radius(distance, radius_miles):
            continue
        kept.append((tech, distance))
    return kept


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _expiration(item: Mapping[str, Any]) -> date | None:
    return _parse_date(item.get("expiration_date") or item.get("expirationDate"))


def _days_until(target: date, today: date) -> int:
    return (target - today).days


def insurance_points(insurance: Iterable[Mapping[str, Any]], *, job_date: date, today: date) -> int:
    """General liability up to 35 points, workers comp up to 15."""
    by_type = {}
    for item in insurance:
        by_type.setdefault(item.get("type"), item)
    score = 0

    general = by_type.get("general_liability")
    expires = _expiration(general) if general else None
    if expires is not None:
        remaining = _days_until(expires, today)
        if remaining < 0:
            pass
        elif remaining < _days_until(job_date, today):
            score += 15
        elif remaining < EXPIRING_SOON_DAYS:
            score += 20
        else:
            score += 35

    workers = by_type.get("workers_comp")
    expires = _expiration(workers) if workers else None
    if expires is not None:
        remaining = _days_until(expires, today)
        if remaining < 0:
            pass
        elif remaining < EXPIRING_SOON_DAYS:
            score += 8
        else:
            score += 15
    return score


def _credential_points(
    items: Iterable[Mapping[str, Any]], *, today: date, full: int, soon: int, cap: int
) -> int:
    score = 0
    for item in items:
        expires = _expiration(item)
        if expires is None:
            score += full
            continue
        remaining = _days_until(expires, today)
        if remaining < 0:
            continue
        score += soon if remaining < EXPIRING_SOON_DAYS else full
    return min(score, cap)


def compliance_score(tech: Technician, *, job_date: datetime | None = None, now: datetime | None = None) -> int:
    """0-100: insurance 50, licenses 30, certifications 20."""
    today = (now or datetime.now(timezone.utc)).date()
    target = job_date.date() if job_date else today
    score = insurance_points(tech.insurance or [], job_date=target, today=today)
    score += _credential_points(tech.licenses or [], today=today, full=10, soon=5, cap=30)
    score += _credential_points(tech.certifications or [], today=today, full=5, soon=3, cap=20)
    return score


def composite_score(tech: Technician, job_date: datetime | None = None, *, now: datetime | None = None) -> int:
    """Compliance 70%, rating 20% (5 stars = 100), response rate 10%."""
    compliance = compliance_score(tech, job_date=job_date, now=now)
    rating = (tech.average_rating or 0) * 20
    response = tech.response_rate or 0
    return round_half_up(compliance * 0.7 + rating * 0.2 + response * 0.1)


def rank_warm_candidates(
    technicians: Iterable[Technician],
    *,
    job_lat: float | None,
    job_lng: float | None,
    job_date: datetime | None = None,
    radius_miles: float = DEFAULT_RADIUS_MILES,
    scorer: Scorer | None = None,
) -> list[RankedTechnician]:
    """Geofence, then order by composite score (ties broken by distance)."""
    score_fn = scorer or composite_score
    ranked = [
        RankedTechnician(technician=tech, distance_miles=distance, score=score_fn(tech, job_date))
        for tech, distance in filter_warm_candidates(
            technicians, job_lat=job_lat, job_lng=job_lng, radius_miles=radius_miles
        )
    ]
    ranked.sort(key=lambda item: (-item.score, item.distance_miles))
    return ranked
