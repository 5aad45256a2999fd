"""
CivicLens
Duplicate Detector — spatial pre-filter + visual confirmation.

1. Open issues with a photo inside a small bounding box around the new pin.
2. Ranked by squared planar distance, top N (default 3).
3. For each, in order: "same physical defect?" to the oracle; stop at first YES.

Fails open everywhere: a candidate whose image or oracle call fails counts
as "no match"; an unconfigured oracle means "not a duplicate".  Availability
problems in the AI dependency never block a citizen report.

Merging is the caller's job (``issue_lifecycle.merge_report``).
"""

import logging
from dataclasses import dataclass, field

from flask import current_app

from civiclens.ai.gateway import OracleImage, get_oracle_gateway
from civiclens.ai.prompts import duplicate_prompt
from civiclens.ai.verdicts import parse_yes_no
from civiclens.core.exceptions import OracleError, OracleUnavailable
from civiclens.models.ai import PURPOSE_DUPLICATE
from civiclens.models.issue import PENDING, Issue
from civiclens.services.geo import squared_planar_distance
from civiclens.services.image_store import get_image_store

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_DEG = 0.0005   # ~50 m at the equator
DEFAULT_MAX_CANDIDATES = 3


@dataclass(frozen=True)
class DuplicateCandidate:
    """A nearby open issue considered during intake (never persisted)."""

    id: str
    category: str
    status: str
    latitude: float
    longitude: float
    before_image: str
    report_count: int

    @classmethod
    def from_issue(cls, issue: Issue) -> "DuplicateCandidate":
        return cls(
            id=issue.id,
            category=issue.category,
            status=issue.status,
            latitude=issue.latitude,
            longitude=issue.longitude,
            before_image=issue.before_image,
            report_count=issue.report_count,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "status": self.status,
            "lat": self.latitude,
            "lng": self.longitude,
            "before_image": self.before_image,
            "report_count": self.report_count,
        }


@dataclass
class DuplicateResult:
    is_duplicate: bool
    candidate: DuplicateCandidate | None = None
    oracle_calls: int = 0
    considered: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_duplicate": self.is_duplicate,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "oracle_calls": self.oracle_calls,
        }


def find_nearby_candidates(
    lat: float,
    lng: float,
    *,
    radius_deg: float | None = None,
    statuses: tuple | None = None,
    limit: int | None = None,
) -> list[DuplicateCandidate]:
    """Open issues with a before-image inside the bounding box, nearest first."""
    cfg = current_app.config
    radius = radius_deg if radius_deg is not None else cfg.get("DUPLICATE_SEARCH_RADIUS_DEG", DEFAULT_RADIUS_DEG)
    statuses = tuple(statuses or cfg.get("DUPLICATE_CANDIDATE_STATUSES", (PENDING,)))
    limit = limit or cfg.get("DUPLICATE_MAX_CANDIDATES", DEFAULT_MAX_CANDIDATES)

    rows = (
        Issue.query
        .filter(
            Issue.status.in_(statuses),
            Issue.before_image.isnot(None),
            Issue.latitude.between(lat - radius, lat + radius),
            Issue.longitude.between(lng - radius, lng + radius),
        )
        .all()
    )
    rows.sort(key=lambda i: squared_planar_distance(lat, lng, i.latitude, i.longitude))
    return [DuplicateCandidate.from_issue(i) for i in rows[:limit]]


def detect_duplicate(
    image: OracleImage,
    lat: float,
    lng: float,
    category: str,
    *,
    radius_deg: float | None = None,
) -> DuplicateResult:
    """Return the first nearby open issue the oracle confirms as the same defect."""
    candidates = find_nearby_candidates(lat, lng, radius_deg=radius_deg)
    result = DuplicateResult(is_duplicate=False)
    if not candidates:
        return result

    gateway = get_oracle_gateway()
    store = get_image_store()
    prompt = duplicate_prompt(category)

    for candidate in candidates:
        result.considered.append(candidate.id)
        try:
            stored = store.load(candidate.before_image)
            result.oracle_calls += 1
            reply = gateway.ask(
                prompt,
                [image, OracleImage(stored.data, stored.mime_type)],
                purpose=PURPOSE_DUPLICATE,
                temperature=0.1,
            )
        except OracleUnavailable as exc:
            logger.warning("Duplicate check skipped, oracle unavailable: %s", exc,
                           extra={"event_type": "duplicate_check_skipped"})
            return result
        except OracleError as exc:
            logger.warning("Duplicate check against %s failed, treating as no match: %s",
                           candidate.id, exc, extra={"issue_id": candidate.id})
            continue

        if parse_yes_no(reply):
            logger.info("Oracle matched new report to issue %s", candidate.id,
                        extra={"issue_id": candidate.id, "event_type": "duplicate_found"})
            result.is_duplicate = True
            result.candidate = candidate
            return result

    return result
