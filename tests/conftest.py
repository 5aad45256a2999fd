"""
Shared pytest fixtures for the CivicLens test suite.

Provides:
    - app: Flask application (session-scoped), images stored in a tmp dir
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - oracle: scripted oracle provider wired into the gateway
    - citizen_headers / officer_headers / system_headers: bearer tokens
    - make_photo: JPEG bytes carrying EXIF GPS + capture time
    - seed_issue: an issue walked to a given status through the state machine
"""

import io
from datetime import UTC, datetime, timedelta

import pytest
from PIL import ExifTags, Image

from civiclens import create_app
from civiclens.ai.gateway import OracleGateway, OracleProvider, init_oracle_gateway
from civiclens.auth import Actor
from civiclens.models import db as _db
from civiclens.models.audit import AI_ANALYSIS, ISSUE_CREATED, append_entry
from civiclens.models.issue import (
    AI_ANALYZING,
    ASSIGNED,
    IN_PROGRESS,
    PENDING,
    REJECTED,
    RESOLVED,
    VALIDATED,
    Issue,
)
from civiclens.models.profile import Profile
from civiclens.services.image_store import ImageStore, get_image_store, init_image_store
from civiclens.services.issue_lifecycle import transition_issue
from civiclens.services.jwt_service import generate_access_token

# Connaught Place, New Delhi
DELHI = (28.6139, 77.2090)

CITIZEN_ID = "citizen-1"
OFFICER_ID = "officer-1"
SYSTEM_ID = "svc-triage"

OFFICER = Actor(user_id=OFFICER_ID, role="officer", username="inspector")


# ── Scripted oracle ──────────────────────────────────────────────────────


class ScriptedProvider(OracleProvider):
    """Replays queued replies in order; an Exception in the queue is raised."""

    def __init__(self, default="NO"):
        self.default = default
        self.replies = []
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    def generate(self, prompt, images, model, *, temperature, timeout, json_response=False):
        self.calls.append({
            "prompt": prompt,
            "images": list(images),
            "model": model,
            "temperature": temperature,
            "json_response": json_response,
        })
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


# ── Photos ───────────────────────────────────────────────────────────────


def _dms(value):
    value = abs(value)
    degrees = int(value)
    minutes_full = (value - degrees) * 60
    minutes = int(minutes_full)
    seconds = round((minutes_full - minutes) * 60, 4)
    return (float(degrees), float(minutes), seconds)


def build_photo(lat=None, lng=None, captured_at=None, *, gps=True, timestamp=True,
                exif=True, color=(128, 96, 64), modified_at=None):
    """Encode a small JPEG; EXIF blocks are included per the flags.

    ``modified_at`` sets the IFD0 DateTime tag (file modification time).
    """
    img = Image.new("RGB", (32, 32), color)
    buf = io.BytesIO()
    if not exif:
        img.save(buf, "JPEG")
        return buf.getvalue()

    data = Image.Exif()
    data[ExifTags.Base.Make] = "CivicCam"
    if modified_at is not None:
        data[ExifTags.Base.DateTime] = modified_at.astimezone(UTC).strftime("%Y:%m:%d %H:%M:%S")
    if gps and lat is not None and lng is not None:
        data[ExifTags.IFD.GPSInfo] = {
            ExifTags.GPS.GPSLatitudeRef: "N" if lat >= 0 else "S",
            ExifTags.GPS.GPSLatitude: _dms(lat),
            ExifTags.GPS.GPSLongitudeRef: "E" if lng >= 0 else "W",
            ExifTags.GPS.GPSLongitude: _dms(lng),
        }
    if timestamp:
        captured_at = captured_at or datetime.now(UTC) - timedelta(minutes=5)
        data[ExifTags.IFD.Exif] = {
            ExifTags.Base.DateTimeOriginal: captured_at.astimezone(UTC).strftime("%Y:%m:%d %H:%M:%S"),
        }
    img.save(buf, "JPEG", exif=data)
    return buf.getvalue()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    application = create_app("testing")
    init_image_store(application, ImageStore(str(tmp_path_factory.mktemp("media"))))
    init_oracle_gateway(application, OracleGateway(providers={}))
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture(autouse=True)
def _offline_oracle(app):
    """Every test starts with no oracle provider configured."""
    init_oracle_gateway(app, OracleGateway(providers={}))


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def oracle(app, _offline_oracle):
    """Scripted provider registered for the default (gemini) model."""
    provider = ScriptedProvider()
    init_oracle_gateway(app, OracleGateway(providers={"gemini": provider}))
    return provider


# ── Auth helpers ─────────────────────────────────────────────────────────


def auth_headers(user_id, role="citizen", username=None):
    token = generate_access_token(user_id, [role], username=username)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def citizen_headers():
    return auth_headers(CITIZEN_ID, "citizen", "asha")


@pytest.fixture()
def officer_headers():
    return auth_headers(OFFICER_ID, "officer", "inspector")


@pytest.fixture()
def system_headers():
    return auth_headers(SYSTEM_ID, "system")


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_photo():
    return build_photo


@pytest.fixture()
def seed_issue():
    """Create an issue and walk it to ``status`` with a valid ledger chain."""

    def _seed(status=PENDING, *, lat=DELHI[0], lng=DELHI[1], with_image=True,
              reporter_id=CITIZEN_ID, category="roads", title="Pothole near the metro gate",
              ai_score=72):
        if _db.session.get(Profile, reporter_id) is None:
            _db.session.add(Profile(id=reporter_id, username=reporter_id, role="citizen"))
            _db.session.flush()

        ref = None
        if with_image:
            ref = get_image_store().save(build_photo(exif=False), "image/jpeg", reporter_id)

        issue = Issue(
            reporter_id=reporter_id, category=category, title=title,
            latitude=lat, longitude=lng, status=PENDING, before_image=ref,
        )
        _db.session.add(issue)
        _db.session.flush()
        append_entry(issue_id=issue.id, action=ISSUE_CREATED, new_status=PENDING,
                     actor_id=reporter_id, details={"category": category}, strict=True)

        if status == REJECTED:
            transition_issue(issue.id, REJECTED, OFFICER, details={"reason": "not a civic issue"})
        elif status != PENDING:
            transition_issue(issue.id, AI_ANALYZING, None, details={"triggered_by": "AI_PIPELINE"})
            if status != AI_ANALYZING:
                transition_issue(issue.id, VALIDATED, None, action=AI_ANALYSIS,
                                 details={"confidence_score": ai_score}, fields={"ai_score": ai_score})
            if status in (ASSIGNED, IN_PROGRESS):
                transition_issue(issue.id, ASSIGNED, OFFICER, details={"reason": "crew 4"})
            if status == IN_PROGRESS:
                transition_issue(issue.id, IN_PROGRESS, OFFICER, details={"reason": "work started"})
            if status == RESOLVED:
                transition_issue(issue.id, RESOLVED, OFFICER, details={"reason": "fixed"},
                                 fields={"after_image": ref})

        _db.session.commit()
        return _db.session.get(Issue, issue.id)

    return _seed
