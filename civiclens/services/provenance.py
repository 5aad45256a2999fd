"""
CivicLens
Provenance Verifier — anti-fraud check on "before" photos.

A report photo must carry its own capture metadata (EXIF GPS position and
capture time), be recent, and have been taken near the pin the citizen
dropped.  Runs before any oracle call so stock photos, screenshots and
misattributed locations are rejected for free.

    metadata = extract_capture_metadata(image_bytes)      # Pillow
    verify_provenance(metadata, lat, lng)                  # raises ProvenanceError

``verify_provenance`` is pure (clock injectable) so the rules are testable
without crafting images.
"""

import io
import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, timezone

from flask import current_app
from PIL import ExifTags, Image, UnidentifiedImageError

from civiclens.core.exceptions import (
    LocationMismatch,
    MissingGPS,
    MissingMetadata,
    MissingTimestamp,
    ProvenanceError,
    StaleImage,
    UnreadableImage,
)
from civiclens.services.geo import haversine_km

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_HOURS = 24.0
DEFAULT_MAX_DISTANCE_KM = 1.0

_EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"


@dataclass(frozen=True)
class CaptureMetadata:
    """What the photo says about itself."""

    has_metadata: bool
    latitude: float | None = None
    longitude: float | None = None
    captured_at: datetime | None = None


@dataclass(frozen=True)
class ProvenanceResult:
    valid: bool
    reason: str | None = None
    code: str | None = None


# ═════════════════════════════════════════════════════════════════════════════
# Extraction
# ═════════════════════════════════════════════════════════════════════════════

def _dms_to_degrees(dms, ref) -> float | None:
    try:
        degrees, minutes, seconds = (float(v) for v in dms)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    value = degrees + minutes / 60.0 + seconds / 3600.0
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", "ignore")
    if str(ref or "").strip().upper() in ("S", "W"):
        value = -value
    return value if math.isfinite(value) else None


def _parse_offset(raw) -> timezone | None:
    """EXIF OffsetTime* values look like '+05:30'."""
    if not raw:
        return None
    raw = str(raw).strip()
    try:
        sign = -1 if raw[0] == "-" else 1
        hours, minutes = raw.lstrip("+-").split(":")
        return timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))
    except (ValueError, IndexError):
        return None


def _parse_capture_time(exif_ifd: dict) -> datetime | None:
    # Only the shutter time counts; IFD0 DateTime is rewritten by every editor that saves the file
    raw = exif_ifd.get(ExifTags.Base.DateTimeOriginal)
    if not raw:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", "ignore")
    try:
        parsed = datetime.strptime(str(raw).strip().rstrip("\x00"), _EXIF_DATETIME_FORMAT)
    except ValueError:
        return None
    # Naive EXIF time is taken as UTC unless the camera recorded its offset
    tz = _parse_offset(exif_ifd.get(ExifTags.Base.OffsetTimeOriginal)) or UTC
    return parsed.replace(tzinfo=tz)


def extract_capture_metadata(data: bytes) -> CaptureMetadata:
    """Read GPS position and capture time from the image's EXIF block.

    Raises UnreadableImage when the bytes are not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            exif = img.getexif()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.info("Provenance: unreadable image (%s)", exc)
        raise UnreadableImage() from exc

    if not exif:
        return CaptureMetadata(has_metadata=False)

    gps = exif.get_ifd(ExifTags.IFD.GPSInfo)
    lat = lng = None
    if gps:
        lat_dms = gps.get(ExifTags.GPS.GPSLatitude)
        lng_dms = gps.get(ExifTags.GPS.GPSLongitude)
        if lat_dms and lng_dms:
            lat = _dms_to_degrees(lat_dms, gps.get(ExifTags.GPS.GPSLatitudeRef))
            lng = _dms_to_degrees(lng_dms, gps.get(ExifTags.GPS.GPSLongitudeRef))

    captured_at = _parse_capture_time(exif.get_ifd(ExifTags.IFD.Exif))

    return CaptureMetadata(has_metadata=True, latitude=lat, longitude=lng, captured_at=captured_at)


# ═════════════════════════════════════════════════════════════════════════════
# Verification
# ═════════════════════════════════════════════════════════════════════════════

def verify_provenance(
    metadata: CaptureMetadata,
    claimed_lat: float,
    claimed_lng: float,
    *,
    now: datetime | None = None,
    max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
) -> None:
    """Raise the matching ``ProvenanceError`` subclass, or return None when valid.

    Checks run in a fixed order: metadata present, GPS present, timestamp
    present, age, distance.
    """
    if not metadata.has_metadata:
        raise MissingMetadata()
    if metadata.latitude is None or metadata.longitude is None:
        raise MissingGPS()
    if metadata.captured_at is None:
        raise MissingTimestamp()

    now = now or datetime.now(UTC)
    age = now - metadata.captured_at
    if age > timedelta(hours=max_age_hours):
        raise StaleImage(
            f"This photo is over {max_age_hours:g} hours old. "
            "Please capture a live photo to report."
        )

    distance = haversine_km(metadata.latitude, metadata.longitude, claimed_lat, claimed_lng)
    if distance > max_distance_km:
        raise LocationMismatch(
            f"Image location is too far ({distance:.1f}km) from the reported map pin."
        )


def check_image_provenance(
    data: bytes,
    claimed_lat: float,
    claimed_lng: float,
    *,
    now: datetime | None = None,
) -> None:
    """Extract + verify with the app's configured thresholds.  Raises on failure."""
    cfg = current_app.config
    metadata = extract_capture_metadata(data)
    verify_provenance(
        metadata,
        claimed_lat,
        claimed_lng,
        now=now,
        max_age_hours=cfg.get("PROVENANCE_MAX_AGE_HOURS", DEFAULT_MAX_AGE_HOURS),
        max_distance_km=cfg.get("PROVENANCE_MAX_DISTANCE_KM", DEFAULT_MAX_DISTANCE_KM),
    )


def evaluate_provenance(data: bytes, claimed_lat: float, claimed_lng: float, *, now=None) -> ProvenanceResult:
    """Non-raising form: ``ProvenanceResult(valid, reason, code)``."""
    try:
        check_image_provenance(data, claimed_lat, claimed_lng, now=now)
    except ProvenanceError as exc:
        return ProvenanceResult(valid=False, reason=exc.reason, code=exc.code)
    return ProvenanceResult(valid=True)
