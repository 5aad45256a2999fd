"""
Provenance verifier tests — EXIF extraction and the anti-fraud rules.

Tests cover:
  - Great-circle distance helper
  - EXIF extraction from Pillow-encoded JPEGs (GPS + DateTimeOriginal)
  - Rule order: metadata → GPS → timestamp → age → distance
  - Configured thresholds via check_image_provenance / evaluate_provenance
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from civiclens.core.exceptions import (
    LocationMismatch,
    MissingGPS,
    MissingMetadata,
    MissingTimestamp,
    StaleImage,
    UnreadableImage,
)
from civiclens.services.geo import haversine_km, parse_coordinates
from civiclens.core.exceptions import ValidationError
from civiclens.services.provenance import (
    CaptureMetadata,
    check_image_provenance,
    evaluate_provenance,
    extract_capture_metadata,
    verify_provenance,
)

from conftest import DELHI, build_photo

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


# ═══════════════════════════════════════════════════════════════
# GEO
# ═══════════════════════════════════════════════════════════════

class TestGeo:
    def test_haversine_zero_distance(self):
        assert haversine_km(*DELHI, *DELHI) == 0.0

    def test_haversine_one_degree_of_latitude(self):
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.195, abs=0.01)

    def test_haversine_is_symmetric(self):
        a = haversine_km(28.6139, 77.2090, 19.0760, 72.8777)
        b = haversine_km(19.0760, 72.8777, 28.6139, 77.2090)
        assert a == pytest.approx(b)
        assert 1100 < a < 1200  # Delhi → Mumbai

    @pytest.mark.parametrize("lat,lng", [(None, 1), ("", 1), (1, None), ("abc", 1), (91, 0), (0, 181), ("nan", 0)])
    def test_parse_coordinates_rejects_bad_values(self, lat, lng):
        with pytest.raises(ValidationError):
            parse_coordinates(lat, lng)

    def test_parse_coordinates_accepts_strings(self):
        assert parse_coordinates("28.6139", "77.2090") == (28.6139, 77.2090)


# ═══════════════════════════════════════════════════════════════
# EXTRACTION
# ═══════════════════════════════════════════════════════════════

class TestExtraction:
    def test_reads_gps_and_capture_time(self):
        taken = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)
        meta = extract_capture_metadata(build_photo(*DELHI, taken))
        assert meta.has_metadata is True
        assert meta.latitude == pytest.approx(DELHI[0], abs=1e-4)
        assert meta.longitude == pytest.approx(DELHI[1], abs=1e-4)
        assert meta.captured_at == taken

    def test_southern_and_western_hemispheres_are_negative(self):
        meta = extract_capture_metadata(build_photo(-33.8688, -70.6693))
        assert meta.latitude == pytest.approx(-33.8688, abs=1e-4)
        assert meta.longitude == pytest.approx(-70.6693, abs=1e-4)

    def test_no_exif_block(self):
        meta = extract_capture_metadata(build_photo(exif=False))
        assert meta == CaptureMetadata(has_metadata=False)

    def test_exif_without_gps(self):
        meta = extract_capture_metadata(build_photo(*DELHI, gps=False))
        assert meta.has_metadata is True
        assert meta.latitude is None
        assert meta.captured_at is not None

    def test_file_modification_time_is_not_a_capture_time(self):
        photo = build_photo(*DELHI, timestamp=False, modified_at=datetime.now(UTC))
        meta = extract_capture_metadata(photo)
        assert meta.latitude is not None
        assert meta.captured_at is None

    def test_not_an_image(self):
        with pytest.raises(UnreadableImage):
            extract_capture_metadata(b"definitely not a jpeg")


# ═══════════════════════════════════════════════════════════════
# RULES
# ═══════════════════════════════════════════════════════════════

def _meta(lat=DELHI[0], lng=DELHI[1], age_hours=1.0):
    return CaptureMetadata(
        has_metadata=True, latitude=lat, longitude=lng,
        captured_at=NOW - timedelta(hours=age_hours),
    )


class TestVerifyProvenance:
    def test_fresh_nearby_photo_passes(self):
        assert verify_provenance(_meta(), *DELHI, now=NOW) is None

    def test_23_hours_old_passes(self):
        assert verify_provenance(_meta(age_hours=23), *DELHI, now=NOW) is None

    def test_25_hours_old_is_stale(self):
        with pytest.raises(StaleImage) as exc:
            verify_provenance(_meta(age_hours=25), *DELHI, now=NOW)
        assert "over 24 hours old" in exc.value.reason

    def test_two_km_away_is_a_mismatch(self):
        # 0.018° of latitude ≈ 2.0 km
        with pytest.raises(LocationMismatch) as exc:
            verify_provenance(_meta(lat=DELHI[0] + 0.018), *DELHI, now=NOW)
        assert "(2.0km)" in exc.value.reason

    def test_within_one_km_passes(self):
        assert verify_provenance(_meta(lat=DELHI[0] + 0.008), *DELHI, now=NOW) is None

    def test_missing_metadata(self):
        with pytest.raises(MissingMetadata):
            verify_provenance(CaptureMetadata(has_metadata=False), *DELHI, now=NOW)

    def test_missing_gps_checked_before_timestamp(self):
        meta = CaptureMetadata(has_metadata=True, latitude=None, longitude=None, captured_at=None)
        with pytest.raises(MissingGPS):
            verify_provenance(meta, *DELHI, now=NOW)

    def test_missing_timestamp(self):
        meta = CaptureMetadata(has_metadata=True, latitude=DELHI[0], longitude=DELHI[1])
        with pytest.raises(MissingTimestamp):
            verify_provenance(meta, *DELHI, now=NOW)

    def test_staleness_checked_before_distance(self):
        with pytest.raises(StaleImage):
            verify_provenance(_meta(lat=DELHI[0] + 1, age_hours=48), *DELHI, now=NOW)

    def test_recorded_offset_is_honoured(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        meta = CaptureMetadata(
            has_metadata=True, latitude=DELHI[0], longitude=DELHI[1],
            captured_at=datetime(2026, 10, 19, 17, 0, tzinfo=ist),  # 11:30 UTC
        )
        assert verify_provenance(meta, *DELHI, now=NOW) is None

    def test_custom_thresholds(self):
        with pytest.raises(StaleImage):
            verify_provenance(_meta(age_hours=2), *DELHI, now=NOW, max_age_hours=1)


class TestEvaluateProvenance:
    def test_valid_photo(self):
        taken = datetime.now(UTC) - timedelta(minutes=10)
        result = evaluate_provenance(build_photo(*DELHI, taken), *DELHI)
        assert result.valid is True
        assert result.reason is None

    def test_resaved_photo_without_shutter_time_is_rejected(self):
        # GPS intact, only the editor's save time left behind
        photo = build_photo(*DELHI, timestamp=False, modified_at=datetime.now(UTC))
        with pytest.raises(MissingTimestamp):
            check_image_provenance(photo, *DELHI)
        assert evaluate_provenance(photo, *DELHI).code == "ERR_PROVENANCE_MISSING_TIMESTAMP"

    def test_invalid_photo_reports_reason_and_code(self):
        result = evaluate_provenance(build_photo(exif=False), *DELHI)
        assert result.valid is False
        assert result.code == "ERR_PROVENANCE_MISSING_METADATA"
        assert "EXIF" in result.reason
