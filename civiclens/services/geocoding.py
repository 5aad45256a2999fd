"""
CivicLens
Reverse geocoding through the OpenCage API.

Turns the reported pin into a human-readable address for officers.  Optional:
without ``OPENCAGE_API_KEY`` (or on any failure) the address falls back to the
formatted coordinates, so intake never depends on this call.

Testability: pass a custom ``session`` to Geocoder() to intercept HTTP calls.
"""

from __future__ import annotations

import logging

import requests
from flask import current_app

logger = logging.getLogger(__name__)

OPENCAGE_URL = "https://api.opencagedata.com/geocode/v1/json"


def coordinate_label(lat: float, lng: float) -> str:
    return f"{lat:.5f}, {lng:.5f}"


class Geocoder:
    def __init__(self, api_key: str | None, *, timeout: float = 5.0,
                 session: requests.Session | None = None) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def reverse(self, lat: float, lng: float) -> str:
        """Formatted address for the point, or the coordinate label."""
        if not self.api_key:
            return coordinate_label(lat, lng)
        try:
            resp = self.session.get(
                OPENCAGE_URL,
                params={"q": f"{lat},{lng}", "key": self.api_key, "no_annotations": 1, "limit": 1},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            results = resp.json().get("results") or []
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Reverse geocoding failed for %.5f,%.5f: %s", lat, lng, exc)
            return coordinate_label(lat, lng)

        if results and results[0].get("formatted"):
            return results[0]["formatted"][:300]
        return coordinate_label(lat, lng)


def init_geocoder(app, geocoder: Geocoder | None = None) -> Geocoder:
    geocoder = geocoder or Geocoder(
        app.config.get("OPENCAGE_API_KEY"),
        timeout=app.config.get("GEOCODING_TIMEOUT", 5.0),
    )
    app.extensions["civiclens.geocoder"] = geocoder
    return geocoder


def get_geocoder() -> Geocoder:
    return current_app.extensions["civiclens.geocoder"]
