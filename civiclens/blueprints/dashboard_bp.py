"""
Public city dashboard.

Endpoints:
    GET /api/v1/dashboard  — totals, map points, active fixes, leaders, activity
"""

from flask import Blueprint, jsonify

from civiclens.services.dashboard_service import get_dashboard

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api/v1")


@dashboard_bp.route("/dashboard", methods=["GET"])
def dashboard():
    return jsonify(get_dashboard())
