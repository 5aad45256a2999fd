"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi triage-drain
    gunicorn wsgi:app
"""

from civiclens import create_app

app = create_app()
