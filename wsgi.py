"""
Environmental Consulting Operations Core
WSGI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
"""

from envcrm import create_app

app = create_app()
