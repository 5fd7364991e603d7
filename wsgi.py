"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    FLASK_APP=wsgi.py flask db migrate
    FLASK_APP=wsgi.py flask recompute-role-levels --program-id 3
"""

from hrflow import create_app

app = create_app()
