"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi flaky-report <project_id>
    gunicorn wsgi:app
"""

from testhub import create_app

app = create_app()
