"""
Flask entry point: WSGI servers (``gunicorn wsgi:app``) and Flask-Migrate.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi audit-trail profile 12 --tenant acme
"""

from fabstock import create_app

app = create_app()
