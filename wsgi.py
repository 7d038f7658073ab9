"""
WSGI entry point (gunicorn) and Flask-Migrate / Alembic target.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi seed-roles
    flask --app wsgi run-job outbox_dispatch
"""

from app import create_app

app = create_app()
