"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflows
    gunicorn wsgi:app
"""

from delivery import create_app

app = create_app()
