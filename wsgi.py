"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi reconcile-workflows
    # any WSGI server can serve ``wsgi:app``
"""

from app import create_app

app = create_app()
