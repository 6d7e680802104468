"""
Flask-Migrate / Alembic entry point and Flask CLI target.

Usage:
    flask --app wsgi db init       # first time only (creates migrations/)
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    flask --app wsgi sweep-overdue-approvals
"""

from change_governance import create_app

app = create_app()
