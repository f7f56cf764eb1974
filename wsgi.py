"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi sla-sweep
    flask --app wsgi send-reminders
"""

from taps import create_app

app = create_app()
