"""
TAPS — Transcript Automation and Processing Service
Database handle shared by every model module.

Usage:
    from taps.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
