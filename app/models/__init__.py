"""
Project Workspace Platform
SQLAlchemy database instance.

All models import ``db`` from here so Flask-SQLAlchemy and Alembic share a
single metadata registry.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
