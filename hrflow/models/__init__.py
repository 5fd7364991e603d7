"""
HR Process Engine
SQLAlchemy extension and model registry.

Usage:
    from hrflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
