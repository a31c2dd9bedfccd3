"""
Test Hub persistence models.

The shared Flask-SQLAlchemy handle lives here so every model module and the
application factory import the same ``db`` object:

    from testhub.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
