"""
Shared Flask-SQLAlchemy handle.

Models declare the schema of record; runtime reads and writes go through
db.engine.get_engine() with SQLAlchemy text() so workers do not need an
application context.
"""
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
