"""
Capital Project Portal: SQLAlchemy models.

The ``db`` extension is created here and bound to the app in ``create_app``.
Only the persistent JSON document table lives in the relational database;
domain collections are stored as JSON payloads through the storage layer.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
