"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy and marshmallow as module-level objects so they can be
imported anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import `db` or `ma` from here wherever needed.

    from backend.app.extensions import db, ma

The capability resolver follows the same init_app() pattern but lives in
services/capability_resolver.py, next to the matrices it serves.
"""

from flask_marshmallow import Marshmallow
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Marshmallow instance, bound to the app in create_app().
#
# IMPORTANT: schema inheritance rule.
#   Request validation schemas inherit from marshmallow.Schema directly,
#   NOT from ma.Schema, so unit tests can load them without an app context.
#
#   Correct:
#       from marshmallow import Schema, fields
#       class CreateRideSchema(Schema): ...
#
#   Incorrect:
#       class CreateRideSchema(ma.Schema): ...   # breaks unit tests
ma = Marshmallow()
