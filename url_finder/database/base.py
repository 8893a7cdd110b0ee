# url_finder/database/base.py
"""
SQLAlchemy declarative base.

All ORM models in ``url_finder.database.models`` register against ``Base``;
``DatabaseService.init_db`` and Alembic both read ``Base.metadata``.
"""

from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()
