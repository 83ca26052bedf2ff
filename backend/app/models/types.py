"""
Column types that work on PostgreSQL and on SQLite test databases
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB


JSONType = JSON().with_variant(JSONB(), "postgresql")
