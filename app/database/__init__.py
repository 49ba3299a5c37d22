# app/database/__init__.py
from .connection import get_db_connection, release_db_connection, DatabaseConnection

__all__ = ["get_db_connection", "release_db_connection", "DatabaseConnection"]
