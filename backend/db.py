"""
Database connection helper.

This module centralizes how connections are created. Each call opens a
new psycopg connection; the repository wraps every sync operation in a
single `with get_conn() as conn:` block, so one connection equals one
transaction (psycopg commits on a clean exit and rolls back on error).

Usage:
    from db import get_conn
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1;")
"""

import psycopg
from settings import settings


def get_conn() -> psycopg.Connection:
    """Return a new psycopg connection using `settings.db_url`.

    The short `connect_timeout` keeps HTTP requests from hanging when
    the database is unreachable.
    """

    return psycopg.connect(settings.db_url, connect_timeout=settings.db_connect_timeout)
