"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without triggering
alembic.context at import time.
"""

from __future__ import annotations

import os
from typing import Mapping

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL, make_url

DRIVER = "postgresql+psycopg2"


def url_from_dsn(dsn: str, db_password: str | None = None) -> str:
    """Turn DATABASE_URL (URL or libpq key=value form) into a SQLAlchemy URL.

    db_password fills in the password only when the DSN has none. A libpq
    host starting with "/" is a unix socket and goes in the query string.
    """
    if "://" in dsn:
        if dsn.startswith("postgres://"):
            dsn = "postgresql://" + dsn[len("postgres://"):]
        url = make_url(dsn).set(drivername=DRIVER)
        if db_password and not url.password:
            url = url.set(password=db_password)
        return url.render_as_string(hide_password=False)

    params = parse_dsn(dsn)
    password = params.get("password") or db_password or None
    host = params.get("host", "localhost")

    if host.startswith("/"):
        url = URL.create(
            DRIVER,
            username=params.get("user"),
            password=password,
            database=params.get("dbname"),
            query={"host": host},
        )
    else:
        url = URL.create(
            DRIVER,
            username=params.get("user"),
            password=password,
            host=host,
            port=int(params.get("port", "5432")),
            database=params.get("dbname"),
        )
    return url.render_as_string(hide_password=False)


def database_url(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    dsn = env.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    return url_from_dsn(dsn, env.get("DB_PASSWORD") or None)
