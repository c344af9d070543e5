import math
import re
from typing import Dict

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from .config import Settings


_VERSION_RE = re.compile(r"^(\d+\.\d+)")


def build_engine(config: Settings) -> Engine:
    connect_timeout = max(1, math.ceil(config.store_timeout_s))
    return create_engine(
        config.database_url,
        pool_pre_ping=True,
        pool_timeout=config.store_timeout_s,
        connect_args={"connect_timeout": connect_timeout},
    )


def _parse_pg_version(raw: str) -> str:
    match = _VERSION_RE.match(raw.strip())
    return match.group(1) if match else raw.strip()


def fetch_db_info(conn: Connection) -> Dict[str, object]:
    server_version_raw = conn.execute(text("SHOW server_version")).scalar()
    table_present = conn.execute(
        text("SELECT to_regclass('transcriptions') IS NOT NULL")
    ).scalar()

    return {
        "server_version_raw": server_version_raw,
        "server_version": _parse_pg_version(server_version_raw),
        "transcriptions_table": bool(table_present),
    }
