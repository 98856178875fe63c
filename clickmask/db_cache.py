# clickmask/db_cache.py
"""
Postgres backed cache for image embeddings.

Responsibilities:
- Manage a single Postgres connection
- Create embedding_cache table if needed
- Provide make_embedding_key, get_cached_embedding, store_cached_embedding

Only the per-image embedding is cached; click sessions are never stored.
"""

import os
import hashlib
from typing import Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from .logger import console

_DB_CONN = None
_DB_AVAILABLE = False
_DB_DISABLED_LOGGED = False


def _get_connection():
    """
    Get or create a global Postgres connection.

    If Postgres is not reachable, this will disable the cache gracefully.
    """
    global _DB_CONN, _DB_AVAILABLE, _DB_DISABLED_LOGGED

    if _DB_AVAILABLE and _DB_CONN is not None and not _DB_CONN.closed:
        return _DB_CONN

    if os.getenv("CLICKMASK_DISABLE_CACHE", "").lower() in ("1", "true", "yes"):
        return None

    host = os.getenv("DB_HOST", "postgres")
    port = int(os.getenv("DB_PORT", "5432"))
    name = os.getenv("DB_NAME", "clickmask_cache")
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "postgres")

    try:
        _DB_CONN = psycopg2.connect(
            host=host,
            port=port,
            dbname=name,
            user=user,
            password=password,
            connect_timeout=3,
        )
        _DB_CONN.autocommit = True
        _DB_AVAILABLE = True

        _init_cache_table(_DB_CONN)
        console.log("[green]Postgres embedding cache connected[/green]")
        return _DB_CONN

    except psycopg2.Error as exc:
        # Log once; keep cache disabled
        if not _DB_DISABLED_LOGGED:
            console.log(
                f"[yellow]Postgres cache disabled (cannot connect: {exc})[/yellow]"
            )
            _DB_DISABLED_LOGGED = True
        _DB_AVAILABLE = False
        _DB_CONN = None
        return None


def _init_cache_table(conn) -> None:
    """
    Create the embedding_cache table if it does not exist.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS embedding_cache (
                id SERIAL PRIMARY KEY,
                cache_key TEXT UNIQUE NOT NULL,
                embedding_b64 TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT NOW()
            );
            """
        )


def make_embedding_key(upload_bytes: bytes) -> str:
    """
    Deterministic key for the exact bytes sent to the embedding service.
    Two uploads of the same image at the same upload cap share a key.
    """
    h = hashlib.sha256()
    h.update(upload_bytes)
    return h.hexdigest()


def get_cached_embedding(cache_key: str) -> Optional[str]:
    """
    Look up a cached embedding (base64 float32 payload) by cache_key.

    Returns None if not found or cache is unavailable.
    """
    conn = _get_connection()
    if conn is None:
        return None

    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                "SELECT embedding_b64 FROM embedding_cache WHERE cache_key = %s",
                (cache_key,),
            )
            row = cur.fetchone()
            if not row:
                return None
            return row["embedding_b64"]
    except psycopg2.Error as exc:
        console.log(f"[yellow]Cache lookup failed for key {cache_key[:12]}: {exc}[/yellow]")
        return None


def store_cached_embedding(cache_key: str, embedding_b64: str) -> None:
    """
    Store or update a cached embedding for cache_key.

    If Postgres is unavailable this becomes a no-op.
    """
    conn = _get_connection()
    if conn is None:
        return

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO embedding_cache (cache_key, embedding_b64)
                VALUES (%s, %s)
                ON CONFLICT (cache_key) DO UPDATE
                SET embedding_b64 = EXCLUDED.embedding_b64
                """,
                (cache_key, embedding_b64),
            )
    except psycopg2.Error as exc:
        console.log(f"[yellow]Failed to store cache entry {cache_key[:12]}: {exc}[/yellow]")
