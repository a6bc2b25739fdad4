"""SQLite database module for sessions, transactions and the catalog.

This module uses Python's built-in :mod:`sqlite3` library. The database file
is selected with :func:`configure`, which also creates the table schema on
first use.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

DB_URI = "sqlite:///storefront.db"

_DATETIME_COLUMNS = ("expiry_date", "paid_at", "created_at", "updated_at", "expires_at")

_TRANSACTION_COLUMNS = (
    "merchant_ref",
    "trx_id",
    "user_id",
    "game",
    "item",
    "player_id",
    "zone_id",
    "nickname",
    "game_code",
    "service_code",
    "amount",
    "channel",
    "status",
    "payment_url",
    "payment_no",
    "qr_string",
    "message_id",
    "provider_order_id",
    "expiry_date",
    "paid_at",
    "created_at",
)

_ALLOWED_STATUSES = {"UNPAID", "PAID", "FAILED", "EXPIRED"}


def _normalize_sqlite_uri(uri: str) -> str:
    """Normalize a SQLite URI or path to a filesystem path.

    Args:
        uri: A SQLite URI (e.g. ``sqlite:///storefront.db``) or a plain path.

    Returns:
        A filesystem path suitable for :func:`sqlite3.connect`.
    """

    if uri.startswith("sqlite:///"):
        return uri[len("sqlite:///") :]
    return uri


def _db_path() -> str:
    """Return the resolved database path.

    Relative paths are resolved alongside this module.
    """

    path = _normalize_sqlite_uri(DB_URI)
    if os.path.isabs(path):
        return path

    return os.path.abspath(os.path.join(os.path.dirname(__file__), path))


@contextmanager
def _get_connection() -> Iterator[sqlite3.Connection]:
    """Context manager that yields a SQLite connection.

    Commits on success and rolls back on exceptions.

    Yields:
        A configured :class:`sqlite3.Connection`.

    Raises:
        sqlite3.Error: If the connection cannot be created.
    """

    conn: Optional[sqlite3.Connection] = None
    try:
        conn = sqlite3.connect(_db_path())
        conn.row_factory = sqlite3.Row
        yield conn
        conn.commit()
    except sqlite3.Error:
        if conn is not None:
            conn.rollback()
        raise
    finally:
        if conn is not None:
            conn.close()


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        chat_id INTEGER PRIMARY KEY,
        data TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        expires_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        merchant_ref TEXT PRIMARY KEY,
        trx_id TEXT,
        user_id INTEGER NOT NULL,
        game TEXT,
        item TEXT,
        player_id TEXT,
        zone_id TEXT,
        nickname TEXT,
        game_code TEXT,
        service_code TEXT,
        amount INTEGER NOT NULL,
        channel TEXT,
        status TEXT NOT NULL CHECK (status IN ('UNPAID', 'PAID', 'FAILED', 'EXPIRED')),
        payment_url TEXT,
        payment_no TEXT,
        qr_string TEXT,
        message_id INTEGER,
        provider_order_id TEXT,
        expiry_date TEXT,
        paid_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_trx_id ON transactions (trx_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS payment_channels (
        code TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        method TEXT,
        fee_type TEXT NOT NULL DEFAULT 'flat',
        fee_value REAL NOT NULL DEFAULT 0,
        min_amount INTEGER NOT NULL DEFAULT 0,
        max_amount INTEGER,
        status INTEGER NOT NULL DEFAULT 1,
        guide_title TEXT,
        guide_steps TEXT,
        logo TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS games (
        code TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'Game',
        validation_code TEXT,
        status INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS game_products (
        code TEXT PRIMARY KEY,
        game_code TEXT NOT NULL,
        name TEXT NOT NULL,
        price INTEGER NOT NULL,
        description TEXT,
        status INTEGER NOT NULL DEFAULT 1
    )
    """,
)


def _initialize_db() -> None:
    """Create required tables if they do not already exist."""

    try:
        with _get_connection() as conn:
            for statement in _SCHEMA:
                conn.execute(statement.strip())
    except sqlite3.Error:
        logger.exception("Failed to initialize database")
        # Callers will see failures on actual CRUD operations.
        return


def configure(uri: str) -> None:
    """Point the module at a database file and make sure the schema exists.

    Args:
        uri: A SQLite URI or a filesystem path.
    """

    global DB_URI
    DB_URI = uri
    _initialize_db()


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(row)

    for key in _DATETIME_COLUMNS:
        raw = result.get(key)
        if isinstance(raw, str):
            try:
                result[key] = datetime.fromisoformat(raw)
            except ValueError:
                # Keep original value if it doesn't parse cleanly.
                pass

    return result


# --------------------------------------------------------------------------
# Sessions
# --------------------------------------------------------------------------


def get_session(chat_id: int) -> Optional[Dict[str, Any]]:
    """Fetch the raw session record for a chat.

    Returns:
        The decoded session fields, or None if no row exists.
    """

    sql = "SELECT data FROM sessions WHERE chat_id = ?"

    try:
        with _get_connection() as conn:
            row = conn.execute(sql, (chat_id,)).fetchone()
        if row is None:
            return None
        return json.loads(row["data"])
    except (sqlite3.Error, ValueError):
        logger.exception("Failed to get session: chat_id=%s", chat_id)
        return None


def upsert_session(
    chat_id: int,
    data: Dict[str, Any],
    updated_at: datetime,
    expires_at: Optional[datetime],
) -> bool:
    """Insert or replace the session record for a chat.

    Args:
        chat_id: The primary key of the session.
        data: JSON-serialisable session fields.
        updated_at: Write timestamp, used by the expiry sweep.
        expires_at: Expiry of the record.

    Returns:
        True if the row was written, False otherwise.
    """

    sql = """
    INSERT INTO sessions (chat_id, data, updated_at, expires_at)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(chat_id) DO UPDATE SET
        data = excluded.data,
        updated_at = excluded.updated_at,
        expires_at = excluded.expires_at
    """.strip()

    try:
        with _get_connection() as conn:
            conn.execute(
                sql,
                (chat_id, json.dumps(data), _dt_to_str(updated_at), _dt_to_str(expires_at)),
            )
        return True
    except sqlite3.Error:
        logger.exception("Failed to save session: chat_id=%s", chat_id)
        return False


def delete_session(chat_id: int) -> bool:
    sql = "DELETE FROM sessions WHERE chat_id = ?"

    try:
        with _get_connection() as conn:
            cur = conn.execute(sql, (chat_id,))
            return cur.rowcount > 0
    except sqlite3.Error:
        logger.exception("Failed to delete session: chat_id=%s", chat_id)
        return False


def delete_sessions_updated_before(cutoff: datetime) -> int:
    """Delete sessions whose last write is older than ``cutoff``.

    Returns:
        The number of deleted rows.
    """

    sql = "DELETE FROM sessions WHERE updated_at < ?"

    try:
        with _get_connection() as conn:
            cur = conn.execute(sql, (_dt_to_str(cutoff),))
            return cur.rowcount
    except sqlite3.Error:
        logger.exception("Failed to clean up sessions")
        return 0


# --------------------------------------------------------------------------
# Transactions
# --------------------------------------------------------------------------


def create_transaction(data: Dict[str, Any]) -> bool:
    """Insert a new transaction row.

    Args:
        data: Column values. Unknown keys are ignored.

    Returns:
        True if the transaction was created, False otherwise.
    """

    row = {key: data.get(key) for key in _TRANSACTION_COLUMNS}
    for key in _DATETIME_COLUMNS:
        if key in row:
            row[key] = _dt_to_str(row[key])

    if row["status"] not in _ALLOWED_STATUSES:
        logger.error("Invalid status '%s' for merchant_ref=%s", row["status"], row["merchant_ref"])
        return False

    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    sql = f"INSERT INTO transactions ({columns}) VALUES ({placeholders})"

    try:
        with _get_connection() as conn:
            conn.execute(sql, tuple(row.values()))
        return True
    except sqlite3.IntegrityError:
        logger.exception("Failed to create transaction: merchant_ref=%s already exists", row["merchant_ref"])
        return False
    except sqlite3.Error:
        logger.exception("Failed to create transaction: merchant_ref=%s", row["merchant_ref"])
        return False


def get_transaction(merchant_ref: str) -> Optional[Dict[str, Any]]:
    sql = "SELECT * FROM transactions WHERE merchant_ref = ?"

    try:
        with _get_connection() as conn:
            row = conn.execute(sql, (merchant_ref,)).fetchone()
        if row is None:
            return None
        return _row_to_dict(row)
    except sqlite3.Error:
        logger.exception("Failed to get transaction: merchant_ref=%s", merchant_ref)
        return None


def get_transaction_by_trx_id(trx_id: str) -> Optional[Dict[str, Any]]:
    sql = "SELECT * FROM transactions WHERE trx_id = ?"

    try:
        with _get_connection() as conn:
            row = conn.execute(sql, (trx_id,)).fetchone()
        if row is None:
            return None
        return _row_to_dict(row)
    except sqlite3.Error:
        logger.exception("Failed to get transaction: trx_id=%s", trx_id)
        return None


def update_transaction(merchant_ref: str, fields: Dict[str, Any]) -> bool:
    """Update selected columns of a transaction.

    Args:
        merchant_ref: The primary key of the transaction.
        fields: Column values to write. ``merchant_ref`` cannot be changed.

    Returns:
        True if a row was updated, False otherwise.
    """

    updates = {k: v for k, v in fields.items() if k in _TRANSACTION_COLUMNS and k != "merchant_ref"}
    if not updates:
        return False

    if "status" in updates and updates["status"] not in _ALLOWED_STATUSES:
        logger.error("Invalid status '%s' for merchant_ref=%s", updates["status"], merchant_ref)
        return False

    for key in _DATETIME_COLUMNS:
        if key in updates:
            updates[key] = _dt_to_str(updates[key])

    assignments = ", ".join(f"{key} = ?" for key in updates)
    sql = f"UPDATE transactions SET {assignments} WHERE merchant_ref = ?"

    try:
        with _get_connection() as conn:
            cur = conn.execute(sql, (*updates.values(), merchant_ref))
            return cur.rowcount > 0
    except sqlite3.Error:
        logger.exception("Failed to update transaction: merchant_ref=%s", merchant_ref)
        return False


def list_user_transactions(user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
    """List the most recent transactions of a user, newest first."""

    sql = """
    SELECT * FROM transactions
    WHERE user_id = ?
    ORDER BY created_at DESC
    LIMIT ?
    """.strip()

    try:
        with _get_connection() as conn:
            rows = conn.execute(sql, (user_id, limit)).fetchall()
        return [_row_to_dict(r) for r in rows]
    except sqlite3.Error:
        logger.exception("Failed to list transactions: user_id=%s", user_id)
        return []


def mark_expired_transactions(now: datetime) -> int:
    """Flip UNPAID transactions whose expiry date has passed to EXPIRED.

    Returns:
        The number of updated rows.
    """

    sql = """
    UPDATE transactions
    SET status = 'EXPIRED'
    WHERE status = 'UNPAID'
      AND expiry_date IS NOT NULL
      AND expiry_date < ?
    """.strip()

    try:
        with _get_connection() as conn:
            cur = conn.execute(sql, (_dt_to_str(now),))
            return cur.rowcount
    except sqlite3.Error:
        logger.exception("Failed to mark expired transactions")
        return 0


def count_transactions_by_status() -> Dict[str, int]:
    sql = "SELECT status, COUNT(*) AS total FROM transactions GROUP BY status"

    try:
        with _get_connection() as conn:
            rows = conn.execute(sql).fetchall()
        return {row["status"]: row["total"] for row in rows}
    except sqlite3.Error:
        logger.exception("Failed to count transactions")
        return {}


# --------------------------------------------------------------------------
# Payment channels
# --------------------------------------------------------------------------


def upsert_payment_channel(channel: Dict[str, Any]) -> bool:
    sql = """
    INSERT INTO payment_channels
        (code, name, method, fee_type, fee_value, min_amount, max_amount, status, guide_title, guide_steps, logo)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(code) DO UPDATE SET
        name = excluded.name,
        method = excluded.method,
        fee_type = excluded.fee_type,
        fee_value = excluded.fee_value,
        min_amount = excluded.min_amount,
        max_amount = excluded.max_amount,
        status = excluded.status,
        guide_title = excluded.guide_title,
        guide_steps = excluded.guide_steps,
        logo = excluded.logo
    """.strip()

    try:
        with _get_connection() as conn:
            conn.execute(
                sql,
                (
                    channel["code"],
                    channel["name"],
                    channel.get("method"),
                    channel.get("fee_type", "flat"),
                    channel.get("fee_value", 0),
                    channel.get("min_amount", 0),
                    channel.get("max_amount"),
                    1 if channel.get("status", True) else 0,
                    channel.get("guide_title"),
                    json.dumps(channel.get("guide_steps") or []),
                    channel.get("logo"),
                ),
            )
        return True
    except sqlite3.Error:
        logger.exception("Failed to save payment channel: code=%s", channel.get("code"))
        return False


def _channel_row(row: sqlite3.Row) -> Dict[str, Any]:
    result = dict(row)
    result["status"] = bool(result["status"])
    try:
        result["guide_steps"] = json.loads(result["guide_steps"] or "[]")
    except ValueError:
        result["guide_steps"] = []
    return result


def list_payment_channels(active_only: bool = True) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM payment_channels"
    if active_only:
        sql += " WHERE status = 1"
    sql += " ORDER BY method, name"

    try:
        with _get_connection() as conn:
            rows = conn.execute(sql).fetchall()
        return [_channel_row(r) for r in rows]
    except sqlite3.Error:
        logger.exception("Failed to list payment channels")
        return []


def get_payment_channel(code: str) -> Optional[Dict[str, Any]]:
    sql = "SELECT * FROM payment_channels WHERE code = ?"

    try:
        with _get_connection() as conn:
            row = conn.execute(sql, (code,)).fetchone()
        if row is None:
            return None
        return _channel_row(row)
    except sqlite3.Error:
        logger.exception("Failed to get payment channel: code=%s", code)
        return None


# --------------------------------------------------------------------------
# Catalog
# --------------------------------------------------------------------------


def upsert_game(game: Dict[str, Any]) -> bool:
    sql = """
    INSERT INTO games (code, name, category, validation_code, status)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT(code) DO UPDATE SET
        name = excluded.name,
        category = excluded.category,
        validation_code = excluded.validation_code,
        status = excluded.status
    """.strip()

    try:
        with _get_connection() as conn:
            conn.execute(
                sql,
                (
                    game["code"],
                    game["name"],
                    game.get("category", "Game"),
                    game.get("validation_code"),
                    1 if game.get("status", True) else 0,
                ),
            )
        return True
    except sqlite3.Error:
        logger.exception("Failed to save game: code=%s", game.get("code"))
        return False


def list_games(active_only: bool = True) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM games"
    if active_only:
        sql += " WHERE status = 1"
    sql += " ORDER BY name"

    try:
        with _get_connection() as conn:
            rows = conn.execute(sql).fetchall()
        return [dict(r, status=bool(r["status"])) for r in rows]
    except sqlite3.Error:
        logger.exception("Failed to list games")
        return []


def get_game(code: str) -> Optional[Dict[str, Any]]:
    sql = "SELECT * FROM games WHERE code = ?"

    try:
        with _get_connection() as conn:
            row = conn.execute(sql, (code,)).fetchone()
        if row is None:
            return None
        return dict(row, status=bool(row["status"]))
    except sqlite3.Error:
        logger.exception("Failed to get game: code=%s", code)
        return None


def upsert_game_product(product: Dict[str, Any]) -> bool:
    sql = """
    INSERT INTO game_products (code, game_code, name, price, description, status)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(code) DO UPDATE SET
        game_code = excluded.game_code,
        name = excluded.name,
        price = excluded.price,
        description = excluded.description,
        status = excluded.status
    """.strip()

    try:
        with _get_connection() as conn:
            conn.execute(
                sql,
                (
                    product["code"],
                    product["game_code"],
                    product["name"],
                    product["price"],
                    product.get("description"),
                    1 if product.get("status", True) else 0,
                ),
            )
        return True
    except sqlite3.Error:
        logger.exception("Failed to save product: code=%s", product.get("code"))
        return False


def list_game_products(game_code: str, active_only: bool = True) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM game_products WHERE game_code = ?"
    if active_only:
        sql += " AND status = 1"
    sql += " ORDER BY price ASC"

    try:
        with _get_connection() as conn:
            rows = conn.execute(sql, (game_code,)).fetchall()
        return [dict(r, status=bool(r["status"])) for r in rows]
    except sqlite3.Error:
        logger.exception("Failed to list products: game_code=%s", game_code)
        return []


def get_game_product(code: str) -> Optional[Dict[str, Any]]:
    sql = "SELECT * FROM game_products WHERE code = ?"

    try:
        with _get_connection() as conn:
            row = conn.execute(sql, (code,)).fetchone()
        if row is None:
            return None
        return dict(row, status=bool(row["status"]))
    except sqlite3.Error:
        logger.exception("Failed to get product: code=%s", code)
        return None
