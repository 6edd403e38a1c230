"""SQLite-backed store for transactions, credentials, rules and the scrape ledger.

Every public method is a coroutine; the blocking sqlite3 call runs in a worker
thread (asyncio.to_thread) under a lock, so the event loop never blocks and one
shared connection is never used by two threads at once.
"""

import asyncio
import functools
import json
import sqlite3
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from scrape_sync.constants import CategorySource, ScrapeStatus, TransactionType
from scrape_sync.db.schemas import create_all_tables
from scrape_sync.models import (
    CardOwnership,
    CategorizationRule,
    ScrapeEvent,
    Transaction,
    VendorCredential,
)
from scrape_sync.utils.errors import PersistenceError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Columns compared/updated by the upsert engine
MUTABLE_TRANSACTION_FIELDS = ("price", "category", "category_source", "rule_matched", "status",
                              "installments_number", "installments_total")


def utc_now() -> datetime:
    """Naive UTC timestamp, same convention as SQLite CURRENT_TIMESTAMP"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _format_ts(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_db(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (CategorySource, TransactionType, ScrapeStatus)):
        return value.value
    return value


def offloaded(func):
    """Run a blocking store method in a worker thread while holding the connection lock"""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        return await asyncio.to_thread(self._locked_call, func, *args, **kwargs)
    return wrapper


class ScrapeStore:
    """Relational store consumed by the ingestion pipeline"""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            create_all_tables(self._get_connection())

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the persistent connection"""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def _locked_call(self, func, *args, **kwargs):
        with self._lock:
            try:
                return func(self, *args, **kwargs)
            except sqlite3.Error as e:
                raise PersistenceError(f"{func.__name__} failed: {e}")

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Settings (key -> JSON value)
    # ------------------------------------------------------------------

    @offloaded
    def get_setting(self, key: str, default: Any = None) -> Any:
        row = self._get_connection().execute(
            "SELECT value FROM app_settings WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except (TypeError, ValueError):
            return row["value"]

    @offloaded
    def set_setting(self, key: str, value: Any, description: Optional[str] = None) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO app_settings (key, value, description, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
            """,
            (key, json.dumps(value), description),
        )
        conn.commit()

    async def get_bool_setting(self, key: str, default: bool = False) -> bool:
        value = await self.get_setting(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    async def get_int_setting(self, key: str, default: int) -> int:
        value = await self.get_setting(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    # ------------------------------------------------------------------
    # Vendor credentials
    # ------------------------------------------------------------------

    @offloaded
    def add_credential(self, vendor: str, nickname: Optional[str] = None, **fields) -> int:
        allowed = ("username", "password", "id_number", "card6_digits", "user_code",
                   "bank_account_number", "is_active")
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown credential fields: {sorted(unknown)}")
        columns = ["vendor", "nickname"] + list(fields)
        values = [vendor, nickname] + [fields[c] for c in fields]
        conn = self._get_connection()
        cursor = conn.execute(
            f"INSERT INTO vendor_credentials ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            values,
        )
        conn.commit()
        return cursor.lastrowid

    @offloaded
    def get_credential(self, credential_id: int) -> Optional[VendorCredential]:
        row = self._get_connection().execute(
            "SELECT * FROM vendor_credentials WHERE id = ?", (credential_id,)
        ).fetchone()
        return self._row_to_credential(row) if row else None

    @offloaded
    def list_active_credentials(self) -> List[VendorCredential]:
        rows = self._get_connection().execute(
            """
            SELECT * FROM vendor_credentials
            WHERE is_active = 1
            ORDER BY last_synced_at IS NOT NULL, last_synced_at ASC, id ASC
            """
        ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    @offloaded
    def update_credential_last_synced(self, credential_id: int) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE vendor_credentials SET last_synced_at = ? WHERE id = ?",
            (_format_ts(utc_now()), credential_id),
        )
        conn.commit()

    @staticmethod
    def _row_to_credential(row: sqlite3.Row) -> VendorCredential:
        data = dict(row)
        data.pop("created_at", None)
        data["is_active"] = bool(data["is_active"])
        data["last_synced_at"] = _parse_ts(data.get("last_synced_at"))
        return VendorCredential(**data)

    # ------------------------------------------------------------------
    # Card ownership
    # ------------------------------------------------------------------

    @offloaded
    def get_card_ownership(self, vendor: str, account_number: str) -> Optional[CardOwnership]:
        row = self._get_connection().execute(
            "SELECT * FROM card_ownership WHERE vendor = ? AND account_number = ?",
            (vendor, account_number),
        ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["created_at"] = _parse_ts(data.get("created_at"))
        return CardOwnership(**data)

    @offloaded
    def insert_card_ownership(self, vendor: str, account_number: str, credential_id: int) -> bool:
        """Claim an account; False when someone already holds (vendor, account_number)"""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO card_ownership (vendor, account_number, credential_id)
            VALUES (?, ?, ?)
            ON CONFLICT (vendor, account_number) DO NOTHING
            """,
            (vendor, account_number, credential_id),
        )
        conn.commit()
        return cursor.rowcount == 1

    @offloaded
    def set_card_bank_link(self, ownership: CardOwnership) -> None:
        """Persist the bank-account link fields of an ownership row"""
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE card_ownership
            SET linked_bank_account_id = ?, custom_bank_account_number = ?, custom_bank_account_nickname = ?
            WHERE vendor = ? AND account_number = ?
            """,
            (ownership.linked_bank_account_id, ownership.custom_bank_account_number,
             ownership.custom_bank_account_nickname, ownership.vendor, ownership.account_number),
        )
        conn.commit()

    @offloaded
    def count_card_ownerships(self, vendor: Optional[str] = None, account_number: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM card_ownership WHERE 1 = 1"
        params: List[Any] = []
        if vendor is not None:
            query += " AND vendor = ?"
            params.append(vendor)
        if account_number is not None:
            query += " AND account_number = ?"
            params.append(account_number)
        return self._get_connection().execute(query, params).fetchone()[0]

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @offloaded
    def get_transaction(self, identifier: str, vendor: str) -> Optional[Transaction]:
        row = self._get_connection().execute(
            "SELECT * FROM transactions WHERE identifier = ? AND vendor = ?",
            (identifier, vendor),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    @offloaded
    def insert_transaction(self, transaction: Transaction) -> bool:
        """Insert unless (identifier, vendor) exists; True when a row was written"""
        data = transaction.model_dump()
        columns = list(data)
        conn = self._get_connection()
        cursor = conn.execute(
            f"""
            INSERT INTO transactions ({', '.join(columns)})
            VALUES ({', '.join('?' * len(columns))})
            ON CONFLICT (identifier, vendor) DO NOTHING
            """,
            [_to_db(data[c]) for c in columns],
        )
        conn.commit()
        return cursor.rowcount == 1

    @offloaded
    def update_transaction_fields(self, identifier: str, vendor: str, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - set(MUTABLE_TRANSACTION_FIELDS)
        if unknown:
            raise ValueError(f"Fields not updatable by re-scrape: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn = self._get_connection()
        conn.execute(
            f"UPDATE transactions SET {assignments} WHERE identifier = ? AND vendor = ?",
            [_to_db(v) for v in fields.values()] + [identifier, vendor],
        )
        conn.commit()

    @offloaded
    def find_transactions_near(self, vendor: str, name: str, around: date, days: int = 1) -> List[Transaction]:
        """Rows of a vendor with the same normalized name dated within +-days"""
        rows = self._get_connection().execute(
            """
            SELECT * FROM transactions
            WHERE vendor = ? AND LOWER(TRIM(name)) = ? AND date BETWEEN ? AND ?
            ORDER BY date, identifier
            """,
            (vendor, (name or "").strip().lower(),
             (around - timedelta(days=days)).isoformat(), (around + timedelta(days=days)).isoformat()),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    @offloaded
    def count_transactions(self, vendor: Optional[str] = None) -> int:
        if vendor is None:
            return self._get_connection().execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
        return self._get_connection().execute(
            "SELECT COUNT(*) FROM transactions WHERE vendor = ?", (vendor,)
        ).fetchone()[0]

    @offloaded
    def load_category_cache_entries(self) -> List[Tuple[str, str]]:
        """
        (name, category) pairs from stored transactions.

        Ordered so that later entries should win: scraper/rule categories first,
        manual edits last, older before newer within each group.
        """
        rows = self._get_connection().execute(
            """
            SELECT name, category FROM transactions
            WHERE category IS NOT NULL AND category != '' AND category != 'N/A'
            ORDER BY (category_source = 'cache') ASC, date ASC, created_at ASC
            """
        ).fetchall()
        return [(r["name"], r["category"]) for r in rows if r["name"]]

    @offloaded
    def set_manual_category(self, identifier: str, vendor: str, category: str) -> bool:
        """Record a user edit; category_source 'cache' protects it from re-scrapes"""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE transactions SET category = ?, category_source = ?, rule_matched = NULL
            WHERE identifier = ? AND vendor = ?
            """,
            (category, CategorySource.CACHE.value, identifier, vendor),
        )
        conn.commit()
        return cursor.rowcount == 1

    @offloaded
    def rename_category(self, old_category: str, new_category: str) -> Dict[str, int]:
        """Rename/merge a category across transactions, rules and mappings atomically"""
        conn = self._get_connection()
        try:
            with conn:
                txns = conn.execute(
                    "UPDATE transactions SET category = ? WHERE category = ?",
                    (new_category, old_category),
                ).rowcount
                rules = conn.execute(
                    """
                    UPDATE OR IGNORE categorization_rules SET target_category = ?
                    WHERE target_category = ?
                    """,
                    (new_category, old_category),
                ).rowcount
                # Rules that collided with an existing (pattern, new) pair are redundant now
                conn.execute(
                    "DELETE FROM categorization_rules WHERE target_category = ?", (old_category,)
                )
                mappings = conn.execute(
                    "UPDATE category_mappings SET target_category = ? WHERE target_category = ?",
                    (new_category, old_category),
                ).rowcount
                conn.execute(
                    """
                    INSERT INTO category_mappings (source_category, target_category) VALUES (?, ?)
                    ON CONFLICT (source_category) DO UPDATE SET target_category = excluded.target_category
                    """,
                    (old_category, new_category),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Category rename {old_category!r} -> {new_category!r} rolled back: {e}")
        return {"transactions": txns, "rules": rules, "mappings": mappings}

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        data = dict(row)
        data.pop("created_at", None)
        if not data.get("transaction_type"):
            data.pop("transaction_type", None)
        return Transaction(**data)

    # ------------------------------------------------------------------
    # Categorization rules and mappings
    # ------------------------------------------------------------------

    @offloaded
    def add_categorization_rule(self, name_pattern: str, target_category: str, is_active: bool = True) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            "INSERT INTO categorization_rules (name_pattern, target_category, is_active) VALUES (?, ?, ?)",
            (name_pattern, target_category, int(is_active)),
        )
        conn.commit()
        return cursor.lastrowid

    @offloaded
    def load_categorization_rules(self) -> List[CategorizationRule]:
        rows = self._get_connection().execute(
            """
            SELECT id, name_pattern, target_category, is_active FROM categorization_rules
            WHERE is_active = 1
            ORDER BY id
            """
        ).fetchall()
        return [CategorizationRule(**{**dict(r), "is_active": bool(r["is_active"])}) for r in rows]

    @offloaded
    def add_category_mapping(self, source_category: str, target_category: str) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO category_mappings (source_category, target_category) VALUES (?, ?)
            ON CONFLICT (source_category) DO UPDATE SET target_category = excluded.target_category
            """,
            (source_category, target_category),
        )
        conn.commit()

    @offloaded
    def load_category_mappings(self) -> Dict[str, str]:
        rows = self._get_connection().execute(
            "SELECT source_category, target_category FROM category_mappings"
        ).fetchall()
        return {r["source_category"]: r["target_category"] for r in rows}

    # ------------------------------------------------------------------
    # Scrape events (run ledger)
    # ------------------------------------------------------------------

    @offloaded
    def insert_scrape_event(
        self,
        triggered_by: Optional[str],
        vendor: str,
        start_date: date,
        message: str = "Scrape initiated",
        retry_count: int = 0,
        status: ScrapeStatus = ScrapeStatus.STARTED,
        created_at: Optional[datetime] = None,
    ) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO scrape_events (triggered_by, vendor, start_date, status, message, retry_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (triggered_by, vendor, _to_db(start_date), _to_db(status), message, retry_count,
             _format_ts(created_at or utc_now())),
        )
        conn.commit()
        return cursor.lastrowid

    @offloaded
    def update_scrape_event(
        self,
        event_id: int,
        status: ScrapeStatus,
        message: str,
        report: Optional[Dict[str, Any]] = None,
        duration_seconds: Optional[int] = None,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE scrape_events
            SET status = ?, message = ?,
                report_json = COALESCE(?, report_json),
                duration_seconds = COALESCE(?, duration_seconds)
            WHERE id = ?
            """,
            (_to_db(status), message, json.dumps(report, default=str) if report is not None else None,
             duration_seconds, event_id),
        )
        conn.commit()

    @offloaded
    def fail_started_event(self, event_id: int, message: str) -> bool:
        """Mark a still-'started' row failed; no-op once the row is terminal"""
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE scrape_events SET status = ?, message = ? WHERE id = ? AND status = ?",
            (ScrapeStatus.FAILED.value, message, event_id, ScrapeStatus.STARTED.value),
        )
        conn.commit()
        return cursor.rowcount == 1

    @offloaded
    def get_scrape_event(self, event_id: int) -> Optional[ScrapeEvent]:
        row = self._get_connection().execute(
            "SELECT * FROM scrape_events WHERE id = ?", (event_id,)
        ).fetchone()
        return self._row_to_event(row) if row else None

    @offloaded
    def latest_scrape_event(self, status: Optional[ScrapeStatus] = None) -> Optional[ScrapeEvent]:
        if status is None:
            row = self._get_connection().execute(
                "SELECT * FROM scrape_events ORDER BY created_at DESC, id DESC LIMIT 1"
            ).fetchone()
        else:
            row = self._get_connection().execute(
                "SELECT * FROM scrape_events WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                (_to_db(status),),
            ).fetchone()
        return self._row_to_event(row) if row else None

    @offloaded
    def recent_scrape_events(self, limit: int = 10) -> List[ScrapeEvent]:
        rows = self._get_connection().execute(
            "SELECT * FROM scrape_events ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [self._row_to_event(r) for r in rows]

    @offloaded
    def count_scrape_events(self, status: Optional[ScrapeStatus] = None) -> int:
        if status is None:
            return self._get_connection().execute("SELECT COUNT(*) FROM scrape_events").fetchone()[0]
        return self._get_connection().execute(
            "SELECT COUNT(*) FROM scrape_events WHERE status = ?", (_to_db(status),)
        ).fetchone()[0]

    @offloaded
    def purge_scrape_events(self, older_than: datetime) -> int:
        """Delete terminal rows created before the cutoff; 'started' rows are kept"""
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM scrape_events WHERE created_at < ? AND status != ?",
            (_format_ts(older_than), ScrapeStatus.STARTED.value),
        )
        conn.commit()
        return cursor.rowcount

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> ScrapeEvent:
        data = dict(row)
        data["report_json"] = json.loads(data["report_json"]) if data.get("report_json") else None
        data["created_at"] = _parse_ts(data.get("created_at"))
        return ScrapeEvent(**data)


@lru_cache(maxsize=1)
def get_store(db_path: str) -> ScrapeStore:
    """Process-wide store for one database file"""
    logger.info("Opening scrape store", db_path=db_path)
    return ScrapeStore(db_path)


__all__ = ["ScrapeStore", "get_store", "utc_now"]
