from __future__ import annotations

import json
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from recruit_billing.core.config import settings
from recruit_billing.core.errors import InsufficientCreditsError, UserNotFoundError

_conn: sqlite3.Connection | None = None
_conn_lock = threading.RLock()

DEFAULT_PACKAGES = (
    ("Basic", 500, 5000, "usd"),
    ("Professional", 2000, 15000, "usd"),
    ("Enterprise", 10000, 50000, "usd"),
)


@dataclass(frozen=True)
class CreditMutation:
    transaction_id: int | None
    previous_balance: int
    new_balance: int
    applied_amount: int
    duplicate: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _create_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            full_name TEXT,
            role TEXT NOT NULL DEFAULT 'user',
            is_suspended INTEGER NOT NULL DEFAULT 0,
            credits INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS credit_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            amount INTEGER NOT NULL,
            transaction_type TEXT NOT NULL,
            description TEXT NOT NULL,
            reference TEXT,
            balance_after INTEGER NOT NULL,
            meta_json TEXT,
            created_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_transactions_reference
        ON credit_transactions (transaction_type, reference)
        WHERE reference IS NOT NULL;
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_credit_transactions_user
        ON credit_transactions (user_id, id);
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS credit_usage_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            service_used TEXT NOT NULL,
            credits_deducted INTEGER NOT NULL,
            usage_date TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS credit_packages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            credits INTEGER NOT NULL,
            price_cents INTEGER NOT NULL,
            currency TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            provider_ref TEXT NOT NULL UNIQUE,
            kind TEXT NOT NULL,
            package_id INTEGER,
            amount INTEGER NOT NULL,
            currency TEXT NOT NULL,
            credits INTEGER NOT NULL,
            status TEXT NOT NULL,
            amount_refunded INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            customer_id TEXT,
            status TEXT NOT NULL,
            price_id TEXT,
            current_period_end INTEGER,
            updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS webhook_events (
            event_id TEXT PRIMARY KEY,
            event_type TEXT NOT NULL,
            received_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS admin_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            admin_user_id TEXT NOT NULL,
            action TEXT NOT NULL,
            target_type TEXT NOT NULL,
            target_id TEXT NOT NULL,
            details_json TEXT,
            created_at TEXT NOT NULL
        );
        """
    )
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(payments)").fetchall()}
    if "amount_refunded" not in columns:
        conn.execute("ALTER TABLE payments ADD COLUMN amount_refunded INTEGER NOT NULL DEFAULT 0")
    conn.executemany(
        """
        INSERT OR IGNORE INTO credit_packages (name, credits, price_cents, currency)
        VALUES (?, ?, ?, ?)
        """,
        DEFAULT_PACKAGES,
    )


def _get_connection() -> sqlite3.Connection:
    global _conn
    with _conn_lock:
        if _conn is not None:
            return _conn

        db_path = settings.billing_db_path
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        _conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            timeout=5,
            isolation_level=None,
        )
        _conn.row_factory = sqlite3.Row
        _conn.execute("PRAGMA journal_mode=WAL;")
        _conn.execute("PRAGMA synchronous=NORMAL;")
        _conn.execute("PRAGMA busy_timeout=5000;")
        _create_schema(_conn)
        return _conn


def init_db() -> None:
    _get_connection()


def _profile_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    profile = dict(row)
    profile["is_suspended"] = bool(profile["is_suspended"])
    return profile


def create_profile(
    *,
    user_id: str,
    email: str,
    full_name: str | None = None,
    role: str = "user",
    credits: int = 0,
) -> dict[str, Any]:
    conn = _get_connection()
    now_iso = _utc_now().isoformat()
    with _conn_lock:
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            existing = cursor.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
            if existing is None:
                cursor.execute(
                    """
                    INSERT INTO profiles (id, email, full_name, role, is_suspended, credits, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (user_id, email, full_name, role, max(0, int(credits)), now_iso, now_iso),
                )
                if credits > 0:
                    cursor.execute(
                        """
                        INSERT INTO credit_transactions (
                            user_id, amount, transaction_type, description, reference, balance_after, created_at
                        ) VALUES (?, ?, 'welcome', 'Welcome credits', NULL, ?, ?)
                        """,
                        (user_id, int(credits), int(credits), now_iso),
                    )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
    return _profile_dict(row) or {}


def get_profile(user_id: str) -> dict[str, Any] | None:
    conn = _get_connection()
    with _conn_lock:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
    return _profile_dict(row)


def set_profile_flags(user_id: str, *, role: str | None = None, is_suspended: bool | None = None) -> None:
    conn = _get_connection()
    assignments: list[str] = []
    params: list[Any] = []
    if role is not None:
        assignments.append("role = ?")
        params.append(role)
    if is_suspended is not None:
        assignments.append("is_suspended = ?")
        params.append(1 if is_suspended else 0)
    if not assignments:
        return
    assignments.append("updated_at = ?")
    params.extend([_utc_now().isoformat(), user_id])
    with _conn_lock:
        conn.execute(f"UPDATE profiles SET {', '.join(assignments)} WHERE id = ?", params)
        conn.commit()


def apply_credit_delta(
    user_id: str,
    delta: int,
    transaction_type: str,
    description: str,
    *,
    reference: str | None = None,
    floor_at_zero: bool = False,
    require_sufficient: bool = False,
    meta: dict[str, Any] | None = None,
) -> CreditMutation:
    """Change a user's balance and append the matching ledger row in one transaction.

    A non-null ``reference`` makes the call idempotent per transaction type: a
    second call with the same pair leaves the balance untouched and returns a
    mutation flagged ``duplicate``.
    """
    conn = _get_connection()
    now_iso = _utc_now().isoformat()
    with _conn_lock:
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            user = cursor.execute("SELECT credits FROM profiles WHERE id = ?", (user_id,)).fetchone()
            if user is None:
                raise UserNotFoundError()
            current = int(user["credits"] or 0)

            if reference is not None:
                existing = cursor.execute(
                    """
                    SELECT id FROM credit_transactions
                    WHERE transaction_type = ? AND reference = ?
                    """,
                    (transaction_type, reference),
                ).fetchone()
                if existing is not None:
                    conn.rollback()
                    return CreditMutation(
                        transaction_id=int(existing["id"]),
                        previous_balance=current,
                        new_balance=current,
                        applied_amount=0,
                        duplicate=True,
                    )

            if require_sufficient and delta < 0 and current < -delta:
                raise InsufficientCreditsError(required=-delta, available=current)

            updated = current + int(delta)
            if floor_at_zero:
                updated = max(0, updated)
            applied = updated - current

            cursor.execute(
                "UPDATE profiles SET credits = ?, updated_at = ? WHERE id = ?",
                (updated, now_iso, user_id),
            )
            cursor.execute(
                """
                INSERT INTO credit_transactions (
                    user_id, amount, transaction_type, description, reference, balance_after, meta_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    applied,
                    transaction_type,
                    description,
                    reference,
                    updated,
                    json.dumps(meta, separators=(",", ":"), sort_keys=True) if meta else None,
                    now_iso,
                ),
            )
            transaction_id = int(cursor.lastrowid)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return CreditMutation(
        transaction_id=transaction_id,
        previous_balance=current,
        new_balance=updated,
        applied_amount=applied,
    )


def log_credit_usage(user_id: str, service_used: str, credits_deducted: int) -> dict[str, Any]:
    conn = _get_connection()
    usage_date = _utc_now().isoformat()
    with _conn_lock:
        cur = conn.execute(
            """
            INSERT INTO credit_usage_logs (user_id, service_used, credits_deducted, usage_date)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, service_used, int(credits_deducted), usage_date),
        )
        conn.commit()
        log_id = int(cur.lastrowid)
    return {
        "id": log_id,
        "user_id": user_id,
        "service_used": service_used,
        "credits_deducted": int(credits_deducted),
        "usage_date": usage_date,
    }


def list_credit_transactions(user_id: str, *, limit: int = 20, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
    conn = _get_connection()
    with _conn_lock:
        rows = conn.execute(
            """
            SELECT id, amount, transaction_type, description, reference, balance_after, created_at
            FROM credit_transactions
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        ).fetchall()
        total = conn.execute(
            "SELECT COUNT(1) FROM credit_transactions WHERE user_id = ?",
            (user_id,),
        ).fetchone()[0]
    return [dict(row) for row in rows], int(total or 0)


def list_credit_usage(user_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
    conn = _get_connection()
    with _conn_lock:
        rows = conn.execute(
            """
            SELECT id, service_used, credits_deducted, usage_date
            FROM credit_usage_logs
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    return [dict(row) for row in rows]


def list_credit_packages() -> list[dict[str, Any]]:
    conn = _get_connection()
    with _conn_lock:
        rows = conn.execute(
            """
            SELECT id, name, credits, price_cents, currency
            FROM credit_packages
            WHERE is_active = 1
            ORDER BY price_cents ASC
            """
        ).fetchall()
    return [dict(row) for row in rows]


def get_credit_package(package_id: int) -> dict[str, Any] | None:
    conn = _get_connection()
    with _conn_lock:
        row = conn.execute(
            """
            SELECT id, name, credits, price_cents, currency
            FROM credit_packages
            WHERE id = ? AND is_active = 1
            """,
            (package_id,),
        ).fetchone()
    return dict(row) if row else None


def record_payment(
    *,
    user_id: str,
    provider_ref: str,
    kind: str,
    amount: int,
    currency: str,
    credits: int,
    status: str,
    package_id: int | None = None,
) -> None:
    conn = _get_connection()
    now_iso = _utc_now().isoformat()
    with _conn_lock:
        conn.execute(
            """
            INSERT INTO payments (
                user_id, provider_ref, kind, package_id, amount, currency, credits, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(provider_ref) DO UPDATE SET status = excluded.status, updated_at = excluded.updated_at
            """,
            (user_id, provider_ref, kind, package_id, int(amount), currency, int(credits), status, now_iso, now_iso),
        )
        conn.commit()


def update_payment_status(provider_ref: str, status: str) -> bool:
    conn = _get_connection()
    now_iso = _utc_now().isoformat()
    completed_at = now_iso if status in {"succeeded", "completed"} else None
    with _conn_lock:
        cur = conn.execute(
            """
            UPDATE payments
            SET status = ?, updated_at = ?, completed_at = COALESCE(?, completed_at)
            WHERE provider_ref = ?
            """,
            (status, now_iso, completed_at, provider_ref),
        )
        conn.commit()
    return bool(cur.rowcount)


def get_payment(provider_ref: str) -> dict[str, Any] | None:
    conn = _get_connection()
    with _conn_lock:
        row = conn.execute("SELECT * FROM payments WHERE provider_ref = ?", (provider_ref,)).fetchone()
    return dict(row) if row else None


def record_refund(provider_ref: str, refund_amount: int) -> str | None:
    """Add a refund to a payment and return its new status, or None if the payment is unknown."""
    conn = _get_connection()
    now_iso = _utc_now().isoformat()
    with _conn_lock:
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            row = cursor.execute(
                "SELECT amount, amount_refunded FROM payments WHERE provider_ref = ?",
                (provider_ref,),
            ).fetchone()
            if row is None:
                conn.rollback()
                return None
            refunded = int(row["amount_refunded"] or 0) + int(refund_amount)
            status = "refunded" if refunded >= int(row["amount"]) else "partially_refunded"
            cursor.execute(
                """
                UPDATE payments SET amount_refunded = ?, status = ?, updated_at = ?
                WHERE provider_ref = ?
                """,
                (refunded, status, now_iso, provider_ref),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return status


def list_payments(user_id: str, *, limit: int = 10, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
    conn = _get_connection()
    with _conn_lock:
        rows = conn.execute(
            """
            SELECT provider_ref, kind, package_id, amount, currency, credits, status, amount_refunded,
                   created_at, completed_at
            FROM payments
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        ).fetchall()
        total = conn.execute("SELECT COUNT(1) FROM payments WHERE user_id = ?", (user_id,)).fetchone()[0]
    return [dict(row) for row in rows], int(total or 0)


def upsert_subscription(
    *,
    subscription_id: str,
    status: str,
    user_id: str | None = None,
    customer_id: str | None = None,
    price_id: str | None = None,
    current_period_end: int | None = None,
) -> None:
    conn = _get_connection()
    now_iso = _utc_now().isoformat()
    with _conn_lock:
        conn.execute(
            """
            INSERT INTO subscriptions (id, user_id, customer_id, status, price_id, current_period_end, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = COALESCE(excluded.user_id, subscriptions.user_id),
                customer_id = COALESCE(excluded.customer_id, subscriptions.customer_id),
                status = excluded.status,
                price_id = COALESCE(excluded.price_id, subscriptions.price_id),
                current_period_end = COALESCE(excluded.current_period_end, subscriptions.current_period_end),
                updated_at = excluded.updated_at
            """,
            (subscription_id, user_id, customer_id, status, price_id, current_period_end, now_iso),
        )
        conn.commit()


def get_subscription_record(subscription_id: str) -> dict[str, Any] | None:
    conn = _get_connection()
    with _conn_lock:
        row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
    return dict(row) if row else None


def has_processed_event(event_id: str) -> bool:
    conn = _get_connection()
    with _conn_lock:
        row = conn.execute("SELECT 1 FROM webhook_events WHERE event_id = ?", (event_id,)).fetchone()
    return row is not None


def record_webhook_event(event_id: str, event_type: str) -> None:
    conn = _get_connection()
    with _conn_lock:
        conn.execute(
            "INSERT OR IGNORE INTO webhook_events (event_id, event_type, received_at) VALUES (?, ?, ?)",
            (event_id, event_type, _utc_now().isoformat()),
        )
        conn.commit()


def purge_old_webhook_events(retention_days: int | None = None) -> int:
    days = max(1, int(retention_days if retention_days is not None else settings.webhook_event_retention_days))
    cutoff = (_utc_now() - timedelta(days=days)).isoformat()
    conn = _get_connection()
    with _conn_lock:
        cur = conn.execute("DELETE FROM webhook_events WHERE received_at < ?", (cutoff,))
        conn.commit()
    return int(cur.rowcount or 0)


def record_admin_log(
    *,
    admin_user_id: str,
    action: str,
    target_id: str,
    details: dict[str, Any] | None = None,
    target_type: str = "user",
) -> int:
    conn = _get_connection()
    with _conn_lock:
        cur = conn.execute(
            """
            INSERT INTO admin_logs (admin_user_id, action, target_type, target_id, details_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                admin_user_id,
                action,
                target_type,
                target_id,
                json.dumps(details, separators=(",", ":"), sort_keys=True) if details else None,
                _utc_now().isoformat(),
            ),
        )
        conn.commit()
    return int(cur.lastrowid)


def list_admin_logs(*, target_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    conn = _get_connection()
    with _conn_lock:
        if target_id is None:
            rows = conn.execute("SELECT * FROM admin_logs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM admin_logs WHERE target_id = ? ORDER BY id DESC LIMIT ?",
                (target_id, limit),
            ).fetchall()
    logs = []
    for row in rows:
        entry = dict(row)
        entry["details"] = json.loads(entry.pop("details_json") or "{}")
        logs.append(entry)
    return logs


def clear_billing_data() -> None:
    conn = _get_connection()
    with _conn_lock:
        for table in (
            "admin_logs",
            "profiles",
            "credit_transactions",
            "credit_usage_logs",
            "payments",
            "subscriptions",
            "webhook_events",
        ):
            conn.execute(f"DELETE FROM {table}")
        conn.commit()
