"""
Repository pattern for data access.

Handles schema creation and persistence of usage counters, per-user limit
settings and block state.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import BlockState, LimitConfig, TemporaryOverride, UsageRecord


class ConcurrentUpdateError(RuntimeError):
    """Raised when a versioned record changed underneath a write."""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``payment_record`` and ``refund_job`` are ledgers: rows are appended
    and their status columns only ever move forward. No DELETE is ever
    issued against them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_record (
                user_id TEXT NOT NULL,
                app_id TEXT NOT NULL,
                day TEXT NOT NULL,
                minutes INTEGER NOT NULL CHECK (minutes >= 0),
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, app_id, day)
            );

            CREATE TABLE IF NOT EXISTS limit_config (
                user_id TEXT PRIMARY KEY,
                daily_limits TEXT NOT NULL,
                combined_limit_enabled INTEGER NOT NULL DEFAULT 0,
                combined_limit_minutes INTEGER,
                emergency_unlock_amount INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS block_state (
                user_id TEXT PRIMARY KEY,
                blocked TEXT NOT NULL,
                overrides TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS payment_record (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                app_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                refunded_at TEXT,
                unlock_duration_minutes INTEGER NOT NULL,
                request_id TEXT UNIQUE
            );

            CREATE TABLE IF NOT EXISTS refund_job (
                id TEXT PRIMARY KEY,
                payment_intent_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                app_id TEXT NOT NULL,
                refund_due_at TEXT NOT NULL,
                processed INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT,
                refund_id TEXT,
                refund_amount INTEGER,
                refund_requested_at TEXT,
                last_error TEXT,
                last_error_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                next_attempt_at TEXT,
                dead_lettered INTEGER NOT NULL DEFAULT 0
            );
        """)
    finally:
        conn.close()


@dataclass(frozen=True)
class UsageStats:
    """Usage over a window of days."""
    daily_usage: Dict[date, Dict[str, int]]
    totals: Dict[str, int]
    start: date
    end: date


class UsageRepository:
    """Durable per-user, per-app, per-day minute counters.

    Counters are monotonic within a day: a reading lower than the stored
    value never overwrites it.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def record_minutes(self, user_id: str, app_id: str, day: date, minutes: int) -> int:
        """Store an absolute "minutes used today" reading.

        Args:
            user_id: Owner of the counter
            app_id: Tracked app id
            day: Device-local calendar day
            minutes: Minutes reported by the usage source

        Returns:
            The stored counter after the write
        """
        if minutes < 0:
            raise ValueError("minutes cannot be negative")
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.execute("""
                    INSERT INTO usage_record (user_id, app_id, day, minutes, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, app_id, day) DO UPDATE SET
                        minutes = MAX(minutes, excluded.minutes),
                        updated_at = excluded.updated_at
                """, (user_id, app_id, day.isoformat(), minutes, datetime.now().isoformat()))
                row = conn.execute(
                    "SELECT minutes FROM usage_record WHERE user_id = ? AND app_id = ? AND day = ?",
                    (user_id, app_id, day.isoformat())
                ).fetchone()
            return row[0]
        finally:
            conn.close()

    def add_minutes(self, user_id: str, app_id: str, day: date, delta: int) -> int:
        """Accumulate ``delta`` minutes onto a day's counter."""
        if delta < 0:
            raise ValueError("usage counters never decrease")
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.execute("""
                    INSERT INTO usage_record (user_id, app_id, day, minutes, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, app_id, day) DO UPDATE SET
                        minutes = minutes + excluded.minutes,
                        updated_at = excluded.updated_at
                """, (user_id, app_id, day.isoformat(), delta, datetime.now().isoformat()))
                row = conn.execute(
                    "SELECT minutes FROM usage_record WHERE user_id = ? AND app_id = ? AND day = ?",
                    (user_id, app_id, day.isoformat())
                ).fetchone()
            return row[0]
        finally:
            conn.close()

    def get_usage_for_day(self, user_id: str, day: date) -> Dict[str, int]:
        """Minutes per app for one day."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT app_id, minutes FROM usage_record WHERE user_id = ? AND day = ?",
                (user_id, day.isoformat())
            )
            return {app_id: minutes for app_id, minutes in cursor.fetchall()}
        finally:
            conn.close()

    def get_usage_records(
        self,
        user_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None
    ) -> List[UsageRecord]:
        """Usage history for a user, oldest day first."""
        conn = get_connection(self.db_path)
        try:
            query = "SELECT user_id, app_id, day, minutes FROM usage_record WHERE user_id = ?"
            params = [user_id]
            if start is not None:
                query += " AND day >= ?"
                params.append(start.isoformat())
            if end is not None:
                query += " AND day <= ?"
                params.append(end.isoformat())
            query += " ORDER BY day ASC, app_id ASC"

            cursor = conn.execute(query, params)
            return [
                UsageRecord(
                    user_id=row[0],
                    app_id=row[1],
                    day=date.fromisoformat(row[2]),
                    minutes=row[3]
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_usage_stats(self, user_id: str, days: int = 7, today: Optional[date] = None) -> UsageStats:
        """Daily usage and per-app totals over the last ``days`` days.

        Args:
            user_id: User to summarise
            days: Number of calendar days in the window, ``today`` included
            today: End of the window (defaults to the local date)

        Returns:
            UsageStats for the window
        """
        if days <= 0:
            raise ValueError("days must be > 0")
        end = today or date.today()
        start = end - timedelta(days=days - 1)
        daily: Dict[date, Dict[str, int]] = {}
        totals: Dict[str, int] = {}
        for record in self.get_usage_records(user_id, start, end):
            daily.setdefault(record.day, {})[record.app_id] = record.minutes
            totals[record.app_id] = totals.get(record.app_id, 0) + record.minutes
        return UsageStats(daily_usage=daily, totals=totals, start=start, end=end)


class SettingsRepository:
    """Per-user limit configuration."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, defaults: Optional[LimitConfig] = None):
        self.db_path = db_path
        self.defaults = defaults or LimitConfig()

    def get_limit_config(self, user_id: str) -> LimitConfig:
        """Stored settings for a user, or the defaults if none were saved."""
        conn = get_connection(self.db_path)
        try:
            return self._read(conn, user_id)
        finally:
            conn.close()

    def save_limit_config(self, user_id: str, config: LimitConfig) -> None:
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                self._write(conn, user_id, config)
        finally:
            conn.close()

    def update_limit_config(self, user_id: str, mutate: Callable[[LimitConfig], LimitConfig]) -> LimitConfig:
        """Apply an explicit settings change atomically.

        Args:
            user_id: Owner of the settings
            mutate: Function from current settings to new settings

        Returns:
            The saved settings
        """
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                # Read inside the write lock so concurrent updates serialise.
                current = self._read(conn, user_id)
                updated = mutate(current)
                self._write(conn, user_id, updated)
            return updated
        finally:
            conn.close()

    def _read(self, conn, user_id: str) -> LimitConfig:
        row = conn.execute("""
            SELECT daily_limits, combined_limit_enabled, combined_limit_minutes,
                   emergency_unlock_amount
            FROM limit_config WHERE user_id = ?
        """, (user_id,)).fetchone()
        if row is None:
            return self.defaults
        return LimitConfig(
            daily_limits={k: int(v) for k, v in json.loads(row[0]).items()},
            combined_limit_enabled=bool(row[1]),
            combined_limit_minutes=row[2],
            emergency_unlock_amount=row[3]
        )

    @staticmethod
    def _write(conn, user_id: str, config: LimitConfig) -> None:
        conn.execute("""
            INSERT INTO limit_config
            (user_id, daily_limits, combined_limit_enabled, combined_limit_minutes,
             emergency_unlock_amount, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id) DO UPDATE SET
                daily_limits = excluded.daily_limits,
                combined_limit_enabled = excluded.combined_limit_enabled,
                combined_limit_minutes = excluded.combined_limit_minutes,
                emergency_unlock_amount = excluded.emergency_unlock_amount,
                updated_at = excluded.updated_at
        """, (
            user_id,
            json.dumps(config.daily_limits, sort_keys=True),
            int(config.combined_limit_enabled),
            config.combined_limit_minutes,
            config.emergency_unlock_amount,
            datetime.now().isoformat()
        ))


class BlockStateRepository:
    """Versioned durable block state, one record per user."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def load(self, user_id: str) -> BlockState:
        conn = get_connection(self.db_path)
        try:
            return self._read(conn, user_id)
        finally:
            conn.close()

    def update(self, user_id: str, mutate: Callable[[BlockState], BlockState]) -> BlockState:
        """Read-modify-write the user's block state in one transaction.

        Args:
            user_id: Owner of the block state
            mutate: Function from the current state to the new state.
                Returning the same object skips the write.

        Returns:
            The state after the update, with its new version

        Raises:
            ConcurrentUpdateError: If the stored version moved during the write
        """
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                current = self._read(conn, user_id)
                updated = mutate(current)
                if updated is current:
                    return current
                new_version = current.version + 1
                blocked = json.dumps(sorted(updated.blocked))
                overrides = json.dumps({
                    app_id: o.expires_at.isoformat()
                    for app_id, o in sorted(updated.overrides.items())
                })
                now = datetime.now().isoformat()
                if current.version == 0:
                    conn.execute("""
                        INSERT INTO block_state (user_id, blocked, overrides, version, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                    """, (user_id, blocked, overrides, new_version, now))
                else:
                    cursor = conn.execute("""
                        UPDATE block_state
                        SET blocked = ?, overrides = ?, version = ?, updated_at = ?
                        WHERE user_id = ? AND version = ?
                    """, (blocked, overrides, new_version, now, user_id, current.version))
                    if cursor.rowcount != 1:
                        raise ConcurrentUpdateError(
                            f"block state for {user_id} changed during update"
                        )
            return BlockState(
                user_id=user_id,
                blocked=frozenset(updated.blocked),
                overrides=dict(updated.overrides),
                version=new_version
            )
        finally:
            conn.close()

    @staticmethod
    def _read(conn, user_id: str) -> BlockState:
        row = conn.execute(
            "SELECT blocked, overrides, version FROM block_state WHERE user_id = ?",
            (user_id,)
        ).fetchone()
        if row is None:
            return BlockState(user_id=user_id)
        overrides = {
            app_id: TemporaryOverride(app_id=app_id, expires_at=datetime.fromisoformat(expires_at))
            for app_id, expires_at in json.loads(row[1]).items()
        }
        return BlockState(
            user_id=user_id,
            blocked=frozenset(json.loads(row[0])),
            overrides=overrides,
            version=row[2]
        )

