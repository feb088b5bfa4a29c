import sqlite3
from contextlib import contextmanager
from typing import Optional

from biosync.config import CONFIG


def _resolve(db_path: Optional[str]) -> str:
    return db_path or CONFIG.db_path


def init_db(db_path: Optional[str] = None) -> None:
    conn = sqlite3.connect(_resolve(db_path))
    try:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS devices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                ip TEXT NOT NULL,
                port INTEGER NOT NULL DEFAULT 4370,
                status TEXT NOT NULL DEFAULT 'active',
                password INTEGER DEFAULT 0,
                last_connected TEXT
            )
            """
        )
        # Backfill: device metadata columns added after the first schema
        cur.execute("PRAGMA table_info(devices)")
        cols = [row[1] for row in cur.fetchall()]
        for bc in ['location', 'serialnumber', 'firmware', 'platform', 'device_name', 'last_error']:
            if bc not in cols:
                cur.execute(f"ALTER TABLE devices ADD COLUMN {bc} TEXT")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS employees (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT,
                name TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS employee_device_users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                employee_id INTEGER NOT NULL,
                device_id INTEGER,
                device_user_id TEXT NOT NULL,
                FOREIGN KEY(employee_id) REFERENCES employees(id),
                FOREIGN KEY(device_id) REFERENCES devices(id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_edu_user ON employee_device_users(device_user_id)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS attendance_punch_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                employee_id INTEGER NOT NULL,
                device_id INTEGER NOT NULL,
                punch_time TEXT NOT NULL,
                punch_type TEXT NOT NULL,
                verification_method TEXT NOT NULL,
                device_user_id TEXT,
                raw_data TEXT,
                processed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(employee_id, device_id, punch_time),
                FOREIGN KEY(device_id) REFERENCES devices(id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_punch_device_ts ON attendance_punch_logs(device_id, punch_time)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS device_sync_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id INTEGER NOT NULL,
                sync_type TEXT NOT NULL DEFAULT 'attendance',
                status TEXT NOT NULL,
                records_synced INTEGER NOT NULL DEFAULT 0,
                duration_s REAL,
                error_message TEXT,
                started_at TEXT,
                finished_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_device ON device_sync_logs(device_id, started_at)")
        conn.commit()
    finally:
        conn.close()


@contextmanager
def get_conn(db_path: Optional[str] = None):
    conn = sqlite3.connect(_resolve(db_path))
    try:
        yield conn
    finally:
        conn.close()
