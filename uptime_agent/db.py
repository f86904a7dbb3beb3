from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from pathlib import Path
from typing import Any

from uptime_agent.config import UptimeConfig
from uptime_agent.results import CheckResult


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except Exception:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except Exception:
        pass
    return conn


def ensure_schema(db_path: str) -> None:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return
    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS instances (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          enabled INTEGER NOT NULL DEFAULT 1,
          tags_json TEXT NOT NULL DEFAULT '[]'
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS checks (
          id TEXT PRIMARY KEY,
          instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          type TEXT NOT NULL,
          url TEXT,
          severity TEXT NOT NULL DEFAULT 'critical',
          enabled INTEGER NOT NULL DEFAULT 1,
          interval_seconds INTEGER NOT NULL,
          timeout_ms INTEGER NOT NULL,
          meta_json TEXT NOT NULL DEFAULT '{}'
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS check_runs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          check_id TEXT NOT NULL REFERENCES checks(id) ON DELETE CASCADE,
          ts REAL NOT NULL,
          ok INTEGER NOT NULL,
          status_code INTEGER,
          duration_ms INTEGER NOT NULL,
          error_text TEXT,
          details_json TEXT NOT NULL DEFAULT '{}'
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_check_runs_check_id_ts ON check_runs(check_id, ts DESC);")


def _check_meta(chk: Any) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    for key in ("method", "headers", "body", "mode"):
        value = getattr(chk, key, None)
        if value not in (None, {}, ""):
            meta[key] = value
    expect = getattr(chk, "expect", None)
    if expect:
        meta["expect"] = [rule.model_dump(by_alias=True, exclude_none=True) for rule in expect]
    return meta


def upsert_config(db_path: str, config: UptimeConfig) -> None:
    """Persist instances and check definitions. Idempotent; run history is untouched."""
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        for inst in config.instances:
            conn.execute(
                """
                INSERT INTO instances (id, name, enabled, tags_json) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name=excluded.name, enabled=excluded.enabled, tags_json=excluded.tags_json
                """,
                (inst.id, inst.name, 1 if inst.enabled else 0, _json_dumps(list(inst.tags))),
            )
            for chk in inst.checks:
                conn.execute(
                    """
                    INSERT INTO checks (id, instance_id, name, type, url, severity, enabled, interval_seconds, timeout_ms, meta_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                      name=excluded.name,
                      type=excluded.type,
                      url=excluded.url,
                      severity=excluded.severity,
                      enabled=excluded.enabled,
                      interval_seconds=excluded.interval_seconds,
                      timeout_ms=excluded.timeout_ms,
                      meta_json=excluded.meta_json
                    """,
                    (
                        chk.check_key,
                        inst.id,
                        chk.name,
                        chk.type,
                        getattr(chk, "url", None),
                        chk.severity,
                        1 if chk.enabled else 0,
                        int(chk.interval_seconds),
                        int(chk.timeout_ms),
                        _json_dumps(_check_meta(chk)),
                    ),
                )
    finally:
        conn.close()


def insert_check_run(db_path: str, check_id: str, result: CheckResult, *, ts: float | None = None) -> int:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            """
            INSERT INTO check_runs (check_id, ts, ok, status_code, duration_ms, error_text, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                check_id,
                float(ts if ts is not None else _utc_ts()),
                1 if result.ok else 0,
                result.status_code,
                int(result.duration_ms or 0),
                result.error_text,
                _json_dumps(result.details or {}),
            ),
        )
        return int(cur.lastrowid or 0)
    finally:
        conn.close()


def _run_row(r: sqlite3.Row) -> dict[str, Any]:
    return {
        "ok": bool(r["ok"]),
        "status_code": r["status_code"],
        "duration_ms": r["duration_ms"],
        "error_text": r["error_text"],
        "details": _json_loads(r["details_json"]) or {},
        "ts": float(r["ts"]),
    }


def latest_run(db_path: str, check_id: str) -> dict[str, Any] | None:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT * FROM check_runs WHERE check_id=? ORDER BY ts DESC, id DESC LIMIT 1",
            (check_id,),
        ).fetchone()
        return _run_row(row) if row else None
    finally:
        conn.close()


def count_runs(db_path: str, check_id: str) -> int:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT COUNT(*) AS n FROM check_runs WHERE check_id=?", (check_id,)).fetchone()
        return int(row["n"]) if row else 0
    finally:
        conn.close()


def list_instances(db_path: str) -> list[dict[str, Any]]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute("SELECT id, name, enabled, tags_json FROM instances ORDER BY id ASC").fetchall()
        return [
            {"id": r["id"], "name": r["name"], "enabled": bool(r["enabled"]), "tags": _json_loads(r["tags_json"]) or []}
            for r in rows
        ]
    finally:
        conn.close()


def list_checks(db_path: str, instance_id: str) -> list[dict[str, Any]]:
    conn = _connect(db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT id, name, type, severity, enabled FROM checks WHERE instance_id=? ORDER BY id ASC",
            (instance_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


class SqliteResultSink:
    """Append-only result writer; sqlite calls are moved off the event loop."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def write(self, check_key: str, result: CheckResult) -> None:
        await asyncio.to_thread(insert_check_run, self.db_path, check_key, result)
