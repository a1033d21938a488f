"""
CAF Copilot Service - Case Persistence Backends

Provides repository implementations for case storage:
- SqliteCaseRepository (local/runtime default)
- SupabaseCaseRepository (hosted Postgres via the Supabase REST API)
- InMemoryCaseRepository (test fallback)

Updates are version-checked: `update_case` only succeeds when the stored
version still equals the version the caller read, and bumps it by one.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import httpx

from models import CaseRecord


class CaseVersionConflictError(RuntimeError):
    def __init__(self, case_id: str, expected_version: int, actual_version: Optional[int]) -> None:
        super().__init__(
            f"Case {case_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})."
        )
        self.case_id = case_id
        self.expected_version = expected_version
        self.actual_version = actual_version


def _not_found(case_id: str) -> KeyError:
    return KeyError(f"Case not found: {case_id}. Create the case first via POST /cases.")


class CaseRepository:
    backend_name = "abstract"

    def insert_case(self, record: CaseRecord) -> CaseRecord:
        raise NotImplementedError

    def get_case(self, case_id: str) -> CaseRecord:
        raise NotImplementedError

    def update_case(self, record: CaseRecord, expected_version: int) -> CaseRecord:
        raise NotImplementedError

    def list_cases(self, limit: int = 100) -> List[CaseRecord]:
        raise NotImplementedError


class InMemoryCaseRepository(CaseRepository):
    backend_name = "memory"

    def __init__(self) -> None:
        self._store: Dict[str, CaseRecord] = {}
        self._lock = Lock()

    def insert_case(self, record: CaseRecord) -> CaseRecord:
        with self._lock:
            if record.case_id in self._store:
                raise ValueError(f"Case already exists: {record.case_id}")
            self._store[record.case_id] = record.model_copy(deep=True)
        return record

    def get_case(self, case_id: str) -> CaseRecord:
        record = self._store.get(case_id)
        if not record:
            raise _not_found(case_id)
        return record.model_copy(deep=True)

    def update_case(self, record: CaseRecord, expected_version: int) -> CaseRecord:
        with self._lock:
            current = self._store.get(record.case_id)
            if current is None:
                raise _not_found(record.case_id)
            if current.version != expected_version:
                raise CaseVersionConflictError(record.case_id, expected_version, current.version)
            saved = record.model_copy(update={"version": expected_version + 1}, deep=True)
            self._store[record.case_id] = saved
        return saved.model_copy(deep=True)

    def list_cases(self, limit: int = 100) -> List[CaseRecord]:
        rows = sorted(self._store.values(), key=lambda x: x.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in rows[: max(1, limit)]]


class SqliteCaseRepository(CaseRepository):
    backend_name = "sqlite"

    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite repository requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS caf_cases (
                    case_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_caf_cases_created
                ON caf_cases(created_at DESC)
                """
            )
            conn.commit()

    def insert_case(self, record: CaseRecord) -> CaseRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO caf_cases(case_id, created_at, version, payload_json)
                VALUES (?, ?, ?, ?)
                """,
                (
                    record.case_id,
                    record.created_at.isoformat(),
                    record.version,
                    record.model_dump_json(),
                ),
            )
            conn.commit()
        return record

    def get_case(self, case_id: str) -> CaseRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM caf_cases WHERE case_id = ?",
                (case_id,),
            ).fetchone()
        if row is None:
            raise _not_found(case_id)
        return CaseRecord.model_validate_json(row["payload_json"])

    def update_case(self, record: CaseRecord, expected_version: int) -> CaseRecord:
        saved = record.model_copy(update={"version": expected_version + 1})
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE caf_cases
                SET version = ?, payload_json = ?
                WHERE case_id = ? AND version = ?
                """,
                (saved.version, saved.model_dump_json(), record.case_id, expected_version),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT version FROM caf_cases WHERE case_id = ?",
                    (record.case_id,),
                ).fetchone()
                if row is None:
                    raise _not_found(record.case_id)
                raise CaseVersionConflictError(record.case_id, expected_version, int(row["version"]))
            conn.commit()
        return saved

    def list_cases(self, limit: int = 100) -> List[CaseRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM caf_cases ORDER BY created_at DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        return [CaseRecord.model_validate_json(row["payload_json"]) for row in rows]


class SupabaseCaseRepository(CaseRepository):
    """
    Talks to the `cases` table through Supabase's PostgREST endpoint.
    `external_job_id` is stored in the `eaco_id` column used by the dispatch UI.
    """

    backend_name = "supabase"

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str = "cases",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not url:
            raise RuntimeError("Supabase repository requires SUPABASE_URL.")
        if not api_key:
            raise RuntimeError("Supabase repository requires SUPABASE_SERVICE_ROLE_KEY.")
        self.rest_url = f"{url.rstrip('/')}/rest/v1/{table}"
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout_seconds,
            headers=self._headers,
            transport=self._transport,
        )

    @staticmethod
    def _to_row(record: CaseRecord) -> Dict[str, Any]:
        row = record.model_dump(mode="json", by_alias=True)
        row["id"] = row.pop("case_id")
        row["eaco_id"] = row.pop("external_job_id")
        return row

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> CaseRecord:
        payload = dict(row)
        payload["case_id"] = str(payload.pop("id"))
        payload["external_job_id"] = payload.pop("eaco_id", None)
        payload["media"] = payload.get("media") or []
        payload["traces"] = payload.get("traces") or []
        payload["title"] = payload.get("title") or "Untitled Case"
        payload["description"] = payload.get("description") or ""
        return CaseRecord.model_validate(payload)

    def insert_case(self, record: CaseRecord) -> CaseRecord:
        with self._client() as client:
            resp = client.post(self.rest_url, json=self._to_row(record))
            resp.raise_for_status()
            rows = resp.json()
        if not isinstance(rows, list) or not rows:
            raise RuntimeError("Supabase insert returned no row.")
        return self._from_row(rows[0])

    def get_case(self, case_id: str) -> CaseRecord:
        with self._client() as client:
            resp = client.get(self.rest_url, params={"id": f"eq.{case_id}", "select": "*"})
            resp.raise_for_status()
            rows = resp.json()
        if not rows:
            raise _not_found(case_id)
        return self._from_row(rows[0])

    def update_case(self, record: CaseRecord, expected_version: int) -> CaseRecord:
        saved = record.model_copy(update={"version": expected_version + 1})
        with self._client() as client:
            resp = client.patch(
                self.rest_url,
                params={"id": f"eq.{record.case_id}", "version": f"eq.{expected_version}"},
                json=self._to_row(saved),
            )
            resp.raise_for_status()
            rows = resp.json()
        if rows:
            return self._from_row(rows[0])
        current = self.get_case(record.case_id)
        raise CaseVersionConflictError(record.case_id, expected_version, current.version)

    def list_cases(self, limit: int = 100) -> List[CaseRecord]:
        with self._client() as client:
            resp = client.get(
                self.rest_url,
                params={"select": "*", "order": "created_at.desc", "limit": str(max(1, int(limit)))},
            )
            resp.raise_for_status()
            rows = resp.json()
        return [self._from_row(row) for row in rows]
