from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Mapping, Optional

from adapter_gateway.contract import GatewayError, GatewayResponse
from contracts.errors import ErrorCode
from contracts.schemas import DraftStatus, EntityType

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS drafts (
      draft_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      status TEXT NOT NULL,
      version INTEGER NOT NULL,
      body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS records (
      tenant_id TEXT NOT NULL,
      display_id TEXT NOT NULL,
      draft_id TEXT NOT NULL UNIQUE,
      external_reference_id TEXT,
      body TEXT NOT NULL,
      PRIMARY KEY (tenant_id, display_id),
      UNIQUE (tenant_id, external_reference_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS display_sequences (
      tenant_id TEXT PRIMARY KEY,
      value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entities (
      entity_type TEXT NOT NULL,
      entity_id TEXT NOT NULL,
      body TEXT NOT NULL,
      PRIMARY KEY (entity_type, entity_id)
    )
    """,
)


def _dump(value: Mapping[str, Any]) -> str:
    return json.dumps(dict(value), sort_keys=True, ensure_ascii=False, separators=(",", ":"))


class _Rejected(Exception):
    def __init__(self, error: GatewayError) -> None:
        super().__init__(error.message)
        self.error = error


class SqliteEntityStore:
    def __init__(self, gateway: "SqliteAdapterGateway", entity_type: EntityType) -> None:
        self._gw = gateway
        self.entity_type = entity_type

    def create(self, stub: Mapping[str, Any], correlation_id: str) -> GatewayResponse:
        entity_id = f"{self.entity_type.value.lower()}_{uuid.uuid4().hex[:12]}"
        row = {**dict(stub), "id": entity_id, "entity_type": self.entity_type.value}
        with self._gw._lock, self._gw._conn:
            self._gw._conn.execute(
                "INSERT INTO entities(entity_type, entity_id, body) VALUES (?, ?, ?)",
                (self.entity_type.value, entity_id, _dump(row)),
            )
        return GatewayResponse(correlation_id=correlation_id, value=row)

    def read(self, entity_id: str, correlation_id: str) -> GatewayResponse:
        with self._gw._lock:
            row = self._gw._conn.execute(
                "SELECT body FROM entities WHERE entity_type = ? AND entity_id = ?",
                (self.entity_type.value, entity_id),
            ).fetchone()
        return GatewayResponse(correlation_id=correlation_id, value=json.loads(row[0]) if row else None)

    def search(self, query: str, correlation_id: str) -> GatewayResponse:
        needle = (query or "").strip().lower()
        with self._gw._lock:
            rows = self._gw._conn.execute(
                "SELECT body FROM entities WHERE entity_type = ? ORDER BY entity_id",
                (self.entity_type.value,),
            ).fetchall()
        found = []
        for (body,) in rows:
            item = json.loads(body)
            if not needle or any(isinstance(v, str) and needle in v.lower() for v in item.values()):
                found.append(item)
        return GatewayResponse(correlation_id=correlation_id, value=found)


class SqliteAdapterGateway:
    """
    Durable gateway on a single sqlite3 connection.

    The idempotency reservation is the UNIQUE(tenant_id, external_reference_id)
    constraint on records; the draft status update and the record insert run
    in one transaction, so a rejected insert leaves the draft VALIDATED.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        if db_path != ":memory:":
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        with self._lock, self._conn:
            for ddl in _SCHEMA:
                self._conn.execute(ddl)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_draft(self, payload: Mapping[str, Any], correlation_id: str) -> GatewayResponse:
        draft_id = f"dr_{uuid.uuid4().hex}"
        body = {**dict(payload), "draft_id": draft_id}
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO drafts(draft_id, tenant_id, status, version, body) VALUES (?, ?, ?, ?, ?)",
                (
                    draft_id,
                    str(body.get("tenant_id", "")),
                    str(body.get("status", DraftStatus.DRAFT_CREATED.value)),
                    int(body.get("version", 0)),
                    _dump(body),
                ),
            )
        return GatewayResponse(correlation_id=correlation_id, value=draft_id)

    def _write_draft(self, draft_id: str, body: Mapping[str, Any], expected_version: int, *, sealable: bool) -> None:
        sql = "UPDATE drafts SET status = ?, version = ?, body = ? WHERE draft_id = ? AND version = ?"
        params: list[Any] = [
            str(body.get("status")),
            int(body.get("version", 0)),
            _dump({**dict(body), "draft_id": draft_id}),
            draft_id,
            expected_version,
        ]
        if sealable:
            sql += " AND status = ?"
            params.append(DraftStatus.VALIDATED.value)
        cur = self._conn.execute(sql, params)
        if cur.rowcount == 1:
            return
        row = self._conn.execute("SELECT status, version FROM drafts WHERE draft_id = ?", (draft_id,)).fetchone()
        if row is None:
            raise _Rejected(GatewayError(ErrorCode.DRAFT_MISSING, f"draft {draft_id} not found"))
        raise _Rejected(
            GatewayError(
                ErrorCode.STATE_CONFLICT,
                f"draft {draft_id} changed concurrently or is not sealable (status {row[0]}, version {row[1]})",
            )
        )

    def update_draft(
        self,
        draft_id: str,
        payload: Mapping[str, Any],
        expected_version: int,
        correlation_id: str,
    ) -> GatewayResponse:
        try:
            with self._lock, self._conn:
                self._write_draft(draft_id, payload, expected_version, sealable=False)
        except _Rejected as rej:
            return GatewayResponse(correlation_id=correlation_id, error=rej.error)
        return GatewayResponse(correlation_id=correlation_id, value=payload.get("status"))

    def get_draft_snapshot(self, draft_id: str, correlation_id: str) -> GatewayResponse:
        with self._lock:
            row = self._conn.execute("SELECT body FROM drafts WHERE draft_id = ?", (draft_id,)).fetchone()
        return GatewayResponse(correlation_id=correlation_id, value=json.loads(row[0]) if row else None)

    def seal_draft(
        self,
        draft_id: str,
        idempotency_key: Optional[str],
        record: Mapping[str, Any],
        sealed_draft: Mapping[str, Any],
        expected_version: int,
        correlation_id: str,
    ) -> GatewayResponse:
        try:
            with self._lock, self._conn:
                self._write_draft(draft_id, sealed_draft, expected_version, sealable=True)
                self._conn.execute(
                    "INSERT INTO records(tenant_id, display_id, draft_id, external_reference_id, body) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        str(record.get("tenant_id", "")),
                        str(record.get("display_id", "")),
                        draft_id,
                        idempotency_key or None,
                        _dump(record),
                    ),
                )
        except _Rejected as rej:
            return GatewayResponse(correlation_id=correlation_id, error=rej.error)
        except sqlite3.IntegrityError as exc:
            return GatewayResponse.fail(
                correlation_id,
                ErrorCode.IDEMPOTENCY_CONFLICT,
                f"external reference {idempotency_key} already sealed ({exc})",
            )
        return GatewayResponse(correlation_id=correlation_id, value=dict(record))

    def next_display_sequence(self, tenant_id: str, correlation_id: str) -> GatewayResponse:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO display_sequences(tenant_id, value) VALUES (?, 1)
                ON CONFLICT(tenant_id) DO UPDATE SET value = value + 1
                """,
                (tenant_id,),
            )
            (value,) = self._conn.execute(
                "SELECT value FROM display_sequences WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()
        return GatewayResponse(correlation_id=correlation_id, value=int(value))

    def get_record(self, tenant_id: str, display_id: str, correlation_id: str) -> GatewayResponse:
        with self._lock:
            row = self._conn.execute(
                "SELECT body FROM records WHERE tenant_id = ? AND display_id = ?", (tenant_id, display_id)
            ).fetchone()
        return GatewayResponse(correlation_id=correlation_id, value=json.loads(row[0]) if row else None)

    def find_record_by_reference(
        self, tenant_id: str, external_reference_id: str, correlation_id: str
    ) -> GatewayResponse:
        with self._lock:
            row = self._conn.execute(
                "SELECT body FROM records WHERE tenant_id = ? AND external_reference_id = ?",
                (tenant_id, external_reference_id),
            ).fetchone()
        return GatewayResponse(correlation_id=correlation_id, value=json.loads(row[0]) if row else None)

    def entity_store(self, entity_type: EntityType) -> SqliteEntityStore:
        return SqliteEntityStore(self, entity_type)
