"""SQLite implementation of the MarketStore protocol."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from storage_coordinator.models.records import (
    ActivityRecord,
    AgreementRecord,
    FragmentTransfer,
    OfferingRecord,
    PaymentRecord,
    StoreCounts,
    TransferStatus,
)

SCHEMA = """
-- Event cursor for resumption
CREATE TABLE IF NOT EXISTS cursor (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    cursor TEXT,
    last_ledger INTEGER,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Projected offerings (never hard-deleted)
CREATE TABLE IF NOT EXISTS offerings (
    offering_id INTEGER PRIMARY KEY,
    provider TEXT,
    capacity INTEGER,
    price_per_gb_per_day INTEGER,
    is_available INTEGER NOT NULL DEFAULT 1,
    ledger_sequence INTEGER NOT NULL DEFAULT 0,
    event_index INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_offerings_provider ON offerings(provider);

-- Projected agreements
CREATE TABLE IF NOT EXISTS agreements (
    agreement_id INTEGER PRIMARY KEY,
    consumer TEXT,
    provider TEXT,
    capacity INTEGER,
    total_price INTEGER,
    price_per_gb_per_day REAL,
    start_time INTEGER,
    end_time INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    ledger_sequence INTEGER NOT NULL DEFAULT 0,
    event_index INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_agreements_consumer ON agreements(consumer);
CREATE INDEX IF NOT EXISTS idx_agreements_provider ON agreements(provider);

-- Payments recorded against agreements
CREATE TABLE IF NOT EXISTS payments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agreement_id INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    ledger_sequence INTEGER NOT NULL,
    event_index INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (agreement_id, ledger_sequence, event_index)
);

-- Fragment transfers keyed by file id
CREATE TABLE IF NOT EXISTS transfers (
    file_id TEXT PRIMARY KEY,
    agreement_id INTEGER,
    provider_address TEXT NOT NULL,
    connection_id TEXT NOT NULL,
    original_file_name TEXT NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'dispatched',
    error TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status);

-- Activity log
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    subject_id TEXT,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_log(created_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteMarketStore:
    """SQLite-backed implementation of the MarketStore protocol."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not initialized. Call initialize() first."
        return self._db

    # ── Cursor ─────────────────────────────────────────────

    async def get_cursor(self) -> tuple[str | None, int | None]:
        async with self.db.execute(
            "SELECT cursor, last_ledger FROM cursor WHERE id=1"
        ) as cur:
            row = await cur.fetchone()
            return (row["cursor"], row["last_ledger"]) if row else (None, None)

    async def set_cursor(self, cursor: str | None, last_ledger: int | None) -> None:
        await self.db.execute(
            "INSERT INTO cursor (id, cursor, last_ledger, updated_at) VALUES (1, ?, ?, ?)"
            " ON CONFLICT(id) DO UPDATE SET cursor=excluded.cursor,"
            " last_ledger=excluded.last_ledger, updated_at=excluded.updated_at",
            (cursor, last_ledger, _now()),
        )
        await self.db.commit()

    # ── Offerings ──────────────────────────────────────────

    async def get_offering(self, offering_id: int) -> OfferingRecord | None:
        async with self.db.execute(
            "SELECT * FROM offerings WHERE offering_id=?", (offering_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_offering(row) if row else None

    async def save_offering(self, offering: OfferingRecord) -> None:
        now = _now()
        await self.db.execute(
            "INSERT INTO offerings"
            " (offering_id, provider, capacity, price_per_gb_per_day, is_available,"
            "  ledger_sequence, event_index, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(offering_id) DO UPDATE SET"
            " provider=excluded.provider, capacity=excluded.capacity,"
            " price_per_gb_per_day=excluded.price_per_gb_per_day,"
            " is_available=excluded.is_available,"
            " ledger_sequence=excluded.ledger_sequence, event_index=excluded.event_index,"
            " updated_at=excluded.updated_at",
            (
                offering.offering_id, offering.provider, offering.capacity,
                offering.price_per_gb_per_day, int(offering.is_available),
                offering.ledger_sequence, offering.event_index,
                offering.created_at or now, now,
            ),
        )
        await self.db.commit()

    async def list_offerings(
        self, available: bool | None = None, provider: str | None = None
    ) -> list[OfferingRecord]:
        clauses: list[str] = []
        params: list[object] = []
        if available is not None:
            clauses.append("is_available=?")
            params.append(int(available))
        if provider is not None:
            clauses.append("provider=?")
            params.append(provider)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.db.execute(
            f"SELECT * FROM offerings{where} ORDER BY offering_id", params
        ) as cur:
            return [_row_to_offering(row) async for row in cur]

    # ── Agreements ─────────────────────────────────────────

    async def get_agreement(self, agreement_id: int) -> AgreementRecord | None:
        async with self.db.execute(
            "SELECT * FROM agreements WHERE agreement_id=?", (agreement_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_agreement(row) if row else None

    async def save_agreement(self, agreement: AgreementRecord) -> None:
        now = _now()
        await self.db.execute(
            "INSERT INTO agreements"
            " (agreement_id, consumer, provider, capacity, total_price,"
            "  price_per_gb_per_day, start_time, end_time, is_active,"
            "  ledger_sequence, event_index, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(agreement_id) DO UPDATE SET"
            " consumer=excluded.consumer, provider=excluded.provider,"
            " capacity=excluded.capacity, total_price=excluded.total_price,"
            " price_per_gb_per_day=excluded.price_per_gb_per_day,"
            " start_time=excluded.start_time, end_time=excluded.end_time,"
            " is_active=excluded.is_active,"
            " ledger_sequence=excluded.ledger_sequence, event_index=excluded.event_index,"
            " updated_at=excluded.updated_at",
            (
                agreement.agreement_id, agreement.consumer, agreement.provider,
                agreement.capacity, agreement.total_price,
                agreement.price_per_gb_per_day, agreement.start_time,
                agreement.end_time, int(agreement.is_active),
                agreement.ledger_sequence, agreement.event_index,
                agreement.created_at or now, now,
            ),
        )
        await self.db.commit()

    async def list_agreements(
        self,
        consumer: str | None = None,
        provider: str | None = None,
        active: bool | None = None,
    ) -> list[AgreementRecord]:
        clauses: list[str] = []
        params: list[object] = []
        if consumer is not None:
            clauses.append("consumer=?")
            params.append(consumer)
        if provider is not None:
            clauses.append("provider=?")
            params.append(provider)
        if active is not None:
            clauses.append("is_active=?")
            params.append(int(active))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.db.execute(
            f"SELECT * FROM agreements{where} ORDER BY agreement_id", params
        ) as cur:
            return [_row_to_agreement(row) async for row in cur]

    async def latest_active_agreement_for_consumer(
        self, consumer: str
    ) -> AgreementRecord | None:
        async with self.db.execute(
            "SELECT * FROM agreements WHERE consumer=? AND is_active=1"
            " ORDER BY ledger_sequence DESC, agreement_id DESC LIMIT 1",
            (consumer,),
        ) as cur:
            row = await cur.fetchone()
            return _row_to_agreement(row) if row else None

    # ── Payments ───────────────────────────────────────────

    async def save_payment(self, payment: PaymentRecord) -> bool:
        """Insert a payment. Returns False when the same event was already recorded."""
        cur = await self.db.execute(
            "INSERT OR IGNORE INTO payments"
            " (agreement_id, amount, ledger_sequence, event_index, created_at)"
            " VALUES (?, ?, ?, ?, ?)",
            (
                payment.agreement_id, payment.amount,
                payment.ledger_sequence, payment.event_index, _now(),
            ),
        )
        inserted = cur.rowcount > 0
        await cur.close()
        await self.db.commit()
        return inserted

    async def list_payments(self, agreement_id: int) -> list[PaymentRecord]:
        async with self.db.execute(
            "SELECT * FROM payments WHERE agreement_id=?"
            " ORDER BY ledger_sequence, event_index",
            (agreement_id,),
        ) as cur:
            return [
                PaymentRecord(
                    agreement_id=row["agreement_id"],
                    amount=row["amount"],
                    ledger_sequence=row["ledger_sequence"],
                    event_index=row["event_index"],
                    created_at=row["created_at"],
                )
                async for row in cur
            ]

    # ── Transfers ──────────────────────────────────────────

    async def save_transfer(self, transfer: FragmentTransfer) -> None:
        now = _now()
        await self.db.execute(
            "INSERT OR REPLACE INTO transfers"
            " (file_id, agreement_id, provider_address, connection_id,"
            "  original_file_name, size_bytes, status, error, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                transfer.file_id, transfer.agreement_id, transfer.provider_address,
                transfer.connection_id, transfer.original_file_name,
                transfer.size_bytes, transfer.status.value, transfer.error,
                transfer.created_at or now, now,
            ),
        )
        await self.db.commit()

    async def get_transfer(self, file_id: str) -> FragmentTransfer | None:
        async with self.db.execute(
            "SELECT * FROM transfers WHERE file_id=?", (file_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_transfer(row) if row else None

    async def update_transfer_status(
        self, file_id: str, status: TransferStatus, error: str | None = None
    ) -> None:
        await self.db.execute(
            "UPDATE transfers SET status=?, error=?, updated_at=? WHERE file_id=?",
            (status.value, error, _now(), file_id),
        )
        await self.db.commit()

    async def list_transfers(self, status: str | None = None) -> list[FragmentTransfer]:
        if status:
            sql, params = "SELECT * FROM transfers WHERE status=? ORDER BY created_at", (status,)
        else:
            sql, params = "SELECT * FROM transfers ORDER BY created_at", ()
        async with self.db.execute(sql, params) as cur:
            return [_row_to_transfer(row) async for row in cur]

    # ── Activity log ───────────────────────────────────────

    async def log_activity(
        self, event_type: str, message: str, subject_id: str | int | None = None
    ) -> None:
        await self.db.execute(
            "INSERT INTO activity_log (event_type, subject_id, message, created_at)"
            " VALUES (?, ?, ?, ?)",
            (event_type, None if subject_id is None else str(subject_id), message, _now()),
        )
        await self.db.commit()

    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        async with self.db.execute(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?", (limit,)
        ) as cur:
            return [
                ActivityRecord(
                    id=row["id"],
                    event_type=row["event_type"],
                    subject_id=row["subject_id"],
                    message=row["message"],
                    created_at=row["created_at"],
                )
                async for row in cur
            ]

    # ── Stats ──────────────────────────────────────────────

    async def counts(self) -> StoreCounts:
        counts = StoreCounts()
        for table in ("offerings", "agreements", "payments", "transfers"):
            async with self.db.execute(f"SELECT COUNT(*) AS c FROM {table}") as cur:
                row = await cur.fetchone()
                setattr(counts, table, row["c"] if row else 0)
        async with self.db.execute("SELECT COUNT(*) AS c FROM activity_log") as cur:
            row = await cur.fetchone()
            counts.activity = row["c"] if row else 0
        async with self.db.execute(
            "SELECT status, COUNT(*) AS c FROM transfers GROUP BY status"
        ) as cur:
            counts.by_status = {row["status"]: row["c"] async for row in cur}
        return counts


# ── Row converters ─────────────────────────────────────────


def _row_to_offering(row: aiosqlite.Row) -> OfferingRecord:
    return OfferingRecord(
        offering_id=row["offering_id"],
        provider=row["provider"],
        capacity=row["capacity"],
        price_per_gb_per_day=row["price_per_gb_per_day"],
        is_available=bool(row["is_available"]),
        ledger_sequence=row["ledger_sequence"],
        event_index=row["event_index"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_agreement(row: aiosqlite.Row) -> AgreementRecord:
    return AgreementRecord(
        agreement_id=row["agreement_id"],
        consumer=row["consumer"],
        provider=row["provider"],
        capacity=row["capacity"],
        total_price=row["total_price"],
        price_per_gb_per_day=row["price_per_gb_per_day"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        is_active=bool(row["is_active"]),
        ledger_sequence=row["ledger_sequence"],
        event_index=row["event_index"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_transfer(row: aiosqlite.Row) -> FragmentTransfer:
    return FragmentTransfer(
        file_id=row["file_id"],
        agreement_id=row["agreement_id"],
        provider_address=row["provider_address"],
        connection_id=row["connection_id"],
        original_file_name=row["original_file_name"],
        size_bytes=row["size_bytes"],
        status=TransferStatus(row["status"]),
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
