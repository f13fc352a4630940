"""SQLite persistence for folios, invoices, master folios and guests."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from .errors import NotFoundError
from .folio import Folio
from .invoice import Invoice
from .master_folio import MasterFolio

SCHEMA_VERSION = 1


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return a SQLite connection that may be shared behind a lock."""

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS guests (
            id TEXT PRIMARY KEY,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            email TEXT,
            phone TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS master_folios (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            payload TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS folios (
            id TEXT PRIMARY KEY,
            guest_id TEXT,
            reservation_id TEXT,
            master_folio_id TEXT,
            balance TEXT NOT NULL,
            payload TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(guest_id) REFERENCES guests(id)
        );

        CREATE INDEX IF NOT EXISTS idx_folios_reservation ON folios(reservation_id);
        CREATE INDEX IF NOT EXISTS idx_folios_master ON folios(master_folio_id);

        CREATE TABLE IF NOT EXISTS invoices (
            id TEXT PRIMARY KEY,
            invoice_number TEXT UNIQUE,
            invoice_type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            guest_id TEXT,
            folio_id TEXT,
            original_invoice_id TEXT,
            invoice_date TEXT NOT NULL,
            grand_total TEXT NOT NULL,
            payload TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(original_invoice_id) REFERENCES invoices(id)
        );

        CREATE INDEX IF NOT EXISTS idx_invoices_folio ON invoices(folio_id);
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )
    conn.commit()


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def next_sequence(conn: sqlite3.Connection, name: str) -> int:
    current = int(get_metadata(conn, f"seq_{name}", "0"))
    set_metadata(conn, f"seq_{name}", current + 1)
    return current + 1


class GuestDirectory:
    """Read access to guest records, keyed by id."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def add_guest(
        self,
        *,
        guest_id: str,
        first_name: str,
        last_name: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> dict:
        self.conn.execute(
            "INSERT INTO guests(id, first_name, last_name, email, phone) VALUES (?, ?, ?, ?, ?)",
            (guest_id, first_name, last_name, email, phone),
        )
        self.conn.commit()
        return self.get_guest(guest_id)

    def get_guest(self, guest_id: str) -> dict:
        row = self.conn.execute("SELECT * FROM guests WHERE id = ?", (guest_id,)).fetchone()
        if not row:
            raise NotFoundError("Guest not found")
        row["name"] = f"{row['first_name']} {row['last_name']}"
        return row


class FolioRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get_folio(self, folio_id: str, *, actor: str = "system") -> Folio:
        """Load a folio, repairing and re-saving it if its balance has drifted."""

        row = self.conn.execute("SELECT payload FROM folios WHERE id = ?", (folio_id,)).fetchone()
        if not row:
            raise NotFoundError("Folio not found")
        folio = Folio.from_dict(json.loads(row["payload"]))
        if folio.reconcile(actor=actor) is not None:
            self.put_folio(folio)
        return folio

    def put_folio(self, folio: Folio) -> None:
        self.conn.execute(
            """
            INSERT INTO folios(id, guest_id, reservation_id, master_folio_id, balance, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                guest_id = excluded.guest_id,
                reservation_id = excluded.reservation_id,
                master_folio_id = excluded.master_folio_id,
                balance = excluded.balance,
                payload = excluded.payload,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                folio.id,
                folio.guest_id,
                folio.reservation_id,
                folio.master_folio_id,
                str(folio.balance),
                json.dumps(folio.to_dict()),
            ),
        )
        self.conn.commit()

    def list_folios_by_reservation(self, reservation_id: str) -> list[Folio]:
        rows = self.conn.execute(
            "SELECT id FROM folios WHERE reservation_id = ? ORDER BY rowid", (reservation_id,)
        ).fetchall()
        return [self.get_folio(row["id"]) for row in rows]


class InvoiceRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get_invoice(self, invoice_id: str) -> Invoice:
        row = self.conn.execute("SELECT payload FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        if not row:
            raise NotFoundError("Invoice not found")
        return Invoice.from_dict(json.loads(row["payload"]))

    def put_invoice(self, invoice: Invoice) -> None:
        self.conn.execute(
            """
            INSERT INTO invoices(
                id, invoice_number, invoice_type, status, guest_id, folio_id,
                original_invoice_id, invoice_date, grand_total, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                grand_total = excluded.grand_total,
                payload = excluded.payload,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                invoice.id,
                invoice.invoice_number,
                invoice.invoice_type,
                invoice.status,
                invoice.guest_id,
                invoice.folio_id,
                invoice.original_invoice_id,
                invoice.invoice_date.isoformat(),
                str(invoice.grand_total),
                json.dumps(invoice.to_dict()),
            ),
        )
        self.conn.commit()

    def list_invoices(
        self,
        *,
        status: str | None = None,
        invoice_type: str | None = None,
        folio_id: str | None = None,
        guest_id: str | None = None,
    ) -> list[Invoice]:
        query = "SELECT payload FROM invoices"
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("status", status),
            ("invoice_type", invoice_type),
            ("folio_id", folio_id),
            ("guest_id", guest_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY invoice_date, invoice_number"
        rows = self.conn.execute(query, params).fetchall()
        return [Invoice.from_dict(json.loads(row["payload"])) for row in rows]


class MasterFolioRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def get_master_folio(self, master_folio_id: str) -> MasterFolio:
        row = self.conn.execute(
            "SELECT payload FROM master_folios WHERE id = ?", (master_folio_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Master folio not found")
        return MasterFolio.from_dict(json.loads(row["payload"]))

    def put_master_folio(self, master: MasterFolio) -> None:
        self.conn.execute(
            """
            INSERT INTO master_folios(id, name, status, payload) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                status = excluded.status,
                payload = excluded.payload,
                updated_at = CURRENT_TIMESTAMP
            """,
            (master.id, master.name, master.status, json.dumps(master.to_dict())),
        )
        self.conn.commit()

    def delete_master_folio(self, master_folio_id: str) -> None:
        self.conn.execute("DELETE FROM master_folios WHERE id = ?", (master_folio_id,))
        self.conn.commit()

    def list_master_folios(self, *, status: str | None = None) -> list[MasterFolio]:
        if status is None:
            rows = self.conn.execute("SELECT payload FROM master_folios ORDER BY rowid").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT payload FROM master_folios WHERE status = ? ORDER BY rowid", (status,)
            ).fetchall()
        return [MasterFolio.from_dict(json.loads(row["payload"])) for row in rows]
