"""
inventory/store.py -- SQLAlchemy-backed persistence for container records.

Uses SQLAlchemy Core (not ORM) so the dataclasses in inventory/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. ContainerStore is the repository; the
_row_to_* functions are the mappers. The orchestrator and routes never touch
SQL directly.

Encryption boundary: passwords are sealed with the CredentialVault on the
way in and opened on the way out. The containers.password column only ever
holds "ivHex:cipherHex" envelopes.

Concurrency: every mutation is a single UPDATE statement, so concurrent
writes to the same record are last-write-wins on the columns they touch and
updated_at always reflects the most recent write.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ContainerStore(vault=vault)                            # SQLite default
    store = ContainerStore("postgresql://user:pw@host/db", vault)  # PostgreSQL
    record = store.create(ContainerRecord(ct_id="105", name="ci", username="root", password=pw))
    store.update_status("105", "running", ip_address="10.0.0.5")
    store.close()
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.vault import CredentialVault
from core.errors import DecryptionError
from core.models import STATUS_CREATING
from inventory.models import BackupRecord, ContainerRecord

logger = logging.getLogger("cardinal.inventory")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'cardinal.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_containers = Table(
    "containers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ct_id", String(32), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("ip_address", String(45)),
    Column("username", String(255), nullable=False),
    Column("password", Text, nullable=False),  # "ivHex:cipherHex" envelope
    Column("status", String(20), nullable=False, server_default=STATUS_CREATING),
    Column("jenkins_job_id", String(255)),
    Column("resolve_attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_backups = Table(
    "backups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("container_id", Integer, nullable=False),
    Column("backup_id", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _migrate_containers_table(conn) -> None:
    """Add columns introduced after the first release to an existing table.

    Column names are hardcoded constants (not user input), so string
    interpolation in the ALTER TABLE statement is safe and unavoidable.
    """
    existing = {row[1] for row in conn.execute(text("PRAGMA table_info(containers)"))}
    additions = [
        ("resolve_attempts", "INTEGER NOT NULL DEFAULT 0"),
    ]
    for col, typ in additions:
        if col not in existing:
            conn.execute(text(f"ALTER TABLE containers ADD COLUMN {col} {typ}"))  # nosemgrep
    conn.commit()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on the reconciler's writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ContainerStore:
    def __init__(self, db_url: str = "", vault: Optional[CredentialVault] = None) -> None:
        if vault is None:
            raise ValueError("ContainerStore requires a CredentialVault.")
        self.vault = vault
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers and reconciler timers share the engine across threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        if db_url.startswith("sqlite"):
            with self.engine.connect() as conn:
                _migrate_containers_table(conn)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, record: ContainerRecord) -> ContainerRecord:
        """Insert a new record and return it with id and timestamps filled in.

        record.password is the plaintext; only its envelope is stored.
        Raises sqlalchemy.exc.IntegrityError if ct_id already exists.
        """
        now = _now_iso()
        envelope = self.vault.encrypt(record.password)
        if envelope is None:
            raise ValueError("A container record needs a non-empty password.")
        with self.engine.connect() as conn:
            result = conn.execute(
                _containers.insert().values(
                    ct_id=record.ct_id,
                    name=record.name,
                    ip_address=record.ip_address,
                    username=record.username,
                    password=envelope,
                    status=record.status,
                    jenkins_job_id=record.jenkins_job_id,
                    resolve_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return ContainerRecord(
            id=result.inserted_primary_key[0],
            ct_id=record.ct_id,
            name=record.name,
            username=record.username,
            password=record.password,
            status=record.status,
            ip_address=record.ip_address,
            jenkins_job_id=record.jenkins_job_id,
            created_at=now,
            updated_at=now,
        )

    def update_status(self, ct_id: str, status: str, ip_address: Optional[str] = None) -> bool:
        """Set status (and the address, when one is given) and refresh updated_at.

        A None ip_address leaves the stored address untouched. Returns True if
        a row was updated, False if ct_id was not found.
        """
        values: dict = {"status": status, "updated_at": _now_iso()}
        if ip_address:
            values["ip_address"] = ip_address
        with self.engine.connect() as conn:
            result = conn.execute(_containers.update().where(_containers.c.ct_id == ct_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def record_resolve_failure(self, ct_id: str) -> int:
        """Increment the failed address-resolution counter and return the new value.

        Returns 0 if ct_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _containers.update()
                .where(_containers.c.ct_id == ct_id)
                .values(resolve_attempts=_containers.c.resolve_attempts + 1, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                conn.commit()
                return 0
            attempts = conn.execute(
                select(_containers.c.resolve_attempts).where(_containers.c.ct_id == ct_id)
            ).scalar_one()
            conn.commit()
        return attempts

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> Optional[ContainerRecord]:
        """Fetch a record by internal id, password decrypted. None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_containers.select().where(_containers.c.id == record_id)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def get_by_ct_id(self, ct_id: str) -> Optional[ContainerRecord]:
        """Fetch a record by hypervisor id, password decrypted. None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_containers.select().where(_containers.c.ct_id == ct_id)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def list_all(self) -> list[ContainerRecord]:
        """Return every record, newest first, passwords decrypted.

        A row whose envelope no longer opens (key rotated, corrupted column)
        is still listed, with password None.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _containers.select().order_by(_containers.c.created_at.desc(), _containers.c.id.desc())
            ).fetchall()
        records = []
        for row in rows:
            try:
                records.append(self._row_to_record(row))
            except DecryptionError as e:
                logger.warning("Listing container %s without password: %s", row.ct_id, e)
                records.append(self._row_to_record(row, decrypt=False))
        return records

    def list_by_status(self, status: str) -> list[ContainerRecord]:
        """Return records in the given lifecycle status, oldest first.

        Passwords are not decrypted (left None); callers only need the
        lifecycle fields.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _containers.select().where(_containers.c.status == status).order_by(_containers.c.id)
            ).fetchall()
        return [self._row_to_record(r, decrypt=False) for r in rows]

    def list_backups(self, container_id: int) -> list[BackupRecord]:
        """Return backup ids recorded for a container, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _backups.select().where(_backups.c.container_id == container_id).order_by(_backups.c.id)
            ).fetchall()
        return [
            BackupRecord(id=r.id, container_id=r.container_id, backup_id=r.backup_id, created_at=r.created_at)
            for r in rows
        ]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query, False otherwise."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Row mapper (Data Mapper pattern -- DB row -> domain dataclass)
    # ------------------------------------------------------------------

    def _row_to_record(self, row, decrypt: bool = True) -> ContainerRecord:
        return ContainerRecord(
            id=row.id,
            ct_id=row.ct_id,
            name=row.name,
            ip_address=row.ip_address,
            username=row.username,
            password=self.vault.decrypt(row.password) if decrypt else None,
            status=row.status,
            jenkins_job_id=row.jenkins_job_id,
            resolve_attempts=row.resolve_attempts or 0,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
