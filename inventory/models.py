"""
inventory/models.py -- Domain dataclasses for provisioned container records.

These are pure data containers with zero logic. Encryption, timestamps and
status transitions live in inventory/store.py and provisioning/.
"""

from dataclasses import dataclass, field
from typing import Optional

from core.models import STATUS_CREATING


@dataclass
class ContainerRecord:
    """A container this service provisioned, as persisted locally.

    ct_id is the hypervisor-assigned VMID (as a string) and is unique.
    password is plaintext in memory only -- the store encrypts it on write and
    decrypts it on read. It is excluded from repr() so the record can be
    logged safely.

    ip_address is None until address resolution succeeds and is only
    meaningful once status is "running".

    id is None before the record is written to the database.
    """

    ct_id: str
    name: str
    username: str
    password: Optional[str] = field(default=None, repr=False)
    status: str = STATUS_CREATING  # "creating" | "running" | "stopped" | "error"
    ip_address: Optional[str] = None
    jenkins_job_id: Optional[str] = None
    resolve_attempts: int = 0
    id: Optional[int] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""  # ISO 8601, refreshed on every status/address write


@dataclass
class BackupRecord:
    """Correlates a container record to a hypervisor backup id.

    The table exists so the schema matches deployed databases; nothing in
    this service creates backups yet.
    """

    container_id: int
    backup_id: str
    id: Optional[int] = None
    created_at: str = ""
