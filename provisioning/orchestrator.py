"""
provisioning/orchestrator.py -- The container provisioning workflow.

ProvisioningOrchestrator is the only place that touches the vault, the
hypervisor client, the record store and the reconciler together. Routes and
the CLI call it; it never imports from api/.

create_container() runs strictly in this order:

  1. generate a password (never caller supplied)
  2. create the container on the hypervisor (blocks through task + start polls)
  3. persist a "creating" record with the encrypted password
  4. schedule deferred address resolution (fire-and-forget)
  5. return -- the caller does not wait for an address

A failure in step 2 persists nothing, so there are no orphan "creating"
rows for hypervisor failures. There is no rollback either: if step 2 fails
after submission, or step 3 fails, the container may keep existing on the
hypervisor. That is a known limitation, not something this class hides.

get_access() hands out credentials only for "running" records.
"""

import logging
import re
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.vault import CredentialVault
from core.errors import CreationError, NotFoundError, NotReadyError, ProvisioningError, ValidationError
from core.hypervisor import HypervisorClient
from core.models import (
    HOSTNAME_PATTERN,
    STATUS_CREATING,
    STATUS_RUNNING,
    AccessBundle,
    ContainerSpec,
    CreationResult,
    ProvisioningRequest,
)
from inventory.models import ContainerRecord
from inventory.store import ContainerStore
from provisioning.reconciler import AddressReconciler

logger = logging.getLogger("cardinal.orchestrator")

# Keys a caller may not smuggle in through additional_config. vmid is
# lifted out into ContainerSpec.vmid instead of being dropped.
_RESERVED_PASSTHROUGH_KEYS = ("password", "hostname")

_HOSTNAME_RE = re.compile(HOSTNAME_PATTERN)


def _validate(request: ProvisioningRequest) -> None:
    """Reject requests the hypervisor would refuse anyway.

    The HTTP layer validates the same rules with pydantic; this covers the CLI
    and any other in-process caller.
    """
    if not request.name or not request.name.strip():
        raise ValidationError("name is required")
    if not request.hostname or not _HOSTNAME_RE.match(request.hostname):
        raise ValidationError("hostname may only contain letters, digits and hyphens")
    for field_name in ("cores", "memory", "disk"):
        value = getattr(request, field_name)
        if value is not None and value < 1:
            raise ValidationError(f"{field_name} must be a positive integer")


class ProvisioningOrchestrator:
    def __init__(
        self,
        hypervisor: HypervisorClient,
        store: ContainerStore,
        vault: CredentialVault,
        reconciler: AddressReconciler,
        default_username: str = "root",
    ) -> None:
        self.hypervisor = hypervisor
        self.store = store
        self.vault = vault
        self.reconciler = reconciler
        self.default_username = default_username

    # ------------------------------------------------------------------
    # CreateContainer
    # ------------------------------------------------------------------

    def create_container(self, request: ProvisioningRequest) -> CreationResult:
        """Provision a container and record it as "creating".

        Raises ProvisioningError (cause chained) if the hypervisor or the
        store fails.
        """
        _validate(request)
        logger.info("Creating container: %s (%s)", request.name, request.hostname)
        password = self.vault.generate_password()
        extra, vmid = self._passthrough(request)
        spec = ContainerSpec(
            hostname=request.hostname,
            password=password,
            vmid=vmid,
            cores=request.cores,
            memory=request.memory,
            disk=request.disk,
            ostemplate=request.ostemplate,
            additional_config=extra,
        )

        try:
            created = self.hypervisor.create_resource(spec)
        except CreationError as e:
            logger.error("Failed to create container %s: %s", request.name, e)
            raise ProvisioningError(f"Failed to create container: {e}") from e

        ct_id = str(created.vmid)
        try:
            record = self.store.create(
                ContainerRecord(
                    ct_id=ct_id,
                    name=request.name,
                    username=self.default_username,
                    password=password,
                    status=STATUS_CREATING,
                    jenkins_job_id=request.jenkins_job_id,
                )
            )
        except SQLAlchemyError as e:
            # The container exists on the hypervisor but we have no record of it.
            logger.error("Container %s created but could not be recorded: %s", ct_id, e)
            raise ProvisioningError(f"Container {ct_id} was created but could not be recorded") from e

        logger.info("Container %s created successfully with VMID: %s", request.name, ct_id)
        self.reconciler.schedule(ct_id)

        return CreationResult(
            id=record.id,
            ct_id=ct_id,
            name=request.name,
            hostname=created.hostname,
            username=record.username,
            status=STATUS_CREATING,
        )

    @staticmethod
    def _passthrough(request: ProvisioningRequest) -> tuple[dict, Optional[int]]:
        extra = dict(request.additional_config or {})
        vmid = extra.pop("vmid", None)
        if vmid is not None:
            try:
                vmid = int(vmid)
            except (TypeError, ValueError) as e:
                raise ValidationError("additional config vmid must be an integer") from e
        for key in _RESERVED_PASSTHROUGH_KEYS:
            if key in extra:
                logger.warning("Ignoring caller-supplied %r in additional config", key)
                del extra[key]
        return extra, vmid

    # ------------------------------------------------------------------
    # GetAccess / ListContainers
    # ------------------------------------------------------------------

    def get_access(self, ct_id: str) -> AccessBundle:
        """Return decrypted credentials for a running container."""
        record: Optional[ContainerRecord] = self.store.get_by_ct_id(ct_id)
        if record is None:
            raise NotFoundError(f"Container {ct_id} not found")
        if record.status != STATUS_RUNNING:
            raise NotReadyError(f"Container {ct_id} is not running (status: {record.status})")
        logger.info("Access granted to container %s", ct_id)
        return AccessBundle(
            ct_id=record.ct_id,
            ip_address=record.ip_address,
            username=record.username,
            password=record.password or "",
        )

    def list_containers(self) -> list[ContainerRecord]:
        """Return every record, newest first, with passwords decrypted."""
        return self.store.list_all()
