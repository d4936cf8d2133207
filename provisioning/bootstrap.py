"""
provisioning/bootstrap.py -- Builds the service object graph from Settings.

Shared by the API lifespan (api/main.py) and the CLI (main.py) so both wire
the vault, store, hypervisor client, reconciler and orchestrator the same
way. Nothing here reads the environment; Settings is passed in.
"""

from dataclasses import dataclass

from auth.vault import CredentialVault
from core.config import Settings
from core.hypervisor import HypervisorClient
from inventory.store import ContainerStore
from provisioning.orchestrator import ProvisioningOrchestrator
from provisioning.reconciler import AddressReconciler


@dataclass
class Services:
    vault: CredentialVault
    store: ContainerStore
    hypervisor: HypervisorClient
    reconciler: AddressReconciler
    orchestrator: ProvisioningOrchestrator

    def close(self) -> None:
        """Cancel pending follow-ups, then release the database."""
        self.reconciler.shutdown()
        self.store.close()


def build_services(settings: Settings) -> Services:
    vault = CredentialVault(settings.encryption_key)
    store = ContainerStore(settings.database_url, vault)
    hypervisor = HypervisorClient(settings.hypervisor_config(), env_defaults=settings.container_defaults())
    reconciler = AddressReconciler(
        hypervisor,
        store,
        delay=settings.resolve_delay_seconds,
        max_attempts=settings.reconcile_max_attempts,
    )
    orchestrator = ProvisioningOrchestrator(
        hypervisor,
        store,
        vault,
        reconciler,
        default_username=settings.ct_default_username,
    )
    return Services(
        vault=vault,
        store=store,
        hypervisor=hypervisor,
        reconciler=reconciler,
        orchestrator=orchestrator,
    )
