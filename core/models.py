from dataclasses import dataclass, field
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Hostname rule for new containers. A domain rule -- not an API contract.
# api/models.py and the orchestrator both validate against it.
HOSTNAME_PATTERN = r"^[a-zA-Z0-9-]+$"

STATUS_CREATING = "creating"
STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"

LIFECYCLE_STATUSES = (STATUS_CREATING, STATUS_RUNNING, STATUS_STOPPED, STATUS_ERROR)


@dataclass
class ProvisioningRequest:
    """Validated input to create_container(). Lives for one orchestration call.

    Sizing fields left as None fall back to the environment and then the
    hardcoded defaults (see core/container_spec.resolve_layers).
    """

    name: str
    hostname: str
    cores: Optional[int] = None
    memory: Optional[int] = None  # MB
    disk: Optional[int] = None  # GB
    ostemplate: Optional[str] = None
    jenkins_job_id: Optional[str] = None
    additional_config: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContainerSpec:
    """What the hypervisor client needs to create one container.

    password is always system-generated by the orchestrator. It is kept out
    of repr() so a logged spec never leaks it.
    """

    hostname: str
    password: str = field(repr=False)
    vmid: Optional[int] = None
    cores: Optional[int] = None
    memory: Optional[int] = None
    swap: Optional[int] = None
    disk: Optional[int] = None
    storage: Optional[str] = None
    network: Optional[str] = None
    ostemplate: Optional[str] = None
    unprivileged: Optional[bool] = None
    start: Optional[bool] = None
    additional_config: dict[str, Any] = field(default_factory=dict)


@dataclass
class CreatedResource:
    vmid: int
    hostname: str
    task_ref: str


@dataclass
class CreationResult:
    id: int
    ct_id: str
    name: str
    hostname: str
    username: str
    status: str = STATUS_CREATING


@dataclass
class AccessBundle:
    ct_id: str
    ip_address: Optional[str]
    username: str
    password: str = field(repr=False)
