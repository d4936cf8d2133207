"""
core/hypervisor.py -- Protocol adapter for the hypervisor (Proxmox VE) HTTP API.

HypervisorClient is stateless apart from its HypervisorConfig and a pooled
requests.Session. It never touches the record store; the orchestrator does
the bookkeeping.

Creating a container is a multi-step protocol, not a single call:

    POST /nodes/{node}/lxc                      -> task ref (UPID), not readiness
    GET  /nodes/{node}/tasks/{upid}/status      every 2s until stopped (<= 300s)
    GET  /nodes/{node}/lxc/{vmid}/status/current every 3s until running (<= 120s)

Address discovery is separate and best-effort (resolve_network_address):

    GET  /nodes/{node}/lxc/{vmid}/config                     static ip=... in net0
    GET  /nodes/{node}/lxc/{vmid}/agent/network-get-interfaces  live DHCP lease

Error policy:
  - A single failed API call raises HypervisorRequestError. Polling loops
    treat it as transient and retry after 5s until their deadline.
  - A task that stops with a bad exit status raises TaskFailedError at once.
  - get_status() propagates lookup errors; resolve_network_address() never
    raises and returns None instead, because an unknown address is an
    expected transient state.

All responses are JSON envelopes of the form {"data": ...}. POST bodies are
form-encoded, which is what the API expects.
"""

import ipaddress
import logging
import random
import re
import time
import urllib.parse
from typing import Any, Callable, Optional

import requests

from core.config import HypervisorConfig
from core.container_spec import build_creation_payload
from core.errors import (
    CreationError,
    HypervisorError,
    HypervisorRequestError,
    StartTimeoutError,
    TaskFailedError,
    TaskTimeoutError,
)
from core.models import ContainerSpec, CreatedResource
from core.polling import poll_until

logger = logging.getLogger("cardinal.hypervisor")

TASK_TIMEOUT = 300.0
TASK_POLL_INTERVAL = 2.0
START_TIMEOUT = 120.0
START_POLL_INTERVAL = 3.0
TRANSIENT_RETRY_DELAY = 5.0
ADDRESS_GRACE_PERIOD = 5.0

# Range used when /cluster/nextid is unavailable. Best effort only: a
# collision surfaces later as a creation failure.
FALLBACK_VMID_RANGE = (1000, 9999)

_SUCCESS_EXIT_STATUSES = {"OK", "0"}
_DYNAMIC_ADDRESS_MODES = {"dhcp", "manual"}
_NET_IP_RE = re.compile(r"(?:^|,)ip=([^,]+)")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def parse_static_address(net_config: Optional[str]) -> Optional[str]:
    """Extract the static IPv4 address from a net0-style config string.

    "name=eth0,bridge=vmbr0,ip=10.0.0.5/24,gw=10.0.0.1" -> "10.0.0.5"
    "name=eth0,bridge=vmbr0,ip=dhcp"                    -> None

    The routing prefix is stripped. Returns None for dynamic modes, a missing
    ip= key, or an empty string.
    """
    if not net_config:
        return None
    match = _NET_IP_RE.search(net_config)
    if match is None:
        return None
    value = match.group(1).strip()
    if value.lower() in _DYNAMIC_ADDRESS_MODES:
        return None
    return value.split("/")[0] or None


def extract_agent_ipv4(interfaces: Any, interface_name: str = "eth0") -> Optional[str]:
    """Return the first non-loopback IPv4 address reported for interface_name.

    interfaces is the "result" list from network-get-interfaces:
        [{"name": "eth0", "ip-addresses": [{"ip-address": "...",
                                            "ip-address-type": "ipv4"}, ...]}]
    """
    if not isinstance(interfaces, list):
        return None
    for iface in interfaces:
        if not isinstance(iface, dict) or iface.get("name") != interface_name:
            continue
        for entry in iface.get("ip-addresses") or []:
            if not isinstance(entry, dict):
                continue
            if entry.get("ip-address-type") != "ipv4":
                continue
            address = entry.get("ip-address", "")
            try:
                if ipaddress.IPv4Address(address).is_loopback:
                    continue
            except ValueError:
                continue
            return address
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HypervisorClient:
    """Speaks the hypervisor's container-management API for one node.

    Usage:
        client = HypervisorClient(settings.hypervisor_config())
        created = client.create_resource(ContainerSpec(hostname="ci-01", password=pw))
        address = client.resolve_network_address(created.vmid)

    env_defaults is the environment layer of container defaults
    (Settings.container_defaults()); explicit spec values always win over it.
    sleep and clock are injectable for tests.
    """

    def __init__(
        self,
        config: HypervisorConfig,
        env_defaults: Optional[dict[str, Any]] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.env_defaults = env_defaults or {}
        self._sleep = sleep
        self._clock = clock
        if session is None:
            session = requests.Session()
            # Hypervisors commonly run with self-signed certificates.
            session.verify = config.verify_ssl
            session.headers["Authorization"] = f"PVEAPIToken={config.token_id}={config.token_secret}"
        self._session = session

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _node_path(self, suffix: str) -> str:
        return f"/nodes/{self.config.node}{suffix}"

    def _request(self, method: str, path: str, data: Optional[dict[str, Any]] = None) -> Any:
        """Perform one API call and return the unwrapped "data" field.

        Raises HypervisorRequestError for network errors, HTTP error statuses
        and bodies that are not JSON objects.
        """
        url = f"{self.config.base_url}{path}"
        try:
            resp = self._session.request(method, url, data=data, timeout=self.config.timeout)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise HypervisorRequestError(f"{method} {path} failed: {e}") from e
        if not isinstance(body, dict):
            raise HypervisorRequestError(f"{method} {path} returned an unexpected body")
        return body.get("data")

    def _get(self, path: str) -> Any:
        return self._request("GET", path)

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        form = {key: str(value) for key, value in payload.items() if value is not None}
        return self._request("POST", path, data=form)

    # ------------------------------------------------------------------
    # Cluster
    # ------------------------------------------------------------------

    def next_available_id(self) -> int:
        """Ask the cluster for a free VMID, falling back to a random one.

        The fallback is not a uniqueness guarantee. It keeps provisioning
        moving when /cluster/nextid is flaky; a collision fails the create.
        """
        try:
            data = self._get("/cluster/nextid")
            if data:
                return int(data)
            logger.warning("Empty /cluster/nextid response, using a random VMID")
        except (HypervisorRequestError, ValueError, TypeError) as e:
            logger.warning("Could not get next VMID, using random: %s", e)
        return random.randint(*FALLBACK_VMID_RANGE)

    # ------------------------------------------------------------------
    # Creation protocol
    # ------------------------------------------------------------------

    def create_resource(self, spec: ContainerSpec) -> CreatedResource:
        """Create a container and block until it is running.

        Either the whole sequence succeeds or CreationError is raised with the
        underlying cause chained. There is no rollback: after a failed wait
        the container may still exist on the hypervisor in an undefined state.
        """
        try:
            vmid = spec.vmid if spec.vmid is not None else self.next_available_id()
            payload = build_creation_payload(spec, vmid, self.env_defaults)
            logger.info("Creating container vmid=%s hostname=%s", vmid, spec.hostname)

            task_ref = self._post(self._node_path("/lxc"), payload)
            if not task_ref:
                raise HypervisorError("Invalid container creation response: no task reference")
            task_ref = str(task_ref)
            logger.info("Container creation task started: %s", task_ref)

            self.wait_for_task(task_ref, TASK_TIMEOUT)
            self.wait_for_running(vmid, START_TIMEOUT)
        except HypervisorError as e:
            logger.error("Container creation failed for %s: %s", spec.hostname, e)
            raise CreationError(f"Container creation failed: {e}") from e

        return CreatedResource(vmid=vmid, hostname=spec.hostname, task_ref=task_ref)

    def wait_for_task(self, task_ref: str, max_wait: float = TASK_TIMEOUT) -> bool:
        """Poll a task every 2s until it stops.

        stopped + exit status OK/"0"  -> True
        stopped + anything else       -> TaskFailedError, immediately
        no terminal state by max_wait -> TaskTimeoutError
        """
        if "%3A" in task_ref:
            task_ref = urllib.parse.unquote(task_ref)
        path = self._node_path(f"/tasks/{task_ref}/status")

        def check() -> Optional[bool]:
            task = self._get(path)
            if not isinstance(task, dict) or task.get("status") != "stopped":
                return None
            exit_status = str(task.get("exitstatus", ""))
            if exit_status not in _SUCCESS_EXIT_STATUSES:
                raise TaskFailedError(task_ref, exit_status)
            return True

        poll_until(
            check,
            interval=TASK_POLL_INTERVAL,
            timeout=max_wait,
            timeout_error=TaskTimeoutError,
            transient=(HypervisorRequestError,),
            retry_delay=TRANSIENT_RETRY_DELAY,
            description=f"task {task_ref}",
            clock=self._clock,
            sleep=self._sleep,
        )
        logger.info("Task %s completed successfully", task_ref)
        return True

    def wait_for_running(self, vmid: int, max_wait: float = START_TIMEOUT) -> bool:
        """Poll container status every 3s until it reports 'running'."""

        def check() -> Optional[bool]:
            return True if self.get_status(vmid) == "running" else None

        poll_until(
            check,
            interval=START_POLL_INTERVAL,
            timeout=max_wait,
            timeout_error=StartTimeoutError,
            transient=(HypervisorRequestError,),
            retry_delay=TRANSIENT_RETRY_DELAY,
            description=f"container {vmid} start",
            clock=self._clock,
            sleep=self._sleep,
        )
        logger.info("Container %s is running", vmid)
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self, vmid: int) -> str:
        """Return the container's runtime status ("running", "stopped", ...).

        Lookup failures (unknown vmid, API down) propagate as
        HypervisorRequestError -- they are actionable for the caller.
        """
        data = self._get(self._node_path(f"/lxc/{vmid}/status/current"))
        if isinstance(data, dict) and data.get("status"):
            return str(data["status"])
        return "unknown"

    def resolve_network_address(self, vmid: int) -> Optional[str]:
        """Best-effort address lookup. Returns None when not (yet) known.

        1. Wait a grace period so address assignment can propagate.
        2. A static ip= in net0 is returned directly, prefix stripped.
        3. Otherwise ask the in-guest agent for eth0's first non-loopback IPv4.
        """
        self._sleep(ADDRESS_GRACE_PERIOD)

        try:
            config = self._get(self._node_path(f"/lxc/{vmid}/config"))
        except HypervisorRequestError as e:
            logger.error("Error getting container %s config: %s", vmid, e)
            return None

        if isinstance(config, dict):
            static = parse_static_address(config.get("net0"))
            if static:
                return static

        try:
            agent = self._get(self._node_path(f"/lxc/{vmid}/agent/network-get-interfaces"))
        except HypervisorRequestError as e:
            logger.warning("Could not get IP from agent for container %s: %s", vmid, e)
            return None

        interfaces = agent.get("result") if isinstance(agent, dict) else None
        return extract_agent_ipv4(interfaces)
