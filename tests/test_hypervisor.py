"""Unit tests for core/hypervisor.py against a scripted fake session.

No network: FakeSession answers by (method, path suffix) and records every
call. FakeClock (conftest.py) stands in for time so the 300s task deadline
and the 5s grace period cost nothing.
"""

from unittest.mock import MagicMock

import pytest
import requests

from core.config import HypervisorConfig
from core.errors import (
    CreationError,
    HypervisorRequestError,
    StartTimeoutError,
    TaskFailedError,
    TaskTimeoutError,
)
from core.hypervisor import (
    ADDRESS_GRACE_PERIOD,
    FALLBACK_VMID_RANGE,
    HypervisorClient,
    extract_agent_ipv4,
    parse_static_address,
)
from core.models import ContainerSpec

UPID = "UPID:pve:0001A2B3:00C4D5E6:65000000:vzcreate:105:root@pam!cardinal:"
BASE = "https://pve.example:8006/api2/json"

# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


def _response(data):
    resp = MagicMock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = {"data": data}
    return resp


class FakeSession:
    """Scripted stand-in for requests.Session.

    routes maps (METHOD, path suffix) to a list of answers. Each call pops the
    next answer; the last one repeats. An answer that is an exception is
    raised instead of returned.
    """

    def __init__(self, routes):
        self.routes = {key: list(value) for key, value in routes.items()}
        self.calls = []

    def request(self, method, url, data=None, timeout=None):
        self.calls.append((method, url, data))
        for (m, suffix), answers in self.routes.items():
            if m == method and url.endswith(suffix):
                answer = answers.pop(0) if len(answers) > 1 else answers[0]
                if isinstance(answer, BaseException):
                    raise answer
                return _response(answer)
        raise AssertionError(f"unexpected call {method} {url}")

    def paths(self, method=None):
        return [url[len(BASE):] for m, url, _ in self.calls if method in (None, m)]


def _client(routes, clock, env_defaults=None):
    config = HypervisorConfig(host="pve.example", node="pve", token_id="root@pam!cardinal", token_secret="s")
    session = FakeSession(routes)
    client = HypervisorClient(config, env_defaults=env_defaults, session=session, sleep=clock.sleep, clock=clock)
    return client, session


def _happy_routes(overrides=None):
    routes = {
        ("GET", "/cluster/nextid"): ["105"],
        ("POST", "/nodes/pve/lxc"): [UPID],
        ("GET", f"/tasks/{UPID}/status"): [{"status": "running"}, {"status": "stopped", "exitstatus": "OK"}],
        ("GET", "/lxc/105/status/current"): [{"status": "stopped"}, {"status": "running"}],
    }
    routes.update(overrides or {})
    return routes


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestParseStaticAddress:
    def test_static_address_prefix_stripped(self):
        assert parse_static_address("name=eth0,bridge=vmbr0,ip=10.0.0.5/24,gw=10.0.0.1") == "10.0.0.5"

    def test_address_without_prefix(self):
        assert parse_static_address("ip=192.168.1.20,name=eth0") == "192.168.1.20"

    @pytest.mark.parametrize("net0", ["name=eth0,ip=dhcp", "name=eth0,ip=manual", "name=eth0,bridge=vmbr0", "", None])
    def test_no_static_address(self, net0):
        assert parse_static_address(net0) is None

    def test_ip6_key_is_not_mistaken_for_ip(self):
        assert parse_static_address("name=eth0,ip6=fd00::5/64,ip=dhcp") is None


class TestExtractAgentIpv4:
    def test_first_non_loopback_ipv4_on_eth0(self):
        interfaces = [
            {"name": "lo", "ip-addresses": [{"ip-address": "127.0.0.1", "ip-address-type": "ipv4"}]},
            {
                "name": "eth0",
                "ip-addresses": [
                    {"ip-address": "fe80::1", "ip-address-type": "ipv6"},
                    {"ip-address": "127.0.0.2", "ip-address-type": "ipv4"},
                    {"ip-address": "10.1.2.3", "ip-address-type": "ipv4"},
                ],
            },
        ]
        assert extract_agent_ipv4(interfaces) == "10.1.2.3"

    def test_no_eth0(self):
        assert extract_agent_ipv4([{"name": "eth1", "ip-addresses": []}]) is None

    def test_garbage(self):
        assert extract_agent_ipv4(None) is None
        assert extract_agent_ipv4({"name": "eth0"}) is None

    def test_non_dict_address_entries_are_skipped(self):
        interfaces = [
            {
                "name": "eth0",
                "ip-addresses": ["10.0.0.9", None, {"ip-address": "10.0.0.10", "ip-address-type": "ipv4"}],
            }
        ]
        assert extract_agent_ipv4(interfaces) == "10.0.0.10"


# ---------------------------------------------------------------------------
# Session setup
# ---------------------------------------------------------------------------


def test_default_session_sends_api_token_header():
    config = HypervisorConfig(host="h", node="n", token_id="root@pam!ci", token_secret="uuid-secret")
    client = HypervisorClient(config)
    assert client._session.headers["Authorization"] == "PVEAPIToken=root@pam!ci=uuid-secret"
    assert client._session.verify is False


# ---------------------------------------------------------------------------
# Creation protocol
# ---------------------------------------------------------------------------


class TestCreateResource:
    def test_happy_path(self, clock):
        client, session = _client(_happy_routes(), clock)
        created = client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))

        assert created.vmid == 105
        assert created.hostname == "ci-01"
        assert created.task_ref == UPID
        assert clock.sleeps == [2, 3]

    def test_posts_form_encoded_payload(self, clock):
        client, session = _client(_happy_routes(), clock, env_defaults={"cores": 4, "memory": None})
        client.create_resource(ContainerSpec(hostname="ci-01", password="pw", disk=16))

        _, _, form = next(c for c in session.calls if c[0] == "POST")
        assert form["vmid"] == "105"
        assert form["hostname"] == "ci-01"
        assert form["cores"] == "4"
        assert form["memory"] == "2048"
        assert form["rootfs"] == "local-lvm:16"
        assert form["unprivileged"] == "1"
        assert all(isinstance(v, str) for v in form.values())

    def test_explicit_vmid_skips_nextid(self, clock):
        routes = _happy_routes({("GET", "/lxc/300/status/current"): [{"status": "running"}]})
        client, session = _client(routes, clock)
        created = client.create_resource(ContainerSpec(hostname="ci-01", password="pw", vmid=300))
        assert created.vmid == 300
        assert "/cluster/nextid" not in session.paths()

    def test_url_encoded_task_ref_is_decoded(self, clock):
        encoded = UPID.replace(":", "%3A")
        client, session = _client(_happy_routes({("POST", "/nodes/pve/lxc"): [encoded]}), clock)
        client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))
        assert f"/nodes/pve/tasks/{UPID}/status" in session.paths("GET")

    def test_failed_task_stops_immediately(self, clock):
        routes = _happy_routes(
            {("GET", f"/tasks/{UPID}/status"): [{"status": "stopped", "exitstatus": "unable to create CT 105"}]}
        )
        client, session = _client(routes, clock)
        with pytest.raises(CreationError) as exc_info:
            client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))

        cause = exc_info.value.__cause__
        assert isinstance(cause, TaskFailedError)
        assert "unable to create CT 105" in str(cause)
        assert not any(p.endswith("/status/current") for p in session.paths())

    def test_wait_for_task_exit_code_one_fails_without_waiting(self, clock):
        routes = {("GET", f"/tasks/{UPID}/status"): [{"status": "stopped", "exitstatus": "1"}]}
        client, _ = _client(routes, clock)
        with pytest.raises(TaskFailedError) as exc_info:
            client.wait_for_task(UPID)
        assert exc_info.value.exit_status == "1"
        assert clock.now == 0

    def test_exit_status_zero_counts_as_success(self, clock):
        routes = _happy_routes({("GET", f"/tasks/{UPID}/status"): [{"status": "stopped", "exitstatus": "0"}]})
        client, _ = _client(routes, clock)
        assert client.create_resource(ContainerSpec(hostname="ci-01", password="pw")).vmid == 105

    def test_task_that_never_stops_times_out_at_300s(self, clock):
        routes = _happy_routes({("GET", f"/tasks/{UPID}/status"): [{"status": "running"}]})
        client, _ = _client(routes, clock)
        with pytest.raises(CreationError) as exc_info:
            client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))
        assert isinstance(exc_info.value.__cause__, TaskTimeoutError)
        assert clock.now == 300

    def test_container_that_never_starts_times_out(self, clock):
        routes = _happy_routes({("GET", "/lxc/105/status/current"): [{"status": "stopped"}]})
        client, _ = _client(routes, clock)
        with pytest.raises(CreationError) as exc_info:
            client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))
        assert isinstance(exc_info.value.__cause__, StartTimeoutError)

    def test_transient_poll_error_is_retried(self, clock):
        routes = _happy_routes(
            {
                ("GET", f"/tasks/{UPID}/status"): [
                    requests.ConnectionError("reset by peer"),
                    {"status": "stopped", "exitstatus": "OK"},
                ]
            }
        )
        client, _ = _client(routes, clock)
        client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))
        assert clock.sleeps[0] == 5

    def test_missing_task_ref_is_a_creation_error(self, clock):
        client, _ = _client(_happy_routes({("POST", "/nodes/pve/lxc"): [None]}), clock)
        with pytest.raises(CreationError, match="no task reference"):
            client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))

    def test_rejected_submission_is_a_creation_error(self, clock):
        routes = _happy_routes({("POST", "/nodes/pve/lxc"): [requests.HTTPError("500 Server Error")]})
        client, _ = _client(routes, clock)
        with pytest.raises(CreationError, match="Container creation failed"):
            client.create_resource(ContainerSpec(hostname="ci-01", password="pw"))


# ---------------------------------------------------------------------------
# Cluster / introspection
# ---------------------------------------------------------------------------


def test_next_available_id_falls_back_to_random(clock):
    client, _ = _client({("GET", "/cluster/nextid"): [requests.ConnectionError("down")]}, clock)
    low, high = FALLBACK_VMID_RANGE
    assert low <= client.next_available_id() <= high


def test_get_status_unknown_when_field_missing(clock):
    client, _ = _client({("GET", "/lxc/105/status/current"): [{}]}, clock)
    assert client.get_status(105) == "unknown"


def test_get_status_propagates_request_errors(clock):
    client, _ = _client({("GET", "/lxc/105/status/current"): [requests.HTTPError("500 Server Error")]}, clock)
    with pytest.raises(HypervisorRequestError, match="status/current"):
        client.get_status(105)


def test_wait_for_running_retries_connection_errors(clock):
    client, session = _client(
        {("GET", "/lxc/105/status/current"): [requests.ConnectionError("reset by peer"), {"status": "running"}]},
        clock,
    )
    assert client.wait_for_running(105) is True
    assert clock.sleeps == [5]
    assert session.paths("GET").count("/nodes/pve/lxc/105/status/current") == 2


class TestResolveNetworkAddress:
    def test_static_address_from_config(self, clock):
        client, session = _client(
            {("GET", "/lxc/105/config"): [{"net0": "name=eth0,bridge=vmbr0,ip=10.0.0.5/24,gw=10.0.0.1"}]},
            clock,
        )
        assert client.resolve_network_address(105) == "10.0.0.5"
        assert clock.sleeps == [ADDRESS_GRACE_PERIOD]
        assert not any("agent" in p for p in session.paths())

    def test_dhcp_address_from_agent(self, clock):
        client, _ = _client(
            {
                ("GET", "/lxc/105/config"): [{"net0": "name=eth0,bridge=vmbr0,ip=dhcp"}],
                ("GET", "/lxc/105/agent/network-get-interfaces"): [
                    {
                        "result": [
                            {
                                "name": "eth0",
                                "ip-addresses": [{"ip-address": "10.9.8.7", "ip-address-type": "ipv4"}],
                            }
                        ]
                    }
                ],
            },
            clock,
        )
        assert client.resolve_network_address(105) == "10.9.8.7"

    def test_agent_unavailable_returns_none(self, clock):
        client, _ = _client(
            {
                ("GET", "/lxc/105/config"): [{"net0": "ip=dhcp"}],
                ("GET", "/lxc/105/agent/network-get-interfaces"): [requests.HTTPError("500")],
            },
            clock,
        )
        assert client.resolve_network_address(105) is None

    def test_config_unavailable_returns_none(self, clock):
        client, _ = _client({("GET", "/lxc/105/config"): [requests.ConnectionError("down")]}, clock)
        assert client.resolve_network_address(105) is None
