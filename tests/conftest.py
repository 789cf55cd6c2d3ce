"""pytest configuration and fixtures for egress-guard tests."""

import ipaddress
import socketserver
import threading
import time

import pytest

from egress_guard.config import Config, IPSetNames, RangeFeedConfig, VerificationConfig
from egress_guard.netfilter import (
    FirewallError,
    FirewallState,
    IPFamily,
    NetfilterAccessor,
    Rule,
    SetKind,
)
from egress_guard.netinfo import HostNetwork
from egress_guard.resolver import ResolutionResult, ResolvedAddress

BUILTIN_CHAINS = ("INPUT", "FORWARD", "OUTPUT")


class FakeNetfilter(NetfilterAccessor):
    """In-memory packet filter with iptables/ipset semantics."""

    def __init__(self, ipv6: bool = True, fail_on: set[str] | None = None):
        self.ipv6 = ipv6
        self.fail_on = fail_on or set()
        self.chains: dict[IPFamily, dict[str, list[Rule]]] = {
            family: {name: [] for name in BUILTIN_CHAINS} for family in IPFamily
        }
        self.sets: dict[str, dict] = {}

    def _maybe_fail(self, op: str, *args: object) -> None:
        if op in self.fail_on:
            raise FirewallError([op, *(str(a) for a in args)], "Permission denied")

    def _table(self, family: IPFamily) -> dict[str, list[Rule]]:
        if family is IPFamily.V6 and not self.ipv6:
            raise FirewallError(["ip6tables"], "Command not found: ip6tables")
        return self.chains[family]

    def _chain(self, family: IPFamily, chain: str) -> list[Rule]:
        table = self._table(family)
        if chain not in table:
            raise FirewallError(["iptables", chain], "No chain/target/match by that name.")
        return table[chain]

    def available(self, family: IPFamily) -> bool:
        return family is IPFamily.V4 or self.ipv6

    def new_chain(self, family, chain):
        self._maybe_fail("new_chain", family.value, chain)
        self._table(family).setdefault(chain, [])

    def flush_chain(self, family, chain):
        self._maybe_fail("flush_chain", family.value, chain)
        self._chain(family, chain).clear()

    def append_rule(self, family, chain, rule):
        self._maybe_fail("append_rule", family.value, chain)
        self._chain(family, chain).append(rule)

    def insert_rule(self, family, chain, position, rule):
        self._maybe_fail("insert_rule", family.value, chain)
        self._chain(family, chain).insert(position - 1, rule)

    def delete_rule(self, family, chain, rule):
        rules = self._table(family).get(chain, [])
        if rule in rules:
            rules.remove(rule)
            return True
        return False

    def check_rule(self, family, chain, rule):
        return rule in self._table(family).get(chain, [])

    def create_set(self, name, kind, family):
        self._maybe_fail("create_set", name)
        self.sets.setdefault(name, {"kind": kind, "family": family, "members": []})

    def flush_set(self, name):
        self._maybe_fail("flush_set", name)
        if name not in self.sets:
            raise FirewallError(["ipset", "flush", name], "The set with the given name does not exist")
        self.sets[name]["members"].clear()

    def add_to_set(self, name, element):
        entry = self.sets.get(name)
        if entry is None:
            return False
        try:
            if entry["kind"] is SetKind.NET:
                parsed = ipaddress.ip_network(element, strict=False)
            else:
                parsed = ipaddress.ip_address(element)
        except ValueError:
            return False
        if parsed.version != (4 if entry["family"] is IPFamily.V4 else 6):
            return False
        if element not in entry["members"]:
            entry["members"].append(element)
        return True

    def save_rules(self, family):
        table = self._table(family)
        lines = ["# Generated by fake-save", "*filter"]
        lines += [f":{name} - [0:0]" for name in table]
        for name, rules in table.items():
            lines += [rule.render(name) for rule in rules]
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"

    def list_rules(self, family, table="filter"):
        if table != "filter":
            return f"# table {table}\n"
        lines = []
        for name, rules in self._table(family).items():
            lines.append(f"Chain {name}")
            lines += [f"{i} {' '.join(rule.to_args())}" for i, rule in enumerate(rules, 1)]
        return "\n".join(lines) + "\n"

    def save_sets(self):
        lines = []
        for name, entry in self.sets.items():
            lines.append(f"create {name} {entry['kind'].value} family {entry['family'].value}")
            lines += [f"add {name} {member}" for member in entry["members"]]
        return "\n".join(lines) + "\n"

    # ---- evaluation helpers ----

    def members(self, name: str) -> list[str]:
        return list(self.sets[name]["members"])

    def _matches(self, rule: Rule, packet: dict) -> bool:
        if rule.in_interface and rule.in_interface != packet.get("in_interface"):
            return False
        if rule.out_interface and rule.out_interface != packet["out_interface"]:
            return False
        if rule.states and packet["state"] not in rule.states:
            return False
        if rule.protocol and rule.protocol != packet["protocol"]:
            return False
        destination = ipaddress.ip_address(packet["destination"])
        if rule.destination and destination not in ipaddress.ip_network(
            rule.destination, strict=False
        ):
            return False
        if rule.dport is not None and rule.dport != packet["dport"]:
            return False
        if rule.match_set:
            entry = self.sets.get(rule.match_set)
            if entry is None:
                return False
            if not any(
                destination in ipaddress.ip_network(member, strict=False)
                for member in entry["members"]
            ):
                return False
        return True

    def _walk(self, family: IPFamily, chain: str, packet: dict) -> str | None:
        for rule in self._table(family)[chain]:
            if not self._matches(rule, packet):
                continue
            if rule.target in ("ACCEPT", "DROP"):
                return rule.target
            verdict = self._walk(family, rule.target, packet)
            if verdict is not None:
                return verdict
        return None

    def evaluate_output(
        self,
        destination: str,
        protocol: str = "tcp",
        dport: int = 443,
        out_interface: str = "eth0",
        state: str = "NEW",
    ) -> str:
        """Return the verdict of an outbound packet (OUTPUT policy is ACCEPT)."""
        packet = {
            "destination": destination,
            "protocol": protocol,
            "dport": dport,
            "out_interface": out_interface,
            "state": state,
        }
        return self._walk(IPFamily.of(destination), "OUTPUT", packet) or "ACCEPT"


class _TrickleHandler(socketserver.BaseRequestHandler):
    """Sends a valid HTTP response one byte at a time."""

    delay = 0.15

    def handle(self):
        self.request.recv(4096)
        payload = b'HTTP/1.1 200 OK\r\nContent-Type: application/json\r\nContent-Length: 2\r\n\r\n{}'
        for i in range(len(payload)):
            try:
                self.request.sendall(payload[i : i + 1])
            except OSError:
                return
            time.sleep(self.delay)


@pytest.fixture
def trickle_server_url():
    """URL of a local server that takes several seconds to send its response."""
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _TrickleHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    yield f"http://{host}:{port}/"
    server.shutdown()
    server.server_close()


class StaticResolver:
    """DomainResolver stand-in returning canned answers."""

    def __init__(self, answers: dict[str, tuple[list[str], list[str]]]):
        self.answers = answers

    def resolve_all(self, domains):
        results = []
        for domain in domains:
            v4, v6 = self.answers.get(domain, ([], []))
            results.append(
                ResolutionResult(
                    domain=domain,
                    ipv4=[ResolvedAddress(ip, IPFamily.V4, domain) for ip in v4],
                    ipv6=[ResolvedAddress(ip, IPFamily.V6, domain) for ip in v6],
                )
            )
        return results


@pytest.fixture
def fake_netfilter():
    """Fresh in-memory packet filter with IPv6 support."""
    return FakeNetfilter()


@pytest.fixture
def make_netfilter():
    """Factory for in-memory packet filters with custom behaviour."""
    return FakeNetfilter


@pytest.fixture
def make_resolver():
    """Factory for resolvers returning canned answers."""
    return StaticResolver


@pytest.fixture
def firewall_state(fake_netfilter):
    """FirewallState backed by the in-memory packet filter."""
    return FirewallState(fake_netfilter)


@pytest.fixture
def sample_allowed_domains():
    """Sample allowed domains list for testing."""
    return [
        "registry.npmjs.org",
        "pypi.org",
        "api.openai.com",
    ]


@pytest.fixture
def sample_answers():
    """Canned resolver answers for the sample domains."""
    return {
        "registry.npmjs.org": (["104.16.0.34", "104.16.1.34"], ["2606:4700::6810:22"]),
        "pypi.org": (["151.101.0.223"], []),
        "api.openai.com": (["162.159.140.245"], ["2606:4700:4400::a29f:8cf5"]),
    }


@pytest.fixture
def sample_host_network():
    """Host network seen from inside a container."""
    return HostNetwork(
        resolvers=["127.0.0.11", "192.168.65.7", "fd00::53"],
        subnet_v4="172.17.0.0/24",
        gateway_v6="fd00::1",
    )


@pytest.fixture
def sample_config(tmp_path, sample_allowed_domains):
    """Config with audits under tmp_path and verification disabled."""
    return Config(
        allowed_domains=sample_allowed_domains,
        range_feed=RangeFeedConfig(enabled=False),
        ipsets=IPSetNames(),
        verification=VerificationConfig(enabled=False),
        audit_dir=str(tmp_path / "audit"),
    )


@pytest.fixture
def sample_config_data():
    """Sample configuration data for testing."""
    return {
        "allowed_domains": ["PyPI.org", " registry.npmjs.org ", "pypi.org", ""],
        "range_feed": {
            "enabled": True,
            "url": "https://api.github.com/meta",
            "categories": ["web", "api", "git"],
            "timeout": 5,
        },
        "ipsets": {
            "host_v4": "allowed_ipv4",
            "host_v6": "allowed_ipv6",
            "net_v4": "allowed_nets",
            "net_v6": "allowed_nets_v6",
        },
        "egress_chain": "EGRESS",
        "verification": {
            "enabled": True,
            "connect_timeout": 5,
            "max_time": 10,
            "targets": [{"url": "https://registry.npmjs.org/", "label": "npm registry"}],
        },
    }
