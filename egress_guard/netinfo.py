"""ホストネットワーク検出モジュール - リゾルバー設定とデフォルトルートの取得."""

import ipaddress
import socket
import subprocess
from dataclasses import dataclass, field

import dns.resolver

from . import constants
from .logger import ComponentType, log_event, log_warning
from .netfilter import IPFamily


@dataclass
class HostNetwork:
    """default-denyの例外となるホスト側ネットワーク情報."""

    resolvers: list[str] = field(default_factory=list)
    subnet_v4: str | None = None
    gateway_v6: str | None = None

    def resolvers_for(self, family: IPFamily) -> list[str]:
        """ファミリーに一致するリゾルバーアドレス."""
        return [ip for ip in self.resolvers if IPFamily.of(ip) is family]


def _stub_resolver_present(stub: str) -> bool:
    """スタブリゾルバー（Docker内蔵DNS）が名前解決できるか."""
    try:
        socket.gethostbyaddr(stub)
        return True
    except (OSError, UnicodeError):
        return False


def resolver_ips(stub: str = constants.DEFAULT_STUB_RESOLVER) -> list[str]:
    """DNS例外とするリゾルバーアドレスを取得.

    スタブリゾルバーと /etc/resolv.conf の nameserver エントリーの和集合。

    Args:
        stub: コンテナ内スタブリゾルバー

    Returns:
        重複除去・ソート済みのアドレスリスト
    """
    resolvers: set[str] = set()

    if stub and _stub_resolver_present(stub):
        resolvers.add(stub)

    try:
        # dnspythonはシステムのresolv.confを読み込む
        nameservers = dns.resolver.Resolver().nameservers
    except (dns.resolver.NoResolverConfiguration, OSError) as e:
        log_warning(ComponentType.SYSTEM, "Could not read resolver configuration", error=str(e))
        nameservers = []

    for ns in nameservers:
        try:
            resolvers.add(str(ipaddress.ip_address(str(ns).split("%", 1)[0])))
        except ValueError:
            continue

    return sorted(resolvers)


def default_gateway(family: IPFamily) -> str | None:
    """デフォルトルートのネクストホップを取得.

    Args:
        family: アドレスファミリー

    Returns:
        ゲートウェイアドレス（検出失敗時はNone）
    """
    cmd = [constants.IP_CMD]
    if family is IPFamily.V6:
        cmd.append("-6")
    cmd += ["route", "show", "default"]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return None

    # "default via 172.17.0.1 dev eth0" → 172.17.0.1
    for line in result.stdout.splitlines():
        parts = line.split()
        if parts and parts[0] == "default" and len(parts) >= 3:
            try:
                return str(ipaddress.ip_address(parts[2]))
            except ValueError:
                return None

    return None


def host_subnet_v4(gateway: str | None) -> str | None:
    """IPv4ゲートウェイを含む/24ネットワークを計算.

    例: 10.0.5.2 → 10.0.5.0/24
    """
    if not gateway:
        return None
    try:
        return str(ipaddress.ip_network(f"{gateway}/24", strict=False))
    except ValueError:
        return None


def discover_host_network(stub: str = constants.DEFAULT_STUB_RESOLVER) -> HostNetwork:
    """リゾルバーとホストサブネット/ゲートウェイを検出."""
    network = HostNetwork(
        resolvers=resolver_ips(stub),
        subnet_v4=host_subnet_v4(default_gateway(IPFamily.V4)),
        # IPv6はサブネットを広げずゲートウェイアドレスのみ
        gateway_v6=default_gateway(IPFamily.V6),
    )

    log_event(
        ComponentType.SYSTEM,
        "Host network detected",
        resolvers=",".join(network.resolvers) or "<none>",
        host_subnet_v4=network.subnet_v4 or "<none>",
        gateway_v6=network.gateway_v6 or "<none>",
    )
    return network
