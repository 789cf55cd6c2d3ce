"""リゾルバーモジュール - 許可ドメインの名前解決と外部CIDRレンジフィードの取得.

名前解決・フィード取得はいずれもベストエフォートで、失敗は警告ログのみ残し
空の結果を返す（実行全体は中断しない）。リトライは行わない。
"""

import asyncio
import ipaddress
import socket
from collections.abc import Iterable
from dataclasses import dataclass, field

import httpx

from . import constants
from .logger import ComponentType, log_event, log_warning
from .netfilter import IPFamily


@dataclass(frozen=True)
class ResolvedAddress:
    """解決済みアドレス."""

    address: str
    family: IPFamily
    provenance: str  # ドメイン名


@dataclass(frozen=True)
class CIDRRange:
    """外部フィード由来のCIDRレンジ."""

    network: str
    family: IPFamily
    provenance: str = constants.RANGE_FEED_PROVENANCE


@dataclass
class ResolutionResult:
    """1ドメイン分の解決結果（失敗時は空）."""

    domain: str
    ipv4: list[ResolvedAddress] = field(default_factory=list)
    ipv6: list[ResolvedAddress] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.ipv4 and not self.ipv6


class DomainResolver:
    """システムリゾルバー経由で許可ドメインをA/AAAAに解決."""

    def _lookup(self, domain: str, family: IPFamily) -> list[ResolvedAddress]:
        """1ファミリー分の名前解決.

        Args:
            domain: ドメイン名
            family: アドレスファミリー

        Returns:
            重複除去・ソート済みのアドレスリスト（解決失敗時は空）
        """
        af = socket.AF_INET if family is IPFamily.V4 else socket.AF_INET6
        try:
            # socket.getaddrinfo()はシステムのresolverを使用（/etc/hosts、127.0.0.11経由）
            addrinfo = socket.getaddrinfo(domain, None, af, socket.SOCK_STREAM)
        except (OSError, UnicodeError) as e:
            log_warning(
                ComponentType.RESOLVER,
                f"{family.label} resolution failed for {domain}",
                error=str(e),
            )
            return []

        addresses: set[str] = set()
        for entry in addrinfo:
            raw = str(entry[4][0]).split("%", 1)[0]  # スコープID（fe80::1%eth0）を除去
            try:
                parsed = ipaddress.ip_address(raw)
            except ValueError:
                continue
            if parsed.version == (4 if family is IPFamily.V4 else 6):
                addresses.add(str(parsed))

        return [
            ResolvedAddress(address=ip, family=family, provenance=domain)
            for ip in sorted(addresses, key=ipaddress.ip_address)
        ]

    def resolve(self, domain: str) -> ResolutionResult:
        """ドメインのIPv4/IPv6アドレスを解決."""
        result = ResolutionResult(
            domain=domain,
            ipv4=self._lookup(domain, IPFamily.V4),
            ipv6=self._lookup(domain, IPFamily.V6),
        )
        if result.empty:
            log_warning(ComponentType.RESOLVER, f"No addresses for {domain}; skipping")
        return result

    def resolve_all(self, domains: Iterable[str]) -> list[ResolutionResult]:
        """全ドメインを順番に解決（1ドメインの失敗で残りを止めない）."""
        log_event(ComponentType.RESOLVER, "Resolving allowed domains...")
        results = []
        for domain in domains:
            result = self.resolve(domain)
            log_event(
                ComponentType.RESOLVER,
                f"  - {domain}",
                ipv4=str(len(result.ipv4)),
                ipv6=str(len(result.ipv6)),
            )
            results.append(result)
        return results


async def _download_feed(url: str, timeout: float) -> object:
    """フィードJSONを取得（timeoutは接続・読み取り・全体の上限）."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await asyncio.wait_for(client.get(url), timeout)
        response.raise_for_status()
        return response.json()


def fetch_range_feed(
    url: str = constants.DEFAULT_RANGE_FEED_URL,
    categories: Iterable[str] = constants.DEFAULT_RANGE_FEED_CATEGORIES,
    timeout: float = 10.0,
) -> list[str]:
    """外部レンジフィード（GitHub meta API）からCIDRを取得.

    Args:
        url: フィードURL
        categories: 取り込むJSON配列フィールド名
        timeout: 全体のタイムアウト（秒）

    Returns:
        全カテゴリの和集合（重複除去・ソート済み）。取得/解析失敗時は空リスト
    """
    log_event(ComponentType.RESOLVER, "Fetching range feed CIDRs...", url=url)
    try:
        document = asyncio.run(_download_feed(url, timeout))

        entries: set[str] = set()
        for category in categories:
            values = document.get(category) or []
            if not isinstance(values, list):
                raise TypeError(f"category {category!r} is not a list")
            entries.update(str(v).strip() for v in values if str(v).strip())
    except asyncio.TimeoutError:
        log_warning(
            ComponentType.RESOLVER,
            "Could not fetch/parse range feed CIDRs; skipping",
            error=f"no complete response within {timeout}s",
        )
        return []
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError, AttributeError) as e:
        log_warning(
            ComponentType.RESOLVER,
            "Could not fetch/parse range feed CIDRs; skipping",
            error=str(e),
        )
        return []

    return sorted(entries)


def classify_ranges(entries: Iterable[str]) -> tuple[list[CIDRRange], list[CIDRRange]]:
    """CIDRをファミリー別に分類.

    スラッシュ区切りのプレフィックスを持たないエントリーは不正として警告・スキップする。

    Returns:
        (IPv4レンジ, IPv6レンジ)のタプル
    """
    ipv4: list[CIDRRange] = []
    ipv6: list[CIDRRange] = []

    for entry in entries:
        if "/" not in entry:
            log_warning(ComponentType.RESOLVER, f"skipping non-CIDR: {entry}")
            continue

        cidr = CIDRRange(network=entry, family=IPFamily.of(entry))
        if cidr.family is IPFamily.V6:
            ipv6.append(cidr)
        else:
            ipv4.append(cidr)

    return ipv4, ipv6
