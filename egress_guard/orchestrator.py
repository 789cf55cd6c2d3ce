"""オーケストレーター - 名前解決からチェーン導入・監査・検証までの実行制御."""

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .audit import AuditRecorder
from .config import Config
from .firewall import EgressChainBuilder
from .ip_manager import AddressSetStore
from .logger import ComponentType, log_error, log_event, log_system_event
from .netfilter import FirewallError, FirewallState, IPFamily
from .netinfo import HostNetwork, discover_host_network
from .resolver import CIDRRange, DomainResolver, classify_ranges, fetch_range_feed
from .verifier import ProbeResult, Verifier


@dataclass
class RunReport:
    """1回の実行結果."""

    snapshot_dir: Path | None = None
    set_counts: dict[str, int] = field(default_factory=dict)
    unresolved_domains: list[str] = field(default_factory=list)
    installed: list[IPFamily] = field(default_factory=list)
    probes: list[ProbeResult] = field(default_factory=list)

    @property
    def verification_passed(self) -> bool:
        return all(probe.reachable for probe in self.probes)


class FirewallInitializer:
    """egress許可リストファイアウォールの初期化.

    実行順序:
        1. 前スナップショット
        2. レンジフィード取得・ドメイン解決
        3. ipset作成・フラッシュ・投入
        4. IPv4 → IPv6 チェーン導入
        5. 後スナップショットと差分（失敗時も必ず実行）
        6. 到達性検証（導入成功時のみ、結果は診断用）
    """

    def __init__(
        self,
        config: Config | None = None,
        state: FirewallState | None = None,
        resolver: DomainResolver | None = None,
        verifier: Verifier | None = None,
        detect_network: Callable[[str], HostNetwork] = discover_host_network,
        fetch_ranges: Callable[..., list[str]] = fetch_range_feed,
    ) -> None:
        """初期化.

        Args:
            config: 設定
            state: ファイアウォール状態（未指定時はコマンド実行による実装）
            resolver: ドメインリゾルバー
            verifier: 到達性検証
            detect_network: ホストネットワーク検出関数
            fetch_ranges: レンジフィード取得関数
        """
        self.config = config or Config()
        self.state = state or FirewallState()
        self.resolver = resolver or DomainResolver()
        self.verifier = verifier or Verifier(
            targets=self.config.verification.targets,
            connect_timeout=self.config.verification.connect_timeout,
            max_time=self.config.verification.max_time,
        )
        self.detect_network = detect_network
        self.fetch_ranges = fetch_ranges

        self.store = AddressSetStore(self.state, self.config.ipsets)
        self.chain_builder = EgressChainBuilder(self.state, self.config.egress_chain)

    def _collect_ranges(self) -> tuple[list[CIDRRange], list[CIDRRange]]:
        """レンジフィードを取得してファミリー別に分類（無効時は空）."""
        feed = self.config.range_feed
        if not feed.enabled:
            return [], []

        entries = self.fetch_ranges(feed.url, feed.categories, feed.timeout)
        ipv4, ipv6 = classify_ranges(entries)
        if entries:
            log_event(
                ComponentType.RESOLVER,
                f"Added {len(ipv4) + len(ipv6)} range feed CIDRs.",
                ipv4=str(len(ipv4)),
                ipv6=str(len(ipv6)),
            )
        return ipv4, ipv6

    def apply(self, report: RunReport) -> None:
        """ポリシーを計算してホストに適用.

        Raises:
            FirewallError: ipset/チェーンの構造的な操作に失敗した場合
        """
        nets_v4, nets_v6 = self._collect_ranges()
        results = self.resolver.resolve_all(self.config.allowed_domains)
        report.unresolved_domains = [r.domain for r in results if r.empty]

        hosts_v4 = sorted({a.address for r in results for a in r.ipv4})
        hosts_v6 = sorted({a.address for r in results for a in r.ipv6})

        names = self.config.ipsets
        self.store.prepare_all()
        report.set_counts = {
            names.net_v4: self.store.populate(names.net_v4, [c.network for c in nets_v4]),
            names.net_v6: self.store.populate(names.net_v6, [c.network for c in nets_v6]),
            names.host_v4: self.store.populate(names.host_v4, hosts_v4),
            names.host_v6: self.store.populate(names.host_v6, hosts_v6),
        }

        network = self.detect_network(self.config.stub_resolver)
        report.installed = self.chain_builder.install_all(self.store, network)

    def run(self) -> RunReport:
        """初期化を実行.

        Returns:
            実行結果

        Raises:
            FirewallError: ルール導入に失敗した場合（監査の差分出力後に伝播）
        """
        log_system_event("Initializing egress firewall...")

        recorder = AuditRecorder(self.state, self.config.audit_dir)
        report = RunReport(snapshot_dir=recorder.snapshot_dir)

        with recorder.session():
            try:
                self.apply(report)
            except FirewallError as e:
                log_error(ComponentType.FIREWALL, "Rule installation failed", error=str(e))
                raise

        if self.config.verification.enabled:
            report.probes = self.verifier.verify()

        log_system_event(
            "Egress firewall initialized",
            families=",".join(f.label for f in report.installed),
            unresolved=str(len(report.unresolved_domains)),
            snapshot_dir=str(report.snapshot_dir),
        )
        return report
