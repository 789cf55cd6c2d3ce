"""ファイアウォール管理モジュール - egressチェーンの構築とOUTPUTへの接続.

チェーンは先頭一致で評価されるため、ルールの順序は以下で固定:

1. ループバック
2. ESTABLISHED,RELATED
3. リゾルバー宛 DNS（udp/tcp 53）
4. IPv4: デフォルトゲートウェイを含む/24 / IPv6: デフォルトゲートウェイのみ
5. CIDR ipset
6. ホストアドレス ipset
7. DROP
"""

from .ip_manager import AddressSetStore
from .logger import ComponentType, log_event
from .netfilter import FirewallState, IPFamily, Rule
from .netinfo import HostNetwork

OUTPUT_CHAIN = "OUTPUT"
INPUT_CHAIN = "INPUT"
LOOPBACK_IF = "lo"
ESTABLISHED_STATES = ("ESTABLISHED", "RELATED")
DNS_PORT = 53


def build_egress_rules(
    family: IPFamily,
    net_set: str,
    host_set: str,
    resolvers: list[str],
    subnet_v4: str | None = None,
    gateway_v6: str | None = None,
) -> list[Rule]:
    """egressチェーンのルール列を生成.

    Args:
        family: アドレスファミリー
        net_set: CIDR ipset名
        host_set: ホストアドレス ipset名
        resolvers: DNS例外とするリゾルバーアドレス（他ファミリーのものは無視）
        subnet_v4: IPv4ホストサブネット（IPv4のみ使用）
        gateway_v6: IPv6デフォルトゲートウェイ（IPv6のみ使用）

    Returns:
        先頭一致順のルールリスト（末尾はDROP）
    """
    rules = [
        Rule(target="ACCEPT", out_interface=LOOPBACK_IF),
        Rule(target="ACCEPT", states=ESTABLISHED_STATES),
    ]

    for resolver in resolvers:
        if IPFamily.of(resolver) is not family:
            continue
        rules.append(Rule(target="ACCEPT", protocol="udp", destination=resolver, dport=DNS_PORT))
        rules.append(Rule(target="ACCEPT", protocol="tcp", destination=resolver, dport=DNS_PORT))

    if family is IPFamily.V4 and subnet_v4:
        rules.append(Rule(target="ACCEPT", destination=subnet_v4))
    if family is IPFamily.V6 and gateway_v6:
        rules.append(Rule(target="ACCEPT", destination=gateway_v6))

    rules.append(Rule(target="ACCEPT", match_set=net_set))
    rules.append(Rule(target="ACCEPT", match_set=host_set))
    rules.append(Rule(target="DROP"))
    return rules


def input_exceptions() -> list[Rule]:
    """INPUT側の最小例外（ループバックと確立済み接続）."""
    return [
        Rule(target="ACCEPT", in_interface=LOOPBACK_IF),
        Rule(target="ACCEPT", states=ESTABLISHED_STATES),
    ]


class EgressChainBuilder:
    """egressチェーンを構築し、OUTPUTチェーンの先頭に1回だけ接続する."""

    def __init__(self, state: FirewallState, chain: str = "EGRESS") -> None:
        """初期化.

        Args:
            state: ファイアウォール状態
            chain: egressチェーン名
        """
        self.state = state
        self.chain = chain

    @property
    def jump_rule(self) -> Rule:
        return Rule(target=self.chain)

    def install(self, family: IPFamily, rules: list[Rule]) -> None:
        """1ファミリー分のチェーンを再構築して接続.

        Args:
            family: アドレスファミリー
            rules: build_egress_rules() の結果

        Raises:
            FirewallError: チェーンの作成・フラッシュ・接続に失敗した場合
        """
        # 1. チェーン作成（既存なら何もしない）→ フラッシュ（追記はしない）
        self.state.ensure_chain(family, self.chain)
        self.state.flush_chain(family, self.chain)

        # 2. ルール追加
        for rule in rules:
            self.state.append_rule(family, self.chain, rule)

        # 3. 既存のOUTPUT→チェーンのジャンプをすべて外してから先頭に挿入
        removed = self.state.remove_rule_all(family, OUTPUT_CHAIN, self.jump_rule)
        self.state.insert_rule(family, OUTPUT_CHAIN, 1, self.jump_rule)

        # 4. INPUT側の例外（存在確認付き追加）
        for rule in input_exceptions():
            self.state.ensure_rule(family, INPUT_CHAIN, rule)

        log_event(
            ComponentType.FIREWALL,
            f"{family.label} egress chain installed",
            chain=self.chain,
            rules=str(len(rules)),
            stale_jumps_removed=str(removed),
        )

    def install_all(self, store: AddressSetStore, network: HostNetwork) -> list[IPFamily]:
        """IPv4 → IPv6 の順にチェーンを導入.

        IPv6のパケットフィルタが無いホストではIPv6をスキップする。

        Returns:
            導入したファミリーのリスト
        """
        installed = []
        for family in (IPFamily.V4, IPFamily.V6):
            if family is IPFamily.V6 and not self.state.available(family):
                log_event(ComponentType.FIREWALL, "ip6tables not available; skipping IPv6")
                continue

            rules = build_egress_rules(
                family,
                net_set=store.net_set(family),
                host_set=store.host_set(family),
                resolvers=network.resolvers_for(family),
                subnet_v4=network.subnet_v4,
                gateway_v6=network.gateway_v6,
            )
            self.install(family, rules)
            installed.append(family)

        log_event(ComponentType.FIREWALL, "Rules installed.")
        return installed
