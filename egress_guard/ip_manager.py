"""アドレスセット管理モジュール - 許可アドレス/CIDRのipset管理."""

from collections.abc import Iterable
from dataclasses import dataclass

from .config import IPSetNames
from .logger import ComponentType, log_event, log_warning
from .netfilter import FirewallState, IPFamily, SetKind


@dataclass(frozen=True)
class AddressSetSpec:
    """ipset定義."""

    name: str
    kind: SetKind
    family: IPFamily


class AddressSetStore:
    """許可アドレスのipset（host-v4/host-v6/net-v4/net-v6）管理.

    毎回 ensure → flush → add の順で再構築し、前回実行の要素を残さない。
    """

    def __init__(self, state: FirewallState, names: IPSetNames | None = None) -> None:
        """初期化.

        Args:
            state: ファイアウォール状態
            names: ipset名
        """
        self.state = state
        self.names = names or IPSetNames()

    @property
    def specs(self) -> list[AddressSetSpec]:
        return [
            AddressSetSpec(self.names.host_v4, SetKind.HOST, IPFamily.V4),
            AddressSetSpec(self.names.host_v6, SetKind.HOST, IPFamily.V6),
            AddressSetSpec(self.names.net_v4, SetKind.NET, IPFamily.V4),
            AddressSetSpec(self.names.net_v6, SetKind.NET, IPFamily.V6),
        ]

    def host_set(self, family: IPFamily) -> str:
        return self.names.host_v4 if family is IPFamily.V4 else self.names.host_v6

    def net_set(self, family: IPFamily) -> str:
        return self.names.net_v4 if family is IPFamily.V4 else self.names.net_v6

    def ensure(self, name: str, kind: SetKind, family: IPFamily) -> None:
        """ipsetが無ければ作成（冪等）.

        Raises:
            FirewallError: 作成に失敗した場合
        """
        self.state.ensure_set(name, kind, family)

    def flush(self, name: str) -> None:
        """ipsetの全要素を削除.

        Raises:
            FirewallError: フラッシュに失敗した場合
        """
        self.state.flush_set(name)

    def add(self, name: str, element: str) -> bool:
        """要素を追加（重複は成功扱い）.

        Returns:
            追加できた場合True（拒否された要素は警告のみ）
        """
        if self.state.add_to_set(name, element):
            return True
        log_warning(ComponentType.IPSET, f"Could not add {element} to {name}; skipping")
        return False

    def prepare_all(self) -> None:
        """4つのipsetを作成・フラッシュ."""
        for spec in self.specs:
            self.ensure(spec.name, spec.kind, spec.family)
        for spec in self.specs:
            self.flush(spec.name)

        log_event(
            ComponentType.IPSET,
            "Address sets prepared",
            sets=",".join(spec.name for spec in self.specs),
        )

    def populate(self, name: str, elements: Iterable[str]) -> int:
        """ipsetに要素を一括追加.

        Returns:
            追加できた要素数
        """
        added = 0
        for element in elements:
            if self.add(name, element):
                added += 1

        log_event(ComponentType.IPSET, "Address set populated", set=name, count=str(added))
        return added
