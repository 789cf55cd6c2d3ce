"""パケットフィルタ抽象化モジュール - iptables/ip6tables/ipsetへのアクセスを一元化.

ルールチェーンとipsetはプロセス外の共有状態のため、コアロジックは
``NetfilterAccessor`` インターフェース経由でのみ操作する。
本番では ``CommandAccessor``（subprocess経由のコマンド実行）、
テストではインメモリ実装に差し替える。
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from . import constants
from .logger import ComponentType, log_debug


class FirewallError(RuntimeError):
    """パケットフィルタの構造的な操作（作成・フラッシュ・接続）の失敗."""

    def __init__(self, cmd: list[str], stderr: str = ""):
        self.cmd = cmd
        self.stderr = stderr.strip()
        super().__init__(f"Command failed: {' '.join(cmd)}: {self.stderr}")


class IPFamily(str, Enum):
    """アドレスファミリー（ipsetのfamily名を値に持つ）."""

    V4 = "inet"
    V6 = "inet6"

    @property
    def label(self) -> str:
        return "IPv4" if self is IPFamily.V4 else "IPv6"

    @classmethod
    def of(cls, address: str) -> "IPFamily":
        """アドレス/CIDR文字列からファミリーを判定（コロンを含めばIPv6）."""
        return cls.V6 if ":" in address else cls.V4


class SetKind(str, Enum):
    """ipsetの要素種別."""

    HOST = "hash:ip"
    NET = "hash:net"


@dataclass(frozen=True)
class Rule:
    """iptablesルール（マッチ条件 + ターゲット）.

    ターゲットは ACCEPT / DROP、または別チェーン名（ジャンプ）。
    """

    target: str
    in_interface: str | None = None
    out_interface: str | None = None
    states: tuple[str, ...] = ()
    protocol: str | None = None
    destination: str | None = None
    dport: int | None = None
    match_set: str | None = None

    def to_args(self) -> list[str]:
        """iptables引数リストに変換."""
        args: list[str] = []
        if self.in_interface:
            args += ["-i", self.in_interface]
        if self.out_interface:
            args += ["-o", self.out_interface]
        if self.states:
            args += ["-m", "state", "--state", ",".join(self.states)]
        if self.protocol:
            args += ["-p", self.protocol]
        if self.destination:
            args += ["-d", self.destination]
        if self.dport is not None:
            args += ["--dport", str(self.dport)]
        if self.match_set:
            args += ["-m", "set", "--match-set", self.match_set, "dst"]
        args += ["-j", self.target]
        return args

    def render(self, chain: str) -> str:
        """iptables-save形式の1行に変換."""
        return " ".join(["-A", chain, *self.to_args()])


class NetfilterAccessor(ABC):
    """パケットフィルタへの低レベル操作インターフェース.

    構造的な操作は失敗時に FirewallError を送出する。
    """

    @abstractmethod
    def available(self, family: IPFamily) -> bool:
        """ファミリーのパケットフィルタ（filterテーブル）が利用可能か."""

    @abstractmethod
    def new_chain(self, family: IPFamily, chain: str) -> None:
        """チェーンを作成（既存の場合はエラーにしない）."""

    @abstractmethod
    def flush_chain(self, family: IPFamily, chain: str) -> None:
        """チェーン内の全ルールを削除."""

    @abstractmethod
    def append_rule(self, family: IPFamily, chain: str, rule: Rule) -> None:
        """チェーン末尾にルールを追加."""

    @abstractmethod
    def insert_rule(self, family: IPFamily, chain: str, position: int, rule: Rule) -> None:
        """指定位置（1始まり）にルールを挿入."""

    @abstractmethod
    def delete_rule(self, family: IPFamily, chain: str, rule: Rule) -> bool:
        """一致するルールを1件削除（存在しない場合はFalse）."""

    @abstractmethod
    def check_rule(self, family: IPFamily, chain: str, rule: Rule) -> bool:
        """一致するルールが存在するか."""

    @abstractmethod
    def create_set(self, name: str, kind: SetKind, family: IPFamily) -> None:
        """ipsetを作成（既存の場合はエラーにしない）."""

    @abstractmethod
    def flush_set(self, name: str) -> None:
        """ipsetの全要素を削除."""

    @abstractmethod
    def add_to_set(self, name: str, element: str) -> bool:
        """ipsetに要素を追加（重複は成功扱い、拒否された場合はFalse）."""

    @abstractmethod
    def save_rules(self, family: IPFamily) -> str:
        """iptables-save / ip6tables-save の出力."""

    @abstractmethod
    def list_rules(self, family: IPFamily, table: str = "filter") -> str:
        """人間向けのルール一覧（-L -n -v --line-numbers）."""

    @abstractmethod
    def save_sets(self) -> str:
        """ipset save の出力."""


class CommandAccessor(NetfilterAccessor):
    """iptables/ip6tables/ipsetコマンドをsubprocessで実行する実装."""

    def __init__(
        self,
        iptables_cmd: str | None = None,
        ip6tables_cmd: str | None = None,
        ipset_cmd: str | None = None,
    ) -> None:
        self.iptables_cmd = iptables_cmd or constants.IPTABLES_CMD
        self.ip6tables_cmd = ip6tables_cmd or constants.IP6TABLES_CMD
        self.ipset_cmd = ipset_cmd or constants.IPSET_CMD

    def _tables_cmd(self, family: IPFamily) -> str:
        return self.iptables_cmd if family is IPFamily.V4 else self.ip6tables_cmd

    def _run_command(self, cmd: list[str]) -> str:
        """コマンドを実行.

        Args:
            cmd: コマンドリスト

        Returns:
            標準出力

        Raises:
            FirewallError: コマンドが失敗した場合
        """
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=constants.COMMAND_TIMEOUT,
            )
            return result.stdout
        except subprocess.CalledProcessError as e:
            # "already exists" エラーは無視（作成操作で既存の場合）
            if "already" in (e.stderr or "").lower():
                return ""
            raise FirewallError(cmd, e.stderr or "") from e
        except FileNotFoundError as e:
            raise FirewallError(cmd, f"Command not found: {cmd[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise FirewallError(cmd, "timed out") from e

    def _try_command(self, cmd: list[str]) -> bool:
        """失敗が想定されるコマンド（-C / -D 等）を実行し、成否のみ返す."""
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=constants.COMMAND_TIMEOUT,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
        if result.returncode != 0:
            log_debug(
                ComponentType.FIREWALL,
                "Command returned non-zero",
                cmd=" ".join(cmd),
                stderr=(result.stderr or "").strip(),
            )
        return result.returncode == 0

    def available(self, family: IPFamily) -> bool:
        # バイナリの有無ではなくfilterテーブルを初期化できるかで判定
        return self._try_command([self._tables_cmd(family), "-t", "filter", "-S"])

    def new_chain(self, family: IPFamily, chain: str) -> None:
        self._run_command([self._tables_cmd(family), "-N", chain])

    def flush_chain(self, family: IPFamily, chain: str) -> None:
        self._run_command([self._tables_cmd(family), "-F", chain])

    def append_rule(self, family: IPFamily, chain: str, rule: Rule) -> None:
        self._run_command([self._tables_cmd(family), "-A", chain, *rule.to_args()])

    def insert_rule(self, family: IPFamily, chain: str, position: int, rule: Rule) -> None:
        self._run_command(
            [self._tables_cmd(family), "-I", chain, str(position), *rule.to_args()]
        )

    def delete_rule(self, family: IPFamily, chain: str, rule: Rule) -> bool:
        return self._try_command([self._tables_cmd(family), "-D", chain, *rule.to_args()])

    def check_rule(self, family: IPFamily, chain: str, rule: Rule) -> bool:
        return self._try_command([self._tables_cmd(family), "-C", chain, *rule.to_args()])

    def create_set(self, name: str, kind: SetKind, family: IPFamily) -> None:
        self._run_command(
            [self.ipset_cmd, "create", name, kind.value, "family", family.value, "timeout", "0"]
        )

    def flush_set(self, name: str) -> None:
        self._run_command([self.ipset_cmd, "flush", name])

    def add_to_set(self, name: str, element: str) -> bool:
        # -exist: 既存要素の追加はエラーにしない
        return self._try_command([self.ipset_cmd, "add", name, element, "-exist"])

    def save_rules(self, family: IPFamily) -> str:
        return self._run_command([f"{self._tables_cmd(family)}-save"])

    def list_rules(self, family: IPFamily, table: str = "filter") -> str:
        return self._run_command(
            [self._tables_cmd(family), "-t", table, "-L", "-n", "-v", "--line-numbers"]
        )

    def save_sets(self) -> str:
        return self._run_command([self.ipset_cmd, "save"])


class FirewallState:
    """ホスト上のルールチェーン/ipset状態を表すリソース.

    アクセサの上に冪等な操作（作成・接続解除・存在確認付き追加）を提供する。
    """

    def __init__(self, accessor: NetfilterAccessor | None = None) -> None:
        self.accessor = accessor or CommandAccessor()

    def available(self, family: IPFamily) -> bool:
        return self.accessor.available(family)

    # ---- ipset ----

    def ensure_set(self, name: str, kind: SetKind, family: IPFamily) -> None:
        self.accessor.create_set(name, kind, family)

    def flush_set(self, name: str) -> None:
        self.accessor.flush_set(name)

    def add_to_set(self, name: str, element: str) -> bool:
        return self.accessor.add_to_set(name, element)

    # ---- チェーン ----

    def ensure_chain(self, family: IPFamily, chain: str) -> None:
        self.accessor.new_chain(family, chain)

    def flush_chain(self, family: IPFamily, chain: str) -> None:
        self.accessor.flush_chain(family, chain)

    def append_rule(self, family: IPFamily, chain: str, rule: Rule) -> None:
        self.accessor.append_rule(family, chain, rule)

    def insert_rule(self, family: IPFamily, chain: str, position: int, rule: Rule) -> None:
        self.accessor.insert_rule(family, chain, position, rule)

    def remove_rule_all(self, family: IPFamily, chain: str, rule: Rule) -> int:
        """一致するルールをすべて削除（存在しない場合も成功）.

        Returns:
            削除した件数
        """
        removed = 0
        # 複数存在する可能性があるため、削除に失敗するまで繰り返す
        while self.accessor.delete_rule(family, chain, rule):
            removed += 1
        return removed

    def ensure_rule(self, family: IPFamily, chain: str, rule: Rule) -> bool:
        """ルールが無い場合のみ末尾に追加.

        Returns:
            追加した場合True
        """
        if self.accessor.check_rule(family, chain, rule):
            return False
        self.accessor.append_rule(family, chain, rule)
        return True

    # ---- 監査用ダンプ ----

    def save_rules(self, family: IPFamily) -> str:
        return self.accessor.save_rules(family)

    def list_rules(self, family: IPFamily, table: str = "filter") -> str:
        return self.accessor.list_rules(family, table)

    def save_sets(self) -> str:
        return self.accessor.save_sets()
