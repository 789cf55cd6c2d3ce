"""監査モジュール - 実行前後のファイアウォール状態スナップショットと差分出力."""

import contextlib
import difflib
import tempfile
from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path

from .logger import ComponentType, log_debug, log_event, log_warning
from .netfilter import FirewallError, FirewallState, IPFamily

BEFORE = "before"
AFTER = "after"

# (差分見出し, アーティファクト名, 前スナップショットが無い場合も出力するか)
DIFF_SECTIONS = [
    ("iptables v4", "iptables", True),
    ("ip6tables v6", "ip6tables", False),
    ("ipset", "ipset", False),
]


def clean_dump(text: str) -> str:
    """save形式のダンプからコメント行とCOMMIT行を除去."""
    lines = [
        line for line in text.splitlines() if not line.startswith("#") and line != "COMMIT"
    ]
    return "\n".join(lines) + ("\n" if lines else "")


class AuditRecorder:
    """ファイアウォールとipsetの状態を実行前後で記録する.

    スナップショットはタイムスタンプ付きの一意なディレクトリに保存され、
    プロセス終了後も残る。個々のキャプチャ失敗は無視する（該当ファイルが無いだけ）。
    """

    def __init__(
        self,
        state: FirewallState,
        base_dir: str | Path = "/tmp",
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """初期化.

        Args:
            state: ファイアウォール状態
            base_dir: スナップショットの保存先
            now: 現在時刻（テスト用）
        """
        self.state = state
        Path(base_dir).mkdir(parents=True, exist_ok=True)
        stamp = now().strftime("%Y%m%d-%H%M%S")
        self.snapshot_dir = Path(tempfile.mkdtemp(prefix=f"fw-audit-{stamp}-", dir=base_dir))
        self.last_diff: str | None = None

    def _raw_captures(self) -> dict[str, Callable[[], str]]:
        return {
            "iptables": lambda: self.state.save_rules(IPFamily.V4),
            "ip6tables": lambda: self.state.save_rules(IPFamily.V6),
            "ipset": self.state.save_sets,
        }

    def _list_captures(self) -> dict[str, Callable[[], str]]:
        return {
            "iptables": lambda: self.state.list_rules(IPFamily.V4),
            "ip6tables": lambda: self.state.list_rules(IPFamily.V6),
            "nat": lambda: self.state.list_rules(IPFamily.V4, "nat"),
            "mangle": lambda: self.state.list_rules(IPFamily.V4, "mangle"),
        }

    @staticmethod
    def _capture(name: str, fn: Callable[[], str]) -> str | None:
        """キャプチャを実行（失敗時はNone）."""
        try:
            return fn()
        except (FirewallError, UnicodeDecodeError) as e:
            log_debug(ComponentType.AUDIT, f"Capture skipped: {name}", error=str(e))
            return None

    @staticmethod
    def _write(path: Path, text: str) -> bool:
        """アーティファクトを書き込む（失敗時は警告のみ）."""
        try:
            path.write_text(text, encoding="utf-8")
        except OSError as e:
            log_warning(ComponentType.AUDIT, f"Could not write {path.name}", error=str(e))
            return False
        return True

    def snapshot(self, label: str) -> list[Path]:
        """状態をキャプチャしてファイルに保存.

        Args:
            label: "before" / "after"

        Returns:
            書き込んだファイルのリスト
        """
        written = []

        for name, fn in self._raw_captures().items():
            output = self._capture(f"{name}.{label}.raw", fn)
            if output is None:
                continue
            raw = self.snapshot_dir / f"{name}.{label}.raw"
            if self._write(raw, output):
                written.append(raw)
            clean = self.snapshot_dir / f"{name}.{label}.clean"
            if self._write(clean, clean_dump(output)):
                written.append(clean)

        for name, fn in self._list_captures().items():
            output = self._capture(f"{name}.{label}.list", fn)
            if output is None:
                continue
            listing = self.snapshot_dir / f"{name}.{label}.list"
            if self._write(listing, output):
                written.append(listing)

        return written

    def _read_clean(self, name: str, label: str) -> list[str]:
        path = self.snapshot_dir / f"{name}.{label}.clean"
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []

    def diff(self) -> str:
        """before/after の差分レポートを生成."""
        report = []

        for title, name, always in DIFF_SECTIONS:
            if not always and not (self.snapshot_dir / f"{name}.{BEFORE}.clean").exists():
                continue

            report.append(f"===== Diff ({title}) =====")
            report.extend(
                difflib.unified_diff(
                    self._read_clean(name, BEFORE),
                    self._read_clean(name, AFTER),
                    fromfile=f"{name}.{BEFORE}.clean",
                    tofile=f"{name}.{AFTER}.clean",
                    lineterm="",
                )
            )

        report.append(f"Snapshots and listings saved under: {self.snapshot_dir}")
        return "\n".join(report) + "\n"

    def show_diff(self) -> str:
        """差分レポートを標準出力に表示し、diff.txtとしても保存."""
        self.last_diff = self.diff()
        self._write(self.snapshot_dir / "diff.txt", self.last_diff)
        print(self.last_diff, end="", flush=True)
        return self.last_diff

    @contextlib.contextmanager
    def session(self) -> Iterator["AuditRecorder"]:
        """前スナップショットを取得し、終了時に必ず後スナップショットと差分を出力.

        ブロック内で例外が発生した場合も後処理を実行し、例外はそのまま伝播する。
        """
        log_event(ComponentType.AUDIT, "Capturing baseline firewall state...")
        self.snapshot(BEFORE)
        try:
            yield self
        finally:
            log_event(ComponentType.AUDIT, "Capturing post-change firewall state...")
            self.snapshot(AFTER)
            self.show_diff()
