"""共通定数定義.

環境変数からオーバーライド可能な設定値を一元管理します。
"""

import os

# 設定ファイルパス
CONFIG_PATH = os.getenv("EGRESS_GUARD_CONFIG", "/etc/egress-guard/config.yml")

# 監査スナップショットの保存先（スクラッチ領域）
AUDIT_BASE_DIR = os.getenv("EGRESS_GUARD_AUDIT_DIR", "/tmp")

# ログレベル
LOG_LEVEL = os.getenv("EGRESS_GUARD_LOG_LEVEL", "INFO")

# パケットフィルタ関連コマンド
IPTABLES_CMD = os.getenv("EGRESS_GUARD_IPTABLES", "iptables")
IP6TABLES_CMD = os.getenv("EGRESS_GUARD_IP6TABLES", "ip6tables")
IPSET_CMD = os.getenv("EGRESS_GUARD_IPSET", "ipset")
IP_CMD = os.getenv("EGRESS_GUARD_IP", "ip")

# Docker内蔵DNS（コンテナ内のスタブリゾルバー）
DEFAULT_STUB_RESOLVER = "127.0.0.11"

# 外部レンジフィード（GitHub meta API）
DEFAULT_RANGE_FEED_URL = "https://api.github.com/meta"
DEFAULT_RANGE_FEED_CATEGORIES = ["web", "api", "git"]
RANGE_FEED_PROVENANCE = "external-range-feed"

# ipset名は31文字まで
IPSET_NAME_MAX_LEN = 31

# 外部コマンドのタイムアウト（秒）
COMMAND_TIMEOUT = int(os.getenv("EGRESS_GUARD_COMMAND_TIMEOUT", "30"))


def get_config_path(override: str | None = None) -> str:
    """設定ファイルパスを取得.

    Args:
        override: オーバーライドするパス（テスト用）

    Returns:
        設定ファイルパス
    """
    return override or CONFIG_PATH


def get_audit_base_dir(override: str | None = None) -> str:
    """監査スナップショットの保存先を取得.

    Args:
        override: オーバーライドするパス（テスト用）

    Returns:
        保存先ディレクトリ
    """
    return override or AUDIT_BASE_DIR
