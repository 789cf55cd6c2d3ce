"""設定管理モジュール - config.ymlの読み込みとバリデーション."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from . import constants

# 許可ドメイン（A/AAAAの両方を解決）
DEFAULT_ALLOWED_DOMAINS = [
    # VS Code Marketplace & CDN
    "marketplace.visualstudio.com",
    "gallery.vsassets.io",
    "gallerycdn.vsassets.io",
    "az764295.vo.msecnd.net",
    "vscode.blob.core.windows.net",
    "update.code.visualstudio.com",
    "code.visualstudio.com",
    "vscode.download.prss.microsoft.com",
    "vscode.cdn.azure.cn",
    # パッケージレジストリ
    "registry.npmjs.org",
    "pypi.org",
    "files.pythonhosted.org",
    # Anthropic
    "api.anthropic.com",
    "sentry.io",
    "statsig.anthropic.com",
    "statsig.com",
    # OpenAI
    "api.openai.com",
    # Context7 MCP
    "mcp.context7.com",
    "context7.com",
    # ツール・ドキュメント
    "taskfile.dev",
    "docs.astral.sh",
    "tamagui.dev",
    "expo.dev",
    "reactnative.dev",
    "typescriptlang.org",
    "refactoring.guru",
    "martinfowler.com",
]


class RangeFeedConfig(BaseModel):
    """外部レンジフィード設定（GitHub meta API）."""

    enabled: bool = Field(default=True, description="CIDRレンジの取得を有効化")
    url: str = Field(default=constants.DEFAULT_RANGE_FEED_URL, description="フィードURL")
    categories: list[str] = Field(
        default_factory=lambda: list(constants.DEFAULT_RANGE_FEED_CATEGORIES),
        description="取り込むカテゴリ（JSONの配列フィールド名）",
    )
    timeout: float = Field(default=10.0, gt=0, description="取得タイムアウト（秒）")


class IPSetNames(BaseModel):
    """ipset名."""

    host_v4: str = Field(default="allowed_ipv4", description="IPv4アドレス（hash:ip）")
    host_v6: str = Field(default="allowed_ipv6", description="IPv6アドレス（hash:ip inet6）")
    net_v4: str = Field(default="allowed_nets", description="IPv4 CIDR（hash:net）")
    net_v6: str = Field(default="allowed_nets_v6", description="IPv6 CIDR（hash:net inet6）")

    @field_validator("host_v4", "host_v6", "net_v4", "net_v6")
    @classmethod
    def validate_ipset_name(cls, v: str) -> str:
        """ipset名のバリデーション（31文字まで）."""
        if not v or len(v) > constants.IPSET_NAME_MAX_LEN:
            raise ValueError(
                f"ipset name must be 1-{constants.IPSET_NAME_MAX_LEN} characters: {v!r}"
            )
        return v


class ProbeTarget(BaseModel):
    """到達性プローブ対象."""

    url: str
    label: str


def _default_probe_targets() -> list[ProbeTarget]:
    return [
        ProbeTarget(
            url="https://marketplace.visualstudio.com/_apis/public/gallery/extensionquery",
            label="VSCode Marketplace",
        ),
        ProbeTarget(
            url="https://update.code.visualstudio.com/api/releases/stable",
            label="VSCode update API",
        ),
        ProbeTarget(url="https://registry.npmjs.org/", label="npm registry"),
        ProbeTarget(url="https://api.github.com/zen", label="GitHub API"),
        ProbeTarget(url="https://api.openai.com/v1/models", label="OpenAI API"),
        ProbeTarget(url="https://context7.com", label="Context7"),
    ]


class VerificationConfig(BaseModel):
    """インストール後の到達性検証設定."""

    enabled: bool = Field(default=True, description="検証を実行")
    connect_timeout: float = Field(default=5.0, gt=0, description="接続タイムアウト（秒）")
    max_time: float = Field(default=10.0, gt=0, description="全体タイムアウト（秒）")
    targets: list[ProbeTarget] = Field(default_factory=_default_probe_targets)


class Config(BaseModel):
    """Egress Firewall 設定."""

    allowed_domains: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_DOMAINS),
        description="許可ドメインリスト",
    )
    range_feed: RangeFeedConfig = Field(default_factory=RangeFeedConfig)
    ipsets: IPSetNames = Field(default_factory=IPSetNames)
    egress_chain: str = Field(default="EGRESS", description="egressチェーン名")
    stub_resolver: str = Field(
        default=constants.DEFAULT_STUB_RESOLVER, description="コンテナ内スタブリゾルバー"
    )
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    audit_dir: str = Field(
        default_factory=constants.get_audit_base_dir,
        description="監査スナップショットの保存先",
    )

    @field_validator("allowed_domains")
    @classmethod
    def normalize_domains(cls, v: list[str]) -> list[str]:
        """ドメインを正規化（空白除去・小文字化・重複除去）."""
        seen: dict[str, None] = {}
        for entry in v:
            domain = entry.strip().lower().rstrip(".")
            if domain:
                seen.setdefault(domain, None)
        return list(seen)

    @field_validator("egress_chain")
    @classmethod
    def validate_chain_name(cls, v: str) -> str:
        """チェーン名のバリデーション（iptablesのチェーン名は28文字まで）."""
        if not v or len(v) > 28 or " " in v:
            raise ValueError(f"Invalid chain name: {v!r}")
        return v

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """YAMLファイルから設定を読み込む."""
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f)

        if data is None:
            data = {}

        return cls(**data)


def load_config(config_path: Path | None = None) -> Config:
    """設定ファイルを読み込む.

    Args:
        config_path: 設定ファイルパス（未指定時は環境変数またはデフォルトパス）

    Returns:
        Config: 読み込んだ設定
    """
    if config_path is None:
        config_path = Path(constants.get_config_path())

    if not config_path.exists():
        # デフォルト設定で初期化
        return Config()

    return Config.from_yaml(config_path)
