"""Egress Firewall - メインエントリーポイント."""

import signal
import sys
import traceback
from pathlib import Path

from . import constants
from .config import load_config
from .logger import setup_logging
from .netfilter import FirewallError
from .orchestrator import FirewallInitializer


def _handle_sigterm(signum, frame) -> None:
    """SIGTERMをSystemExitに変換（監査の後処理を実行させるため）."""
    sys.exit(128 + signum)


def main() -> None:
    """メイン関数."""
    setup_logging(constants.LOG_LEVEL)
    signal.signal(signal.SIGTERM, _handle_sigterm)

    # 設定ファイルパス
    config_path = Path(constants.get_config_path())

    try:
        config = load_config(config_path)
        initializer = FirewallInitializer(config=config)
        # 検証結果は終了コードに影響しない
        initializer.run()
    except KeyboardInterrupt:
        print("\n\nInterrupted... exiting", file=sys.stderr)
        sys.exit(130)
    except FirewallError as e:
        print(f"Rule installation failed: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
