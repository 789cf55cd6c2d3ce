"""統合ログシステム - リゾルバー、ipset、iptables、監査、検証のログを統一フォーマットで出力."""

import logging
import sys
from enum import Enum
from typing import Any

import structlog


class ComponentType(str, Enum):
    """コンポーネント種別."""

    RESOLVER = "resolver"
    IPSET = "ipset"
    FIREWALL = "firewall"
    AUDIT = "audit"
    VERIFY = "verify"
    SYSTEM = "system"


def _prefix_component(_logger: Any, _method: str, event_dict: dict) -> dict:
    """イベント文字列の先頭に [component] を付与."""
    component = event_dict.pop("component", None)
    if component:
        event_dict["event"] = f"[{component}] {event_dict.get('event', '')}"
    return event_dict


def setup_logging(log_level: str = "INFO") -> None:
    """ログシステムの初期化."""
    # Pythonの標準loggingモジュールの設定
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # structlogの設定
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _prefix_component,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: ComponentType) -> structlog.BoundLogger:
    """コンポーネント別ロガーを取得."""
    logger = structlog.get_logger()
    return logger.bind(component=component.value)


def log_event(component: ComponentType, event: str, **kwargs: str) -> None:
    """コンポーネントイベントログ."""
    logger = get_logger(component)
    logger.info(event, **kwargs)


def log_debug(component: ComponentType, event: str, **kwargs: str) -> None:
    """デバッグログ."""
    logger = get_logger(component)
    logger.debug(event, **kwargs)


def log_system_event(event: str, **kwargs: str) -> None:
    """システムイベントログ."""
    log_event(ComponentType.SYSTEM, event, **kwargs)


def log_warning(component: ComponentType, warning: str, **kwargs: str) -> None:
    """警告ログ（処理は続行される）."""
    logger = get_logger(component)
    logger.warning(f"WARN: {warning}", **kwargs)


def log_error(component: ComponentType, error: str, **kwargs: str) -> None:
    """エラーログ."""
    logger = get_logger(component)
    logger.error(error, **kwargs)


def log_probe_result(label: str, url: str, reachable: bool) -> None:
    """到達性プローブの結果ログ."""
    logger = get_logger(ComponentType.VERIFY)

    if reachable:
        logger.info(f"[ok] {label} reachable", url=url)
    else:
        logger.warning(f"[FAIL] {label} not reachable", url=url)
