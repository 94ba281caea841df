"""設定読み込み

config/config.yaml を読み込み、組み込みデフォルトに上書きマージする。
ファイルが無い場合はデフォルトのみで動作する。
秘密情報（暗号鍵等）は config/.env → 環境変数で渡す。
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

_PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = _PROJECT_ROOT / "config" / "config.yaml"
ENV_PATH = _PROJECT_ROOT / "config" / ".env"

DEFAULT_CONFIG: Dict[str, Any] = {
    "http": {
        "timeout": 30.0,
        "max_retries": 3,
        "backoff_base": 1.0,
        "backoff_cap": 30.0,
    },
    "pagination": {
        "rate_limit_threshold": 10,
        "min_delay": 0.5,
        "burst_delay": 0.2,
    },
    "marketplaces": {
        "amazon": {
            "region": "na",
            "token_url": "https://api.amazon.com/auth/o2/token",
            "batch_concurrency": 5,
            "max_page_size": 100,
        },
        "shopify": {
            "api_version": "2024-01",
            "max_page_size": 250,
        },
        "takealot": {
            "base_url": "https://seller-api.takealot.com",
            "max_page_size": 100,
            "batch_threshold": 5,
            "batch_poll_interval": 5.0,
            "batch_poll_attempts": 12,
        },
    },
    "shipping": {
        "dhl": {
            "base_url": "https://express.api.dhl.com/mydhlapi",
            "test_url": "https://express.api.dhl.com/mydhlapi/test",
        },
        "fedex": {
            "base_url": "https://apis.fedex.com",
            "test_url": "https://apis-sandbox.fedex.com",
        },
    },
    "database": {
        "path": None,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """ネストしたdictを再帰的にマージ（overrideが優先）"""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """config.yamlを読み込み、デフォルトとマージして返す"""
    config_path = Path(path) if path else CONFIG_PATH
    try:
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except FileNotFoundError:
        loaded = {}
    return _deep_merge(DEFAULT_CONFIG, loaded)


def section(config: Optional[Dict[str, Any]], *keys: str) -> Dict[str, Any]:
    """config["marketplaces"]["amazon"] のようなネスト値を安全に取得"""
    node: Any = config if config is not None else DEFAULT_CONFIG
    for key in keys:
        if not isinstance(node, dict):
            return {}
        node = node.get(key, {})
    return node if isinstance(node, dict) else {}


def database_path(config: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """DBパス: 環境変数ECSYNC_DB_PATH > config.yaml > デフォルト(None)"""
    env_path = os.environ.get("ECSYNC_DB_PATH")
    if env_path:
        return env_path
    return section(config, "database").get("path")
