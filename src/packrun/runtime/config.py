"""packrun.runtime.config -- packrun 配置加载。

配置合并（低 → 高优先级）：
1. 内置默认值
2. ~/.packrun/config.json    (用户级)
3. .packrun/config.json      (项目级覆盖)
4. 环境变量 PORT / PACKRUN_PORT / PACKRUN_HOST
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

from mutagent.config import Config

logger = logging.getLogger(__name__)

PACKRUN_USER_DIR = Path.home() / ".packrun"

PACKRUN_CONFIG_FILES = [
    "~/.packrun/config.json",    # 用户级
    ".packrun/config.json",      # 项目级（最高）
]

DEFAULT_TEST_NAMES = ["Alex", "Sam", "Jordan", "Taylor", "Casey", "Riley"]

DEFAULTS: dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 3001},
    "cors": {"origins": ["*"]},
    "runners": {
        "stale_timeout": 0,         # 秒；0 表示不清理长时间无更新的 runner
        "sweep_interval": 5,
        "purge_test_runners": True,
        "test_names": DEFAULT_TEST_NAMES,
    },
    "logging": {"dir": "~/.packrun/logs", "file": True, "store_level": "INFO"},
}


class LayeredConfig(Config):
    """多层 JSON 合并后的只读配置。"""

    _data: dict

    def get(self, name: str, *, default: Any = None) -> Any:
        """点分路径导航 _data。"""
        node = self._data
        for key in name.split("."):
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node


def _deep_merge(base: dict, override: Mapping) -> dict:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _read_layer(path: str) -> dict:
    p = Path(path).expanduser()
    if not p.is_file():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Skipping unreadable config %s: %s", p, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Skipping config %s: top level is not an object", p)
        return {}
    return data


def _env_overrides(env: Mapping[str, str]) -> dict:
    server: dict[str, Any] = {}
    port = env.get("PACKRUN_PORT") or env.get("PORT")
    if port:
        try:
            server["port"] = int(port)
        except ValueError:
            logger.warning("Ignoring non-numeric port %r", port)
    if env.get("PACKRUN_HOST"):
        server["host"] = env["PACKRUN_HOST"]
    return {"server": server} if server else {}


def build_config(*layers: Mapping) -> LayeredConfig:
    """从默认值和给定的 dict 层构建配置（测试与 load 共用）。"""
    data = copy.deepcopy(DEFAULTS)
    for layer in layers:
        _deep_merge(data, layer)
    return LayeredConfig(_data=data)


def load_packrun_config(
    paths: list[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> LayeredConfig:
    """加载 packrun 配置（文件层 + 环境变量）。"""
    files = PACKRUN_CONFIG_FILES if paths is None else paths
    layers = [_read_layer(p) for p in files]
    layers.append(_env_overrides(os.environ if env is None else env))
    return build_config(*layers)
