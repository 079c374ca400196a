"""
Bootstrap Layer（配置发现/env 覆盖/来源追踪）。

设计目标：
- 保持 broker 核心无隐式 I/O：`CorrelationEngine`/`BrokerServer` 只接收已解析的 `BridgeConfig`；
- CLI 与嵌入方复用同一套解析顺序，便于排障（`sources` 记录每个被覆盖字段的来源）。

解析顺序（后者覆盖前者）：
1) 内置默认配置 `assets/default.yaml`
2) `PILOT_BRIDGE_CONFIG_PATHS`（逗号/分号分隔的 YAML overlays）
3) 显式传入的 overlays（CLI `--config`）
4) 环境变量覆盖（`PILOT_BRIDGE_HOST` 等）
5) 显式 overrides（CLI `--host/--port`）
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from pilot_bridge.config.loader import BridgeConfig, _deep_merge, _load_yaml_file, load_config_dicts

# (env key, dotted config path, 是否整数)
_ENV_OVERRIDES: Tuple[Tuple[str, str, bool], ...] = (
    ("PILOT_BRIDGE_HOST", "broker.host", False),
    ("PILOT_BRIDGE_PORT", "broker.port", True),
    ("PILOT_BRIDGE_TIMEOUT_MS", "broker.default_timeout_ms", True),
    ("PILOT_BRIDGE_HEALTH_TTL_MS", "broker.health_ttl_ms", True),
    ("PILOT_BRIDGE_MAX_QUEUE", "broker.max_queue", True),
    ("PILOT_BRIDGE_MAX_PENDING", "broker.max_pending", True),
    ("PILOT_BRIDGE_MAX_BODY_BYTES", "broker.max_body_bytes", True),
    ("PILOT_BRIDGE_LOG_LEVEL", "logging.level", False),
)


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    - env：env 映射（缺省读取 `os.environ`）
    """

    v = (os.environ if env is None else env).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白与空项，保序）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def _nest(dotted: str, value: Any) -> Dict[str, Any]:
    """把 `a.b.c` 与值展开为嵌套 dict（用于 overlay 合并）。"""

    keys = dotted.split(".")
    obj: Dict[str, Any] = {keys[-1]: value}
    for k in reversed(keys[:-1]):
        obj = {k: obj}
    return obj


@dataclass(frozen=True)
class ResolvedConfig:
    """
    bootstrap 解析结果。

    字段：
    - config：最终生效的 `BridgeConfig`
    - overlay_paths：参与合并的 overlay 文件（字符串化，保序）
    - sources：被覆盖字段的来源（例如 `broker.port` -> `env:PILOT_BRIDGE_PORT`）
    """

    config: BridgeConfig
    overlay_paths: list[str]
    sources: Dict[str, str]


def discover_overlay_paths(*, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """从 `PILOT_BRIDGE_CONFIG_PATHS` 发现 overlay 路径（相对路径按 cwd 解析，去重保序）。"""

    raw = _get_env_nonempty("PILOT_BRIDGE_CONFIG_PATHS", env=env) or ""
    seen: set[Path] = set()
    out: list[Path] = []
    for p in _split_paths(raw):
        pp = Path(p).expanduser().resolve()
        if pp in seen:
            continue
        seen.add(pp)
        out.append(pp)
    return out


def resolve_config(
    *,
    config_paths: Optional[Sequence[Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ResolvedConfig:
    """
    解析有效配置（overrides > env > overlays > 默认值），并返回来源追踪。

    参数：
    - config_paths：显式 overlay 路径（CLI `--config`）
    - env：环境变量映射（缺省读取 `os.environ`；测试可注入）
    - overrides：dotted key -> 值（值为 None 的项忽略）

    异常：
    - FileNotFoundError / ValueError：overlay 缺失或根节点不是 mapping；整数型 env 值不可解析
    - pydantic.ValidationError：合并结果不满足 schema
    """

    paths = discover_overlay_paths(env=env) + [Path(p).expanduser().resolve() for p in (config_paths or [])]
    layers: list[Dict[str, Any]] = [_load_yaml_file(p) for p in paths]
    sources: Dict[str, str] = {}

    env_layer: Dict[str, Any] = {}
    for key, dotted, is_int in _ENV_OVERRIDES:
        raw = _get_env_nonempty(key, env=env)
        if raw is None:
            continue
        value: Any = raw
        if is_int:
            try:
                value = int(raw)
            except ValueError:
                raise ValueError(f"{key} must be an integer; got: {raw!r}") from None
        elif dotted == "logging.level":
            value = raw.upper()
        _deep_merge(env_layer, _nest(dotted, value))
        sources[dotted] = f"env:{key}"
    layers.append(env_layer)

    cli_layer: Dict[str, Any] = {}
    for dotted, value in (overrides or {}).items():
        if value is None:
            continue
        _deep_merge(cli_layer, _nest(dotted, value))
        sources[dotted] = "override"
    layers.append(cli_layer)

    cfg = load_config_dicts(layers)
    return ResolvedConfig(config=cfg, overlay_paths=[str(p) for p in paths], sources=sources)
