"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）；
- 所有配置均为进程级常量：加载一次，运行期不做热更新。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from pilot_bridge.config.defaults import load_default_config_dict


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class BrokerConfig(BaseModel):
    """
    broker 侧配置（绑定地址、超时与各类上限）。

    说明：
    - `max_queue` 限制“尚未被 host 取走”的请求数；
    - `max_pending` 限制“尚未得到结果”的请求数（包含已取走未回复的）；
    - `max_body_bytes` 在 transport 边界生效，独立于上面两个上限。
    """

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="127.0.0.1", min_length=1)
    port: int = Field(default=38451, ge=0, le=65535)
    default_timeout_ms: int = Field(default=10_000, ge=1)
    max_timeout_ms: int = Field(default=600_000, ge=1)
    health_ttl_ms: int = Field(default=15_000, ge=1)
    max_queue: int = Field(default=100, ge=1)
    max_pending: int = Field(default=100, ge=1)
    max_body_bytes: int = Field(default=1_000_000, ge=1)

    @model_validator(mode="after")
    def _check_timeout_bounds(self) -> "BrokerConfig":
        """默认超时不得超过超时上限。"""

        if self.default_timeout_ms > self.max_timeout_ms:
            raise ValueError(
                f"broker.default_timeout_ms ({self.default_timeout_ms}) must not exceed "
                f"broker.max_timeout_ms ({self.max_timeout_ms})"
            )
        return self


class ClientConfig(BaseModel):
    """delegate 侧（HTTP 代理到已存在 broker）配置。"""

    model_config = ConfigDict(extra="forbid")

    connect_timeout_ms: int = Field(default=1_000, ge=1)
    # 读超时 = operation 超时 + grace，保证 broker 先给出 timeout 结果
    timeout_grace_ms: int = Field(default=5_000, ge=0)


class HostConfig(BaseModel):
    """参考 host executor 的轮询节奏。"""

    model_config = ConfigDict(extra="forbid")

    poll_interval_ms: int = Field(default=500, ge=1)


class LoggingConfig(BaseModel):
    """CLI 日志级别。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class BridgeConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def base_url(self) -> str:
        """broker 的 HTTP base url（delegate 与 host 使用）。"""

        return f"http://{self.broker.host}:{self.broker.port}"


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]], *, include_defaults: bool = True) -> BridgeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `BridgeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否以内置 `default.yaml` 作为最底层
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return BridgeConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> BridgeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `BridgeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    return load_config_dicts([_load_yaml_file(Path(p)) for p in config_paths])
