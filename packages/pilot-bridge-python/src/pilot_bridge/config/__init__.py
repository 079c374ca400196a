"""配置层：默认配置 + YAML overlays + pydantic 校验。"""

from __future__ import annotations

from pilot_bridge.config.defaults import load_default_config_dict
from pilot_bridge.config.loader import BridgeConfig, load_config, load_config_dicts

__all__ = ["BridgeConfig", "load_config", "load_config_dicts", "load_default_config_dict"]
