"""
CodeAct Config - YAML configuration loading
"""

from .loader import (
    EngineConfig,
    LLMSettings,
    LoopSettings,
    TimeoutSettings,
    PortSettings,
    RuntimeSettings,
    PlanningSettings,
    ToolSettings,
    load_config,
    load_config_dict,
    substitute_env,
)

__all__ = [
    "EngineConfig",
    "LLMSettings",
    "LoopSettings",
    "TimeoutSettings",
    "PortSettings",
    "RuntimeSettings",
    "PlanningSettings",
    "ToolSettings",
    "load_config",
    "load_config_dict",
    "substitute_env",
]
