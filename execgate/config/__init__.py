"""Configuration module for execgate."""

from execgate.config.loader import load_config, get_config_path
from execgate.config.schema import Config, resolve_agent_runtime, resolve_exec_policy

__all__ = ["Config", "load_config", "get_config_path", "resolve_exec_policy", "resolve_agent_runtime"]
