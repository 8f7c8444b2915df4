"""
Configuration loading for LLM Cost Guard.
"""

from .loader import CONFIG_ENV_VAR, load_guard_config, parse_guard_config, parse_window

__all__ = ["CONFIG_ENV_VAR", "load_guard_config", "parse_guard_config", "parse_window"]
