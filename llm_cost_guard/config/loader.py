"""
Configuration management and loading.

Loads Guard settings (budget rules, pricing overrides, kill and unknown-model
policies) from a YAML file.
"""

import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from ..core.guard import GuardConfig, UnknownModelPolicy
from ..core.guardrails import BudgetRule, ScopeBy
from ..core.pricing import ModelPricing

CONFIG_ENV_VAR = "LLM_COST_GUARD_CONFIG"

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d|w)\s*$")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_window(value: Union[int, float, str], path: str = "window") -> timedelta:
    """Parse a window given as seconds or as a duration string like ``24h``.

    Raises:
        ValueError: If the value is not a positive duration
    """
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number of seconds or a duration string")
    if isinstance(value, (int, float)):
        window = timedelta(seconds=value)
    elif isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if not match:
            raise ValueError(f"'{path}' must look like 90s, 15m, 24h or 7d, got {value!r}")
        window = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    else:
        raise ValueError(f"'{path}' must be a number of seconds or a duration string")

    if window <= timedelta(0):
        raise ValueError(f"'{path}' must be > 0")
    return window


def load_guard_config(path: str) -> GuardConfig:
    """Load and validate Guard configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig (in-memory storage, wall-clock time)

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Guard config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    return parse_guard_config(raw_config)


def parse_guard_config(raw_config: Dict[str, Any]) -> GuardConfig:
    """Validate an already-parsed configuration mapping."""
    allowed_top_keys = {'budgets', 'pricing', 'throw_on_kill', 'on_unknown_model'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'budgets' not in raw_config:
        raise ValueError("Missing required 'budgets' section")

    budgets_data = raw_config['budgets'] or []
    if not isinstance(budgets_data, list):
        raise ValueError("'budgets' must be a list")

    budgets: List[BudgetRule] = []
    for index, rule_data in enumerate(budgets_data):
        if not isinstance(rule_data, dict):
            raise ValueError(f"budgets[{index}] must be a dictionary")
        budgets.append(_parse_budget_rule(rule_data, f"budgets[{index}]"))

    pricing_data = raw_config.get('pricing') or {}
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")

    pricing = {}
    for model, price_data in pricing_data.items():
        if not isinstance(price_data, dict):
            raise ValueError(f"Pricing for '{model}' must be a dictionary")
        pricing[str(model)] = _parse_model_pricing(price_data, f"pricing.{model}")

    throw_on_kill = raw_config.get('throw_on_kill', True)
    if not isinstance(throw_on_kill, bool):
        raise ValueError("'throw_on_kill' must be true or false")

    policy_str = raw_config.get('on_unknown_model', UnknownModelPolicy.ERROR.value)
    try:
        on_unknown_model = UnknownModelPolicy(str(policy_str).lower())
    except ValueError:
        valid_policies = [policy.value for policy in UnknownModelPolicy]
        raise ValueError(f"'on_unknown_model' must be one of: {valid_policies}")

    return GuardConfig(
        budgets=budgets,
        pricing=pricing or None,
        throw_on_kill=throw_on_kill,
        on_unknown_model=on_unknown_model,
    )


def _parse_budget_rule(data: Dict, path: str) -> BudgetRule:
    """Parse and validate one budget rule.

    Args:
        data: Budget rule data
        path: Path for error messages

    Returns:
        Validated BudgetRule

    Raises:
        ValueError: If the rule is invalid
    """
    allowed_keys = {'id', 'limit_usd', 'window', 'model', 'user_id', 'feature', 'scope_by', 'kill_switch'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'limit_usd' not in data:
        raise ValueError(f"Missing required 'limit_usd' in {path}")
    limit = data['limit_usd']
    if isinstance(limit, bool) or not isinstance(limit, (int, float)) or limit <= 0:
        raise ValueError(f"'limit_usd' in {path} must be > 0")

    if 'window' not in data:
        raise ValueError(f"Missing required 'window' in {path}")
    window = parse_window(data['window'], f"{path}.window")

    for key in ('id', 'model', 'user_id', 'feature'):
        if key in data and data[key] is not None and not isinstance(data[key], str):
            raise ValueError(f"'{key}' in {path} must be a string")

    scope_str = data.get('scope_by', ScopeBy.GLOBAL.value)
    try:
        scope_by = ScopeBy(str(scope_str).lower())
    except ValueError:
        valid_scopes = [scope.value for scope in ScopeBy]
        raise ValueError(f"'scope_by' in {path} must be one of: {valid_scopes}")

    kill_switch = data.get('kill_switch', True)
    if not isinstance(kill_switch, bool):
        raise ValueError(f"'kill_switch' in {path} must be true or false")

    return BudgetRule(
        id=data.get('id'),
        limit_usd=float(limit),
        window=window,
        model=data.get('model'),
        user_id=data.get('user_id'),
        feature=data.get('feature'),
        scope_by=scope_by,
        kill_switch=kill_switch,
    )


def _parse_model_pricing(data: Dict, path: str) -> ModelPricing:
    """Parse and validate one pricing override."""
    allowed_keys = {'input_per_million_usd', 'output_per_million_usd'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    prices = {}
    for key in sorted(allowed_keys):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"'{key}' in {path} must be >= 0")
        prices[key] = float(value)

    return ModelPricing(**prices)
