"""
VM Cost Collector - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (VMCOST_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./reports"

vsphere:
  host: vcenter.example.com
  username: svc-vmcost@vsphere.local
  password: ${VMCOST_VCENTER_PASSWORD}  # env var substitution

rates:
  fixed_infra: 10
  fixed_win: 10
  var_storage_per_gb: 0.05
```
"""
import os
import re
import stat
import logging
from pathlib import Path
from typing import Dict, Any, Mapping, Optional

import yaml

from .constants import (
    DEFAULT_CURRENCY_SYMBOL,
    DEFAULT_LOG_LEVEL,
    DEFAULT_OS_PATTERNS,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_RATES,
    DEFAULT_VCENTER_PORT,
    RATE_FIELDS,
)
from .models import RateTable
from .utils import ConfigError

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './vmcost-config.yaml',
    './vmcost-config.yml',
    '~/.vmcost/config.yaml',
    '~/.vmcost/config.yml',
]

# Environment variable prefix
ENV_PREFIX = 'VMCOST_'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'VMCOST_OUTPUT',
    'log_level': 'VMCOST_LOG_LEVEL',
    'currency_symbol': 'VMCOST_CURRENCY_SYMBOL',
    'vsphere.host': 'VMCOST_VCENTER_HOST',
    'vsphere.username': 'VMCOST_VCENTER_USER',
    'vsphere.password': 'VMCOST_VCENTER_PASSWORD',
    'vsphere.port': 'VMCOST_VCENTER_PORT',
    'vsphere.verify_ssl': 'VMCOST_VERIFY_SSL',
}
ENV_VAR_MAPPING.update({
    f'rates.{name}': f'{ENV_PREFIX}RATE_{name.upper()}' for name in RATE_FIELDS
})


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes')


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Config may carry the vCenter password
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        try:
            config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    arg_mapping = {
        'output': 'output',
        'log_level': 'log_level',
        'vcenter': 'vsphere.host',
        'user': 'vsphere.username',
        'port': 'vsphere.port',
        'dry_run': 'dry_run',
        'vm_name': 'vm_names',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        # store_true flags left unset should not override file/env config
        if value is not None and value is not False:
            _set_nested(config, config_key, value)

    if getattr(args, 'insecure', False):
        _set_nested(config, 'vsphere.verify_ssl', False)

    return config


def load_rate_table(config: Mapping[str, Any]) -> RateTable:
    """
    Build the rate table from merged config, defaulting missing rates.

    Raises:
        ConfigError: On unknown rate names, negative, non-finite or non-numeric values
    """
    raw = config.get('rates') or {}
    if not isinstance(raw, dict):
        raise ConfigError("'rates' must be a mapping of rate name to monthly amount")

    unknown = sorted(set(raw) - set(RATE_FIELDS))
    if unknown:
        raise ConfigError(f"Unrecognized rate option(s): {', '.join(unknown)}. "
                          f"Valid options: {', '.join(RATE_FIELDS)}")

    rates: Dict[str, Any] = dict(DEFAULT_RATES)
    for name, value in raw.items():
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                raise ConfigError(f"Rate {name} must be a number, got {value!r}") from None
        rates[name] = value

    try:
        return RateTable.from_dict(rates)
    except ValueError as e:
        raise ConfigError(str(e)) from e


def load_os_patterns(config: Mapping[str, Any]) -> Dict[str, str]:
    """Guest OS wildcard patterns, defaulting to the built-in ones."""
    patterns = dict(DEFAULT_OS_PATTERNS)
    overrides = config.get('os_patterns') or {}
    for family in patterns:
        if overrides.get(family):
            patterns[family] = str(overrides[family])
    return patterns


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables

    Returns merged config dict with defaults filled in and types normalized.
    """
    configs = []

    # 1. Environment variables (lowest priority)
    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    # 2. Config file
    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    # 3. CLI arguments (highest priority)
    configs.append(args_to_config(args))

    merged = merge_configs(*configs)

    merged.setdefault('output', DEFAULT_OUTPUT_DIR)
    merged.setdefault('log_level', DEFAULT_LOG_LEVEL)
    merged.setdefault('currency_symbol', DEFAULT_CURRENCY_SYMBOL)
    merged['dry_run'] = _parse_bool(merged.get('dry_run', False))

    vsphere = merged.setdefault('vsphere', {})
    try:
        vsphere['port'] = int(vsphere.get('port', DEFAULT_VCENTER_PORT))
    except (TypeError, ValueError):
        raise ConfigError(f"vCenter port must be an integer, got {vsphere.get('port')!r}") from None
    vsphere['verify_ssl'] = _parse_bool(vsphere.get('verify_ssl', True))

    return merged


def get_vsphere_settings(config: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Connection settings for vCenter.

    Raises:
        ConfigError: If host or username is missing
    """
    vsphere = config.get('vsphere') or {}
    missing = [key for key in ('host', 'username') if not vsphere.get(key)]
    if missing:
        raise ConfigError(
            f"Missing vCenter setting(s): {', '.join('vsphere.' + m for m in missing)}. "
            f"Use --vcenter/--user, the config file, or VMCOST_VCENTER_HOST/VMCOST_VCENTER_USER."
        )
    password = vsphere.get('password') or os.environ.get('VMCOST_VCENTER_PASSWORD', '')
    if not password:
        logger.warning("No vCenter password set (vsphere.password or VMCOST_VCENTER_PASSWORD)")
    return {
        'host': vsphere['host'],
        'username': vsphere['username'],
        'password': password,
        'port': vsphere.get('port', DEFAULT_VCENTER_PORT),
        'verify_ssl': vsphere.get('verify_ssl', True),
    }


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    rate_lines = "\n".join(f"  {name}: {DEFAULT_RATES[name]}" for name in RATE_FIELDS)
    return f'''# VM Cost Collector Configuration
#
# Environment variable substitution supported:
#   ${{VAR_NAME}}           - required env var
#   ${{VAR_NAME:-default}}  - env var with default value

# Output directory for the CSV export and run log
output: "."

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# Prefix used when writing the yearly estimate into VM notes
currency_symbol: "$"

# Compute and export costs without touching VM notes
dry_run: false


# =============================================================================
# vCenter connection
# =============================================================================
vsphere:
  host: vcenter.example.com
  username: svc-vmcost@vsphere.local

  # Always use an env var, never put the password in this file
  password: ${{VMCOST_VCENTER_PASSWORD}}

  port: 443

  # Set to false for lab vCenters with self-signed certificates
  verify_ssl: true


# =============================================================================
# Monthly cost rates (USD, non-negative)
# =============================================================================
rates:
{rate_lines}


# =============================================================================
# Guest OS detection (case-insensitive shell-style wildcards)
# =============================================================================
# os_patterns:
#   windows: "Windows Server*"
#   redhat: "Red*"
'''
