"""
Configuration file support for the batchcompare CLI.

Supports YAML and JSON config files whose keys are AnalysisConfig fields.
Explicit CLI arguments override config values, which override defaults.

Example config (YAML):
    output_dir: results/montpick
    min_mean: 10
    n_sv: 2
    ruv_k: 2
    voom_normalize: quantile
    pedigree_urls:
      - https://example.org/relationships_w_pops_121708.txt
"""

import json
from argparse import Namespace
from dataclasses import fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import yaml

from batchcompare.pipeline import AnalysisConfig

# config key -> (argparse dest, converter from CLI value to config value)
CLI_OVERRIDES: Dict[str, Tuple[str, Callable[[Any], Any]]] = {
    'output_dir': ('output', Path),
    'cache_dir': ('cache_dir', Path),
    'min_mean': ('min_mean', float),
    'n_sv': ('n_sv', int),
    'ruv_k': ('ruv_k', int),
    'cat_max_rank': ('cat_max_rank', int),
    'keep_fraction': ('keep_fraction', float),
    'seed': ('seed', int),
    'run_unbalanced': ('skip_unbalanced', lambda skip: not skip),
    'check_sex': ('no_sex_check', lambda skip: not skip),
    'figure_format': ('format', str),
}

_SHORT_OPTIONS = {
    'o': 'output',
    'c': 'config',
    'v': 'verbose',
}


def config_keys() -> Set[str]:
    """Keys accepted in a config file."""
    return {f.name for f in fields(AnalysisConfig)}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


def validate_config(config: Dict[str, Any]) -> None:
    """
    Reject unknown keys and wrongly typed list values.

    Raises:
        ValueError: On the first problem found
    """
    unknown = sorted(set(config) - config_keys())
    if unknown:
        raise ValueError(
            f"Unknown config keys: {unknown}. Valid keys: {sorted(config_keys())}"
        )

    urls = config.get('pedigree_urls')
    if urls is not None and (
        not isinstance(urls, list) or not all(isinstance(u, str) for u in urls)
    ):
        raise ValueError("pedigree_urls must be a list of URL strings")


def explicit_arg_names(cli_args: Optional[Iterable[str]]) -> Set[str]:
    """
    Argparse dests the user typed on the command line.

    Handles ``--long-name``, ``--long-name=value`` and the short options in
    _SHORT_OPTIONS.
    """
    explicit = set()
    for arg in cli_args or []:
        if arg.startswith('--'):
            explicit.add(arg[2:].split('=', 1)[0].replace('-', '_'))
        elif arg.startswith('-') and len(arg) == 2 and arg[1] in _SHORT_OPTIONS:
            explicit.add(_SHORT_OPTIONS[arg[1]])
    return explicit


def _merge_value(
    cli_value: Any,
    config_value: Any,
    was_explicitly_set: bool,
    convert: Callable[[Any], Any],
) -> Any:
    """
    Merge a single config value with a CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    - If neither set, keep the CLI default (None means: use the dataclass default)

    CLI values go through `convert`; config values are used as written.
    """
    if was_explicitly_set:
        return convert(cli_value)
    if config_value is not None:
        return config_value
    if cli_value is not None:
        return convert(cli_value)
    return None


def build_analysis_config(
    args: Namespace,
    config: Optional[Dict[str, Any]] = None,
    cli_args: Optional[List[str]] = None,
) -> AnalysisConfig:
    """
    Merge config file values with CLI arguments into an AnalysisConfig.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. AnalysisConfig defaults (CLI defaults are None or False)

    Raises:
        ValueError: If a merged value fails AnalysisConfig validation
    """
    config = dict(config or {})
    explicit = explicit_arg_names(cli_args)

    values: Dict[str, Any] = {k: v for k, v in config.items() if k not in CLI_OVERRIDES}

    for config_key, (arg_name, convert) in CLI_OVERRIDES.items():
        cli_value = getattr(args, arg_name, None)
        merged = _merge_value(cli_value, config.get(config_key), arg_name in explicit, convert)
        if merged is not None:
            values[config_key] = merged

    if 'output_dir' in values:
        values['output_dir'] = Path(values['output_dir'])
    if values.get('cache_dir') is not None:
        values['cache_dir'] = Path(values['cache_dir'])

    return AnalysisConfig(**values)
