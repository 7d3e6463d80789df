"""
Configuration file support for the markerscan CLI.

Supports YAML and JSON config files with CLI argument override. A config
mirrors the command line, grouped by analysis:

    input: GSE5281_series_matrix.txt
    phenotypes: phenotypes.csv
    output: results/alzheimer
    expression:
      n_sv: 2
      terms:
        - {name: disease_state, reference: control}
        - {name: age, kind: numeric}
      contrasts:
        AD_vs_control: "AD - control"
    enrichment:
      gmt: [c5.go.bp.v2023.symbols.gmt]
      conditional: true
"""

import json
from argparse import Namespace
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class ExpressionConfig:
    """Differential expression configuration."""
    normalize: bool = True
    missing: str = "propagate"
    pseudocount: float = 0.0
    n_sv: int = 0
    terms: List[Any] = field(default_factory=list)
    contrasts: Dict[str, Any] = field(default_factory=dict)
    adjust: str = "BH"
    p_threshold: float = 0.05
    lfc: float = 0.0
    trend: bool = False


@dataclass
class EnrichmentConfig:
    """Gene-set enrichment configuration."""
    gmt: List[Path] = field(default_factory=list)
    hierarchy: Optional[Path] = None
    conditional: bool = False
    p_cutoff: float = 0.01
    min_size: int = 5
    max_size: Optional[int] = 500
    annotation: Optional[Path] = None
    id_column: str = "ID"
    gene_column: str = "ENTREZ_GENE_ID"
    mygene: bool = False
    target_type: str = "entrez"


@dataclass
class GeneticsConfig:
    """SNP association configuration."""
    outcome: Optional[str] = None
    case: Optional[str] = None
    covariates: List[str] = field(default_factory=list)
    hwe_alpha: float = 0.001
    permutations: int = 1000
    seed: Optional[int] = None
    haplotype_snps: Optional[List[str]] = None
    window_widths: List[int] = field(default_factory=lambda: [2, 3, 4])
    freq_min: float = 0.01
    screen_threshold: float = 0.1


VALID_MISSING = ['propagate', 'error', 'impute']
VALID_ADJUST = ['BH', 'BY', 'bonferroni', 'holm', 'none']
VALID_TARGET_TYPES = ['entrez', 'symbol', 'ensembl_gene', 'uniprot']

# (config section, config key) -> argparse destination. Section None is top level.
_ARG_MAP = {
    (None, 'input'): 'input',
    (None, 'phenotypes'): 'phenotypes',
    (None, 'output'): 'output',
    (None, 'geo'): 'geo',
    ('expression', 'normalize'): 'normalize',
    ('expression', 'missing'): 'missing',
    ('expression', 'pseudocount'): 'pseudocount',
    ('expression', 'n_sv'): 'n_sv',
    ('expression', 'terms'): 'terms',
    ('expression', 'contrasts'): 'contrasts',
    ('expression', 'adjust'): 'adjust',
    ('expression', 'p_threshold'): 'p_threshold',
    ('expression', 'lfc'): 'lfc',
    ('expression', 'trend'): 'trend',
    ('enrichment', 'gmt'): 'gmt',
    ('enrichment', 'hierarchy'): 'hierarchy',
    ('enrichment', 'conditional'): 'conditional',
    ('enrichment', 'p_cutoff'): 'enrichment_p',
    ('enrichment', 'min_size'): 'min_size',
    ('enrichment', 'max_size'): 'max_size',
    ('enrichment', 'annotation'): 'annotation',
    ('enrichment', 'id_column'): 'id_column',
    ('enrichment', 'gene_column'): 'gene_column',
    ('enrichment', 'mygene'): 'mygene',
    ('enrichment', 'target_type'): 'target_type',
    ('genetics', 'outcome'): 'outcome',
    ('genetics', 'case'): 'case',
    ('genetics', 'covariates'): 'covariates',
    ('genetics', 'hwe_alpha'): 'hwe_alpha',
    ('genetics', 'permutations'): 'permutations',
    ('genetics', 'seed'): 'seed',
    ('genetics', 'haplotype_snps'): 'haplotype_snps',
    ('genetics', 'window_widths'): 'window_widths',
    ('genetics', 'freq_min'): 'freq_min',
    ('genetics', 'screen_threshold'): 'screen_threshold',
}

_PATH_ARGS = {'input', 'phenotypes', 'output', 'hierarchy', 'annotation'}

# Flags whose argparse destination differs from the flag spelling
_FLAG_DESTS = {
    'no_normalize': 'normalize',
    'contrast': 'contrasts',
    'term': 'terms',
}

_SHORT_TO_LONG = {
    'i': 'input',
    'o': 'output',
    'p': 'phenotypes',
}


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

    Examples:
        >>> config = load_config(Path("alzheimer.yaml"))
        >>> print(config['expression']['n_sv'])
        2
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
        raise ValueError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


def _merge_value(cli_value: Any, config_value: Any, arg_name: str, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    - If neither set, keep CLI default

    Parameters:
        cli_value: Value from CLI args (may be default)
        config_value: Value from config file
        arg_name: Name of argument (for debugging)
        was_explicitly_set: Whether CLI arg was explicitly provided by user

    Returns:
        Merged value
    """
    if was_explicitly_set:
        return cli_value

    if config_value is not None:
        return config_value

    return cli_value


def _explicit_args(cli_args: Optional[List[str]]) -> set:
    explicit = set()
    for arg in cli_args or []:
        if arg.startswith('--'):
            name = arg[2:].split('=', 1)[0].replace('-', '_')
            explicit.add(_FLAG_DESTS.get(name, name))
        elif arg.startswith('-') and len(arg) == 2 and arg[1] in _SHORT_TO_LONG:
            explicit.add(_SHORT_TO_LONG[arg[1]])
    return explicit


def merge_config_with_args(config: Dict[str, Any], args: Namespace, cli_args: Optional[List[str]] = None) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    Only keys the subcommand's parser knows are merged, so one config file
    can hold both the expression and the genetics sections.

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments (argparse.Namespace)
        cli_args: Raw CLI arguments list (for detecting explicit values)
                  If None, assumes all args are defaults

    Returns:
        Updated Namespace with merged values

    Examples:
        >>> config = load_config(Path("asthma.yaml"))
        >>> args = parser.parse_args(["genetics", "--input", "snps.txt"])
        >>> merged = merge_config_with_args(config, args)
        >>> # args.input from CLI, args.outcome from config
    """
    explicit_args = _explicit_args(cli_args)
    merged = Namespace(**vars(args))

    for (section, key), arg_name in _ARG_MAP.items():
        source = config if section is None else config.get(section) or {}
        if key not in source or not hasattr(merged, arg_name):
            continue
        config_value = source[key]
        if config_value is not None and arg_name in _PATH_ARGS:
            config_value = Path(config_value)
        if arg_name == 'gmt' and config_value is not None:
            config_value = [Path(p) for p in config_value]
        setattr(merged, arg_name, _merge_value(
            getattr(merged, arg_name),
            config_value,
            arg_name,
            arg_name in explicit_args,
        ))

    return merged


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Performs basic validation:
    - Sections are mappings
    - Valid choices for policies and methods
    - Thresholds within range

    Parameters:
        config: Configuration dictionary

    Raises:
        ValueError: If configuration is invalid
    """
    for section in ('expression', 'enrichment', 'genetics'):
        if section in config and not isinstance(config[section], dict):
            raise ValueError(f"Config section '{section}' must be a mapping")

    expression = config.get('expression') or {}
    if 'missing' in expression and expression['missing'] not in VALID_MISSING:
        raise ValueError(
            f"Invalid missing-value policy '{expression['missing']}'. "
            f"Choose from: {', '.join(VALID_MISSING)}"
        )
    if 'adjust' in expression and expression['adjust'] not in VALID_ADJUST:
        raise ValueError(
            f"Invalid adjustment method '{expression['adjust']}'. "
            f"Choose from: {', '.join(VALID_ADJUST)}"
        )
    if 'n_sv' in expression:
        n_sv = expression['n_sv']
        if not isinstance(n_sv, int) or isinstance(n_sv, bool) or n_sv < 0:
            raise ValueError(f"n_sv must be a non-negative integer, got: {n_sv}")
    if 'contrasts' in expression and not isinstance(expression['contrasts'], dict):
        raise ValueError("expression.contrasts must map contrast names to expressions")
    if 'terms' in expression and not isinstance(expression['terms'], list):
        raise ValueError("expression.terms must be a list")

    enrichment = config.get('enrichment') or {}
    if 'target_type' in enrichment and enrichment['target_type'] not in VALID_TARGET_TYPES:
        raise ValueError(
            f"Invalid target id type '{enrichment['target_type']}'. "
            f"Choose from: {', '.join(VALID_TARGET_TYPES)}"
        )

    genetics = config.get('genetics') or {}
    if 'permutations' in genetics:
        permutations = genetics['permutations']
        if not isinstance(permutations, int) or isinstance(permutations, bool) or permutations < 1:
            raise ValueError(f"permutations must be a positive integer, got: {permutations}")
    if 'window_widths' in genetics:
        widths = genetics['window_widths']
        if not isinstance(widths, list) or not all(isinstance(w, int) and w >= 1 for w in widths):
            raise ValueError(f"window_widths must be a list of positive integers, got: {widths}")

    probabilities = [
        ('expression', 'p_threshold'),
        ('enrichment', 'p_cutoff'),
        ('genetics', 'hwe_alpha'),
        ('genetics', 'screen_threshold'),
    ]
    for section, key in probabilities:
        values = config.get(section) or {}
        if key in values:
            value = values[key]
            if not isinstance(value, (int, float)) or not (0 < value < 1):
                raise ValueError(f"{section}.{key} must be in (0, 1), got: {value}")

    freq_min = genetics.get('freq_min')
    if freq_min is not None and (not isinstance(freq_min, (int, float)) or not (0 <= freq_min < 1)):
        raise ValueError(f"genetics.freq_min must be in [0, 1), got: {freq_min}")
