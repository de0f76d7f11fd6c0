"""
Pipeline configuration.

Settings are read from YAML. The packaged ``data/default_config.yml`` is
loaded first; a user file (explicit path or ``RNASEQ_PREP_CONFIG``) is
merged over it section by section.
"""

import copy
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .duplicates import MERGE_METHODS
from .errors import UnknownMethod
from .filters import ExpressionPredicate
from .utils import validate_file_exists

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path(__file__).parent / "data" / "default_config.yml"
CONFIG_ENV_VAR = "RNASEQ_PREP_CONFIG"


class ConfigError(ValueError):
    """Malformed configuration file."""


@dataclass
class AnnotationConfig:
    organism: str = "human"
    id_type: str = "ENSEMBL"
    key_type: str = "SYMBOL"
    discard_unmatched: bool = True
    reference: Optional[str] = None
    timeout: float = 30.0
    batch_size: int = 1000


@dataclass
class ChromosomeConfig:
    enabled: bool = True
    keep_pattern: Optional[str] = r"^[0-9X]+"
    exclude_pattern: Optional[str] = None


@dataclass
class DuplicateConfig:
    method: str = "random"
    seed: int = 42


@dataclass
class ExpressionConfig:
    min_mean: Optional[float] = 10
    min_count: Optional[float] = None
    min_samples: Optional[int] = None

    def predicate(self) -> ExpressionPredicate:
        return ExpressionPredicate(
            min_mean=self.min_mean, min_count=self.min_count, min_samples=self.min_samples
        )


@dataclass
class GeneTypeConfig:
    enabled: bool = False
    keep: List[str] = field(default_factory=lambda: ["protein-coding"])


@dataclass
class PipelineConfig:
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    chromosomes: ChromosomeConfig = field(default_factory=ChromosomeConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    expression: ExpressionConfig = field(default_factory=ExpressionConfig)
    gene_types: GeneTypeConfig = field(default_factory=GeneTypeConfig)

    SECTIONS = {
        "annotation": AnnotationConfig,
        "chromosomes": ChromosomeConfig,
        "duplicates": DuplicateConfig,
        "expression": ExpressionConfig,
        "gene_types": GeneTypeConfig,
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        unknown = set(data) - set(cls.SECTIONS)
        if unknown:
            raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

        sections = {}
        for name, section_cls in cls.SECTIONS.items():
            values = data.get(name) or {}
            if not isinstance(values, dict):
                raise ConfigError(f"Config section '{name}' must be a mapping")
            allowed = section_cls.__dataclass_fields__
            bad = set(values) - set(allowed)
            if bad:
                raise ConfigError(f"Unknown keys in '{name}': {sorted(bad)}")
            sections[name] = section_cls(**values)

        config = cls(**sections)
        config.validate()
        return config

    def validate(self) -> None:
        if self.duplicates.method not in MERGE_METHODS:
            raise UnknownMethod(
                f"Unknown duplicate method '{self.duplicates.method}'. "
                f"Choose from: {', '.join(MERGE_METHODS)}",
                stage="config",
                field="duplicates.method",
            )
        self.expression.predicate().validate(stage="config")
        if self.gene_types.enabled and not self.gene_types.keep:
            raise ConfigError("gene_types.keep must list at least one gene type")
        if self.annotation.batch_size < 1:
            raise ConfigError("annotation.batch_size must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")
    return data


def load_config(config_path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    """
    Load the pipeline configuration.

    Args:
        config_path: User YAML file. Falls back to ``$RNASEQ_PREP_CONFIG``,
            then to the packaged defaults alone.

    Raises:
        FileNotFoundError: If the given config file does not exist
        ConfigError: On unknown sections/keys or unparsable YAML
    """
    data = _read_yaml(DEFAULT_CONFIG_FILE)

    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR) or None

    if config_path is not None:
        path = validate_file_exists(config_path)
        logger.info(f"Loading configuration from {path}")
        data = _merge(data, _read_yaml(path))

    return PipelineConfig.from_dict(data)
