"""
Full preprocessing run.

Chains the stages in their usual order:

  chromosome filter -> symbol annotation -> duplicate resolution
  -> expression filter -> (optional) gene type annotation and filter
  -> summary
"""

import logging
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from .annotate import AnnotationLookup, MyGeneLookup, TableLookup, annotate_gene_types, annotate_genes
from .chromosomes import filter_chromosomes
from .config import AnnotationConfig, PipelineConfig
from .duplicates import find_duplicates, resolve_duplicates
from .filters import filter_by_category, filter_expression
from .summary import ProcessingSummary, summarize
from .table import ExpressionTable

logger = logging.getLogger(__name__)


@dataclass
class PreprocessingResult:
    table: ExpressionTable
    duplicates: pd.DataFrame
    summary: ProcessingSummary


def build_lookup(settings: AnnotationConfig) -> AnnotationLookup:
    """Reference-table lookup when a reference file is configured, MyGene.info otherwise."""
    if settings.reference:
        return TableLookup.from_file(settings.reference)
    return MyGeneLookup(
        organism=settings.organism,
        timeout=settings.timeout,
        batch_size=settings.batch_size,
    )


def run_preprocessing(
    table: ExpressionTable,
    lookup: AnnotationLookup,
    config: Optional[PipelineConfig] = None,
) -> PreprocessingResult:
    """
    Run every configured stage on ``table``.

    A failing stage raises and aborts the run; ``table`` itself is never
    modified.
    """
    config = config or PipelineConfig()
    config.validate()
    original = table

    if config.chromosomes.enabled:
        logger.info("=== Filtering chromosomes ===")
        table = filter_chromosomes(
            table,
            keep_pattern=config.chromosomes.keep_pattern,
            exclude_pattern=config.chromosomes.exclude_pattern,
        )

    logger.info("=== Gene annotation ===")
    table = annotate_genes(
        table,
        lookup,
        id_type=config.annotation.id_type,
        key_type=config.annotation.key_type,
        discard_unmatched=config.annotation.discard_unmatched,
    )
    duplicates = find_duplicates(table)

    logger.info("=== Handling duplicates ===")
    table = resolve_duplicates(table, method=config.duplicates.method, seed=config.duplicates.seed)

    logger.info("=== Filtering low expression ===")
    table = filter_expression(table, config.expression.predicate())

    if config.gene_types.enabled:
        logger.info("=== Gene type filtering ===")
        table = annotate_gene_types(table, lookup)
        table = filter_by_category(table, config.gene_types.keep)

    summary = summarize(original, table)
    return PreprocessingResult(table=table, duplicates=duplicates, summary=summary)
