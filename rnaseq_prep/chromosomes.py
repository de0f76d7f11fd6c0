"""
Chromosome filtering.

Removes genes on unwanted chromosomes (Y, MT, unplaced contigs, ...).
featureCounts joins the chromosomes of multi-exon genes with ';', so only
the first entry is used when summarizing.
"""

import logging
import re
from typing import Optional

import pandas as pd

from .errors import MissingColumn
from .table import ExpressionTable
from .utils import percent

logger = logging.getLogger(__name__)

DEFAULT_KEEP_PATTERN = r"^[0-9X]+"


def _primary_chromosome(values: pd.Series) -> pd.Series:
    return values.astype(str).str.split(";", n=1).str[0]


def filter_chromosomes(
    table: ExpressionTable,
    keep_pattern: Optional[str] = DEFAULT_KEEP_PATTERN,
    exclude_pattern: Optional[str] = None,
    chromosome_field: str = "chromosome",
) -> ExpressionTable:
    """
    Keep genes whose chromosome matches ``keep_pattern`` and not ``exclude_pattern``.

    Args:
        table: Input expression table
        keep_pattern: Regex of chromosomes to keep (default: autosomes + X)
        exclude_pattern: Regex of chromosomes to drop, e.g. ``^(Y|MT|KI|GL)``
        chromosome_field: Name of the chromosome column

    Raises:
        MissingColumn: If the chromosome column is absent
        re.error: If a pattern is not a valid regular expression
    """
    stage = "filter_chromosomes"
    keep_re = re.compile(keep_pattern) if keep_pattern else None
    exclude_re = re.compile(exclude_pattern) if exclude_pattern else None
    table.validate(stage=stage)
    if not table.has_column(chromosome_field):
        raise MissingColumn(f"Column {chromosome_field} not found", stage=stage, field=chromosome_field)

    frame = table.frame
    n_before = len(frame)
    logger.info(f"Genes before chromosome filtering: {n_before}")

    if keep_re is not None:
        keep = frame[chromosome_field].astype(str).map(lambda c: keep_re.search(c) is not None)
        frame = frame[keep.astype(bool)]
        logger.info(f"After keeping pattern '{keep_pattern}': {len(frame)} genes")

    if exclude_re is not None:
        excluded = frame[chromosome_field].astype(str).map(lambda c: exclude_re.search(c) is not None)
        if excluded.any():
            frame = frame[~excluded.astype(bool)]
            logger.info(f"After excluding pattern '{exclude_pattern}': {len(frame)} genes")

    n_removed = n_before - len(frame)
    logger.info(f"Removed {n_removed} genes ({percent(n_removed, n_before)}%)")

    step = {
        "stage": stage,
        "keep_pattern": keep_pattern,
        "exclude_pattern": exclude_pattern,
        "rows_before": n_before,
        "rows_after": len(frame),
        "removed": n_removed,
    }
    result = table.derive(frame, step)
    for chrom, count in chromosome_distribution(result, chromosome_field).items():
        logger.debug(f"  {chrom}: {count}")
    return result


def chromosome_distribution(table: ExpressionTable, chromosome_field: str = "chromosome") -> pd.Series:
    """
    Number of genes per chromosome.

    Numeric chromosomes come first in numeric order, the rest follow by name.
    """
    if not table.has_column(chromosome_field):
        raise MissingColumn(f"Column {chromosome_field} not found", stage="chromosome_distribution", field=chromosome_field)

    counts = _primary_chromosome(table.column(chromosome_field)).value_counts()
    numeric = [c for c in counts.index if c.isdigit()]
    other = [c for c in counts.index if not c.isdigit()]
    order = sorted(numeric, key=int) + sorted(other)
    distribution = counts.reindex(order)
    distribution.name = "genes"
    return distribution
