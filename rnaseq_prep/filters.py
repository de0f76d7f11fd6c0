"""
Expression and gene type filtering.

This module removes lowly expressed genes and genes outside a set of
allowed gene types. Filters only drop rows; counts are never modified.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

import numpy as np
import pandas as pd

from .errors import IncompletePredicate, MissingCategoryColumn
from .table import CATEGORY_COLUMN, ExpressionTable
from .utils import percent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpressionPredicate:
    """
    Thresholds for ``filter_expression``.

    Attributes:
        min_mean: Keep genes whose mean count is strictly greater than this
        min_count: Per-sample count a sample must exceed
        min_samples: Number of samples that must exceed ``min_count``
    """

    min_mean: Optional[float] = None
    min_count: Optional[float] = None
    min_samples: Optional[int] = None

    def validate(self, stage: str = "filter_expression") -> None:
        if (self.min_count is None) != (self.min_samples is None):
            given = "min_count" if self.min_count is not None else "min_samples"
            raise IncompletePredicate(
                "min_count and min_samples must be supplied together", stage=stage, field=given
            )
        if self.min_samples is not None and self.min_samples < 0:
            raise ValueError("min_samples must be non-negative")

    @property
    def uses_mean(self) -> bool:
        return self.min_mean is not None

    @property
    def uses_samples(self) -> bool:
        return self.min_count is not None and self.min_samples is not None

    @property
    def is_empty(self) -> bool:
        return not (self.uses_mean or self.uses_samples)


def filter_expression(table: ExpressionTable, predicate: ExpressionPredicate) -> ExpressionTable:
    """
    Remove genes with low expression across samples.

    The mean filter runs first; the count-in-samples filter is then applied
    to its result when both are configured.

    Args:
        table: Input expression table
        predicate: Filter thresholds

    Returns:
        Filtered table

    Raises:
        IncompletePredicate: If only one of min_count / min_samples is given
    """
    stage = "filter_expression"
    predicate.validate(stage=stage)
    table.validate(stage=stage)

    frame = table.frame
    samples = list(table.samples)
    n_before = len(frame)
    logger.info(f"Genes before filtering: {n_before}")

    step: Dict[str, Any] = {
        "stage": stage,
        "min_mean": predicate.min_mean,
        "min_count": predicate.min_count,
        "min_samples": predicate.min_samples,
        "rows_before": n_before,
    }

    if predicate.is_empty:
        logger.warning("No expression thresholds given; table left unchanged")

    if predicate.uses_mean:
        gene_means = frame[samples].mean(axis=1) if samples else pd.Series(0.0, index=frame.index)
        keep = gene_means > predicate.min_mean
        logger.info(f"Filtering by mean expression > {predicate.min_mean}")
        logger.info(f"Genes passing filter: {int(keep.sum())}")
        frame = frame[keep]
        step["passing_mean"] = int(keep.sum())

    if predicate.uses_samples:
        samples_passing = (frame[samples] > predicate.min_count).sum(axis=1)
        keep = samples_passing >= predicate.min_samples
        logger.info(
            f"Filtering by count > {predicate.min_count} in at least {predicate.min_samples} samples"
        )
        logger.info(f"Genes passing filter: {int(keep.sum())}")
        frame = frame[keep]
        step["passing_samples"] = int(keep.sum())

    n_removed = n_before - len(frame)
    logger.info(f"Removed: {n_removed} genes ({percent(n_removed, n_before)}%)")
    logger.info(f"Remaining: {len(frame)} genes")

    step.update(rows_after=len(frame), removed=n_removed, removed_percent=percent(n_removed, n_before))
    return table.derive(frame, step)


def filter_low_expression(
    table: ExpressionTable,
    min_mean: Optional[float] = None,
    min_count: Optional[float] = None,
    min_samples: Optional[int] = None,
) -> ExpressionTable:
    """Keyword form of ``filter_expression``."""
    predicate = ExpressionPredicate(min_mean=min_mean, min_count=min_count, min_samples=min_samples)
    return filter_expression(table, predicate)


def _category_key(label) -> str:
    # MyGene spells types "protein-coding", BioMart "protein_coding"
    return str(label).strip().replace("_", "-")


def filter_by_category(
    table: ExpressionTable,
    allowed_categories: Union[str, Iterable[str]],
    category_field: str = CATEGORY_COLUMN,
) -> ExpressionTable:
    """
    Keep only genes of the given type(s), e.g. ``protein-coding``.

    Labels match regardless of ``_`` or ``-`` separators, so
    ``protein-coding`` also keeps BioMart's ``protein_coding``.

    The category column must already be present; run
    ``annotate_gene_types`` first.

    Raises:
        MissingCategoryColumn: If ``category_field`` is not a column
        ValueError: If no categories are given
    """
    stage = "filter_by_category"
    if isinstance(allowed_categories, str):
        allowed = [allowed_categories]
    else:
        allowed = list(dict.fromkeys(allowed_categories))
    if not allowed:
        raise ValueError("At least one gene type must be given")
    table.validate(stage=stage)
    if not table.has_column(category_field):
        raise MissingCategoryColumn(
            f"Column {category_field} not found; annotate gene types first",
            stage=stage,
            field=category_field,
        )

    frame = table.frame
    n_before = len(frame)
    logger.info(f"Genes before filtering: {n_before}")

    logger.info("Gene type distribution:")
    for label, count in frame[category_field].value_counts(dropna=False).items():
        logger.info(f"  {label if pd.notna(label) else '<NA>'}: {count}")

    wanted = {_category_key(c) for c in allowed}
    keep = frame[category_field].map(lambda c: pd.notna(c) and _category_key(c) in wanted)
    keep = keep.astype(bool)
    frame = frame[keep]

    n_removed = n_before - len(frame)
    logger.info(f"Keeping gene type(s): {', '.join(allowed)}")
    logger.info(f"Genes passing filter: {len(frame)}")
    logger.info(f"Removed: {n_removed} genes ({percent(n_removed, n_before)}%)")

    step = {
        "stage": stage,
        "allowed": allowed,
        "rows_before": n_before,
        "rows_after": len(frame),
        "removed": n_removed,
        "removed_percent": percent(n_removed, n_before),
    }
    return table.derive(frame, step)


def expression_statistics(table: ExpressionTable) -> pd.DataFrame:
    """
    Per-gene summary statistics, highest mean first.

    Columns: mean, median, sd, min, max, n_zero, n_nonzero.
    """
    counts = table.counts
    stats_df = pd.DataFrame(
        {
            "mean": counts.mean(axis=1),
            "median": counts.median(axis=1),
            "sd": counts.std(axis=1, ddof=1),
            "min": counts.min(axis=1),
            "max": counts.max(axis=1),
            "n_zero": (counts == 0).sum(axis=1).astype(np.int64),
            "n_nonzero": (counts > 0).sum(axis=1).astype(np.int64),
        },
        index=counts.index,
    )
    return stats_df.sort_values("mean", ascending=False, kind="mergesort")
