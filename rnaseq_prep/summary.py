"""
Before/after summaries of a preprocessing run.

Everything here is read-only: tables are inspected, never modified.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

import pandas as pd
from rich.console import Console
from rich.table import Table

from .table import SYMBOL_COLUMN, ExpressionTable
from .utils import console as default_console
from .utils import format_number, percent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymbolStats:
    """Symbol duplication statistics of one table."""

    with_symbol: int
    without_symbol: int
    unique_symbols: int
    duplicate_entries: int
    duplicated_symbols: int


@dataclass(frozen=True)
class ProcessingSummary:
    """Comparison of a table before and after preprocessing."""

    rows_before: int
    rows_after: int
    rows_removed: int
    percent_removed: float
    samples_before: Tuple[str, ...]
    samples_after: Tuple[str, ...]
    sample_totals_before: Dict[str, float] = field(default_factory=dict)
    sample_totals_after: Dict[str, float] = field(default_factory=dict)
    sample_means_before: Dict[str, float] = field(default_factory=dict)
    sample_means_after: Dict[str, float] = field(default_factory=dict)
    symbols_before: Optional[SymbolStats] = None
    symbols_after: Optional[SymbolStats] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["samples_before"] = list(self.samples_before)
        data["samples_after"] = list(self.samples_after)
        return data


def symbol_statistics(table: ExpressionTable, symbol_field: str = SYMBOL_COLUMN) -> Optional[SymbolStats]:
    """Duplication statistics for ``symbol_field``, None if the column is absent."""
    if not table.has_column(symbol_field):
        return None
    symbols = table.column(symbol_field)
    present = symbols.dropna()
    counts = present.value_counts()
    return SymbolStats(
        with_symbol=int(len(present)),
        without_symbol=int(len(symbols) - len(present)),
        unique_symbols=int(len(counts)),
        duplicate_entries=int(len(present) - len(counts)),
        duplicated_symbols=int((counts > 1).sum()),
    )


def _per_sample(counts: pd.DataFrame, how: str) -> Dict[str, float]:
    if how == "sum":
        values = counts.sum(axis=0)
    else:
        values = counts.mean(axis=0) if len(counts) else pd.Series(0.0, index=counts.columns)
    return {str(k): float(v) for k, v in values.items()}


def summarize(
    before: ExpressionTable,
    after: ExpressionTable,
    symbol_field: str = SYMBOL_COLUMN,
) -> ProcessingSummary:
    """
    Summarize the effect of preprocessing.

    Args:
        before: Table as loaded
        after: Table after all stages

    Returns:
        ProcessingSummary with row delta, per-sample totals and means, and
        symbol duplication statistics of both tables
    """
    removed = before.n_features - after.n_features
    before_counts = before.counts
    after_counts = after.counts

    return ProcessingSummary(
        rows_before=before.n_features,
        rows_after=after.n_features,
        rows_removed=removed,
        percent_removed=percent(removed, before.n_features, precision=1),
        samples_before=before.samples,
        samples_after=after.samples,
        sample_totals_before=_per_sample(before_counts, "sum"),
        sample_totals_after=_per_sample(after_counts, "sum"),
        sample_means_before=_per_sample(before_counts, "mean"),
        sample_means_after=_per_sample(after_counts, "mean"),
        symbols_before=symbol_statistics(before, symbol_field),
        symbols_after=symbol_statistics(after, symbol_field),
    )


def sample_info(table: ExpressionTable) -> pd.DataFrame:
    """
    Per-sample totals.

    Columns: sample, total_counts, mean_counts, median_counts, genes_detected.
    """
    counts = table.counts
    return pd.DataFrame(
        {
            "sample": list(table.samples),
            "total_counts": counts.sum(axis=0).to_numpy(),
            "mean_counts": counts.mean(axis=0).to_numpy(),
            "median_counts": counts.median(axis=0).to_numpy(),
            "genes_detected": (counts > 0).sum(axis=0).to_numpy(),
        }
    )


def print_processing_summary(summary: ProcessingSummary, console: Optional[Console] = None) -> None:
    """Render a ProcessingSummary to the terminal."""
    console = console or default_console

    console.rule("[bold]PREPROCESSING SUMMARY[/bold]")
    console.print(f"Original data: {summary.rows_before} genes, {len(summary.samples_before)} samples")
    console.print(f"Final data:    {summary.rows_after} genes, {len(summary.samples_after)} samples")
    console.print(f"Genes removed: {summary.rows_removed} ({summary.percent_removed}%)")

    if summary.symbols_after is not None:
        stats = summary.symbols_after
        console.print(
            f"Symbols: {stats.unique_symbols} unique, "
            f"{stats.duplicate_entries} duplicate entries, "
            f"{stats.without_symbol} without symbol"
        )

    table = Table(title="Counts per sample")
    table.add_column("Sample")
    table.add_column("Total before", justify="right")
    table.add_column("Total after", justify="right")
    table.add_column("Mean after", justify="right")
    for sample in summary.samples_after:
        table.add_row(
            sample,
            format_number(summary.sample_totals_before.get(sample, 0.0)),
            format_number(summary.sample_totals_after.get(sample, 0.0)),
            f"{summary.sample_means_after.get(sample, 0.0):.2f}",
        )
    console.print(table)
    console.rule()
