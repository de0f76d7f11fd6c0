"""
Duplicate gene symbol handling.

Several Ensembl features frequently resolve to the same gene symbol. This
module collapses every such group into a single row using one of the merge
policies in MERGE_METHODS:

  - first:   keep the earliest row of the group
  - random:  keep one row drawn with a seeded generator
  - average: per-sample mean of the group, metadata from the earliest row
  - highest: keep the row with the largest mean count (earliest wins ties)

Rows without a symbol are never grouped; they pass through unchanged.
The output keeps the order in which each symbol first appears.
"""

import logging
import numbers
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import MissingSymbolColumn, UnknownMethod
from .table import SYMBOL_COLUMN, ExpressionTable

logger = logging.getLogger(__name__)

MERGE_METHODS = ("random", "average", "highest", "first")

SeedLike = Union[int, np.random.Generator]


def _symbol_groups(symbols: pd.Series) -> List[Tuple[Any, np.ndarray]]:
    """Positions of each non-null symbol, ordered by first appearance."""
    positions: Dict[Any, List[int]] = {}
    for position, symbol in enumerate(symbols.tolist()):
        if pd.isna(symbol):
            continue
        positions.setdefault(symbol, []).append(position)
    return [(symbol, np.asarray(idx)) for symbol, idx in positions.items()]


def _duplicate_stats(symbols: pd.Series) -> Dict[str, int]:
    present = symbols.dropna()
    n_unique = int(present.nunique())
    return {
        "total_rows": int(len(symbols)),
        "unsymbolled_rows": int(len(symbols) - len(present)),
        "unique_symbols": n_unique,
        "duplicate_entries": int(len(present) - n_unique),
    }


def _make_rng(seed: SeedLike) -> np.random.Generator:
    if seed is None:
        raise ValueError("An explicit seed is required for the random merge method")
    return np.random.default_rng(seed)


def resolve_duplicates(
    table: ExpressionTable,
    method: str = "first",
    symbol_field: str = SYMBOL_COLUMN,
    seed: SeedLike = 0,
) -> ExpressionTable:
    """
    Collapse rows sharing a gene symbol into one row per symbol.

    Args:
        table: Annotated expression table
        method: One of MERGE_METHODS
        symbol_field: Column holding gene symbols
        seed: Seed (or numpy Generator) for the ``random`` method

    Returns:
        New table with unique symbols

    Raises:
        UnknownMethod: If ``method`` is not supported
        MissingSymbolColumn: If ``symbol_field`` is not a column of the table
    """
    stage = "resolve_duplicates"
    if method not in MERGE_METHODS:
        raise UnknownMethod(
            f"Unknown duplicate method '{method}'. Choose from: {', '.join(MERGE_METHODS)}",
            stage=stage,
        )
    table.validate(stage=stage)
    if not table.has_column(symbol_field):
        raise MissingSymbolColumn(f"Column {symbol_field} not found", stage=stage, field=symbol_field)
    rng = _make_rng(seed) if method == "random" else None

    frame = table.frame
    samples = list(table.samples)
    stats = _duplicate_stats(frame[symbol_field])

    logger.info(f"Total genes: {stats['total_rows']}")
    logger.info(f"Unique symbols: {stats['unique_symbols']}")
    logger.info(f"Duplicate entries: {stats['duplicate_entries']}")

    step: Dict[str, Any] = {"stage": stage, "method": method, "rows_before": len(frame), **stats}

    if stats["duplicate_entries"] == 0:
        logger.info("No duplicates found. Returning original data.")
        step.update(rows_after=len(frame), groups_merged=0)
        return table.derive(frame, step)

    logger.info(f"Using method: {method}")

    values = frame[samples].to_numpy(dtype=float)
    groups = _symbol_groups(frame[symbol_field])

    # (anchor position, chosen position); anchor fixes the output order
    selected: List[Tuple[int, int]] = []
    averaged: Dict[int, np.ndarray] = {}
    groups_merged = 0

    for _, idx in groups:
        first = int(idx[0])
        if len(idx) == 1:
            selected.append((first, first))
            continue

        groups_merged += 1
        if method == "first":
            chosen = first
        elif method == "random":
            chosen = int(idx[rng.integers(len(idx))])
        elif method == "highest":
            means = values[idx].mean(axis=1)
            chosen = int(idx[int(np.argmax(means))])
        else:
            chosen = first
            averaged[first] = values[idx].mean(axis=0)
        selected.append((first, chosen))

    unsymbolled = np.flatnonzero(frame[symbol_field].isna().to_numpy())
    selected.extend((int(p), int(p)) for p in unsymbolled)
    selected.sort(key=lambda pair: pair[0])

    result = frame.iloc[[chosen for _, chosen in selected]].copy()

    if averaged:
        result[samples] = result[samples].astype(float)
        for position, mean_counts in averaged.items():
            result.loc[frame.index[position], samples] = mean_counts

    if method == "random":
        logger.info("Randomly selected one entry per duplicate symbol")
    elif method == "first":
        logger.info("Kept first occurrence of each duplicate symbol")
    elif method == "average":
        logger.info("Averaged expression across duplicate symbols")
    else:
        logger.info("Kept highest expressing isoform per duplicate symbol")
    logger.info(f"Final gene count: {len(result)}")

    step.update(rows_after=len(result), groups_merged=groups_merged)
    if method == "random":
        step["seed"] = int(seed) if isinstance(seed, numbers.Integral) else "generator"
    return table.derive(result, step)


def find_duplicates(table: ExpressionTable, symbol_field: str = SYMBOL_COLUMN) -> pd.DataFrame:
    """
    Find which gene symbols appear multiple times.

    Returns:
        DataFrame with ``symbol`` and ``count`` columns, most duplicated
        first. Empty when every symbol is unique.
    """
    if not table.has_column(symbol_field):
        raise MissingSymbolColumn(f"Column {symbol_field} not found", stage="find_duplicates", field=symbol_field)

    symbols = table.column(symbol_field).dropna()
    counts = symbols.groupby(symbols, sort=False).size()
    counts = counts[counts > 1].sort_values(ascending=False, kind="mergesort")

    dup_df = pd.DataFrame({"symbol": counts.index.tolist(), "count": counts.to_numpy(dtype=int)})

    if dup_df.empty:
        logger.info("No duplicate symbols found.")
        return dup_df

    logger.info(f"Found {len(dup_df)} symbols with duplicates")
    logger.info(f"Total duplicate entries: {int((dup_df['count'] - 1).sum())}")
    top = dup_df.head(10)
    for symbol, count in zip(top["symbol"], top["count"]):
        logger.debug(f"  {symbol}: {count}")

    return dup_df


def compare_duplicate_methods(
    table: ExpressionTable,
    methods: Sequence[str] = ("random", "average", "highest"),
    symbol_field: str = SYMBOL_COLUMN,
    seed: Optional[SeedLike] = 0,
) -> Dict[str, Dict[str, Any]]:
    """Run each merge policy and report the resulting gene counts."""
    results = {}
    logger.info("Comparing duplicate handling methods...")
    for method in methods:
        logger.info(f"Method: {method}")
        processed = resolve_duplicates(table, method=method, symbol_field=symbol_field, seed=seed)
        results[method] = {"n_genes": processed.n_features, "method": method}
    return results
