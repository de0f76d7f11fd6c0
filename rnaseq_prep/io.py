"""
Reading and writing expression tables.

featureCounts output is the usual starting point: a tab-separated file with
``Geneid, Chr, Start, End, Strand, Length`` followed by one count column per
BAM file. The set of sample columns is decided here, once, and travels with
the table from then on.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from .errors import InvalidTable
from .table import ANNOTATION_COLUMNS, FEATURE_ID, METADATA_COLUMNS, ExpressionTable
from .utils import (
    load_metrics_json, save_metrics_json, validate_directory_exists, validate_file_exists
)

logger = logging.getLogger(__name__)

FEATURECOUNTS_COLUMNS = {
    "Geneid": FEATURE_ID,
    "Chr": "chromosome",
    "Start": "start",
    "End": "end",
    "Strand": "strand",
    "Length": "length",
}


def _metadata_path(output_file: Path) -> Path:
    return output_file.with_name(f"{output_file.stem}_metadata.json")


def load_featurecounts(file_path: Union[str, Path], comment: str = "#") -> ExpressionTable:
    """
    Load featureCounts output into an ExpressionTable.

    Args:
        file_path: Path to the featureCounts output file
        comment: Comment character of the header line(s)

    Returns:
        Table indexed by gene id with metadata and integer count columns

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidTable: If counts are not non-negative integers or ids repeat
    """
    path = validate_file_exists(file_path)
    logger.info(f"Loading featureCounts data from: {path}")

    df = pd.read_csv(path, sep="\t", comment=comment, dtype={"Chr": str, "Strand": str})
    df = df.rename(columns=FEATURECOUNTS_COLUMNS)
    if FEATURE_ID not in df.columns:
        df = df.rename(columns={df.columns[0]: FEATURE_ID})
    df[FEATURE_ID] = df[FEATURE_ID].astype(str)
    df = df.set_index(FEATURE_ID)

    reserved = set(METADATA_COLUMNS) | set(ANNOTATION_COLUMNS)
    samples = [c for c in df.columns if c not in reserved]
    if not samples:
        raise InvalidTable(f"No sample columns found in {path}", stage="load_featurecounts")

    non_integer = [s for s in samples if not pd.api.types.is_integer_dtype(df[s])]
    if non_integer:
        raise InvalidTable(
            f"Count columns must hold integers: {non_integer}", stage="load_featurecounts"
        )

    table = ExpressionTable(
        df,
        samples,
        steps=[{"stage": "load_featurecounts", "file": str(path), "rows_after": len(df)}],
    )
    logger.info(f"Loaded {table.n_features} genes and {table.n_samples} samples")
    return table


def save_count_matrix(
    table: ExpressionTable,
    output_file: Union[str, Path],
    include_metadata: bool = True,
) -> Path:
    """
    Save the table as CSV, with a JSON sidecar describing it.

    The sidecar (``<name>_metadata.json``) records dimensions, sample names,
    per-sample totals and means, and the steps that produced the table.

    Returns:
        Path of the written CSV file
    """
    output_file = Path(output_file)
    validate_directory_exists(output_file.parent, create=True)

    table.frame.to_csv(output_file)
    logger.info(f"Saved count matrix to: {output_file}")
    logger.info(f"Dimensions: {table.n_features} genes x {len(table.frame.columns)} columns")

    if include_metadata:
        counts = table.counts
        metadata = {
            "file": str(output_file),
            "date": datetime.now().isoformat(timespec="seconds"),
            "n_features": table.n_features,
            "n_samples": table.n_samples,
            "columns": list(table.frame.columns),
            "samples": list(table.samples),
            "total_counts": {s: float(v) for s, v in counts.sum(axis=0).items()},
            "mean_counts": {
                s: (float(v) if not np.isnan(v) else 0.0) for s, v in counts.mean(axis=0).items()
            },
            "steps": list(table.steps),
        }
        metadata_file = _metadata_path(output_file)
        save_metrics_json(metadata, metadata_file)
        logger.info(f"Saved metadata to: {metadata_file}")

    return output_file


def load_count_matrix(
    file_path: Union[str, Path],
    samples: Optional[Sequence[str]] = None,
) -> ExpressionTable:
    """
    Load a count matrix written by ``save_count_matrix``.

    Args:
        file_path: Path to the CSV file
        samples: Sample columns. Read from the JSON sidecar when omitted;
            without a sidecar every non-metadata column is a sample.
    """
    path = validate_file_exists(file_path)
    df = pd.read_csv(path, index_col=0, dtype={"chromosome": str, "strand": str})
    df.index = df.index.astype(str)

    steps = []
    metadata_file = _metadata_path(path)
    if samples is None and metadata_file.exists():
        metadata = load_metrics_json(metadata_file)
        samples = metadata.get("samples")
        steps = metadata.get("steps", [])
    if samples is None:
        reserved = set(METADATA_COLUMNS) | set(ANNOTATION_COLUMNS)
        samples = [c for c in df.columns if c not in reserved]

    for column in ANNOTATION_COLUMNS:
        if column in df.columns:
            df[column] = df[column].astype(object).where(df[column].notna(), None)

    table = ExpressionTable(df, samples, steps)
    logger.info(f"Loaded count matrix from: {path}")
    logger.info(f"Dimensions: {table.n_features} genes x {table.n_samples} samples")
    return table
