"""
Expression table model.

An ExpressionTable couples a feature-indexed DataFrame with the explicit,
ordered list of sample columns it carries. Stages never modify a table in
place: every stage builds a new frame and wraps it with ``derive``, which
also appends that stage's diagnostics to ``steps``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import InvalidTable, MissingSampleColumns

logger = logging.getLogger(__name__)

FEATURE_ID = "feature_id"
METADATA_COLUMNS = ("chromosome", "start", "end", "strand", "length")
SYMBOL_COLUMN = "symbol"
CATEGORY_COLUMN = "category"
ANNOTATION_COLUMNS = (SYMBOL_COLUMN, CATEGORY_COLUMN)


@dataclass(frozen=True)
class FeatureRecord:
    """One row of an expression table."""

    feature_id: str
    counts: Dict[str, float]
    chromosome: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None
    strand: Optional[str] = None
    length: Optional[int] = None
    symbol: Optional[str] = None
    category: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def mean_count(self) -> float:
        if not self.counts:
            return 0.0
        return float(np.mean(list(self.counts.values())))


def _missing_to_none(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and np.isnan(value):
        return None
    if value is pd.NA or value is pd.NaT:
        return None
    return value


class ExpressionTable:
    """
    Feature x sample count table with carried metadata.

    Args:
        frame: DataFrame indexed by feature id. Holds the metadata columns,
            optional ``symbol``/``category`` columns and one column per sample.
        samples: Ordered sample column names.
        steps: Diagnostics recorded by the stages that produced this table.
    """

    def __init__(
        self,
        frame: pd.DataFrame,
        samples: Sequence[str],
        steps: Iterable[Dict[str, Any]] = (),
    ):
        self._samples: Tuple[str, ...] = tuple(samples)
        self._frame = self._arrange(frame.copy())
        self._steps: Tuple[Dict[str, Any], ...] = tuple(dict(s) for s in steps)
        self.validate()

    # ------------------------------------------------------------------
    # construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_records(
        cls,
        records: Iterable[FeatureRecord],
        samples: Optional[Sequence[str]] = None,
    ) -> "ExpressionTable":
        """Build a table from FeatureRecord values."""
        rows = []
        ids = []
        for record in records:
            if samples is None:
                samples = list(record.counts)
            row = {
                "chromosome": record.chromosome,
                "start": record.start,
                "end": record.end,
                "strand": record.strand,
                "length": record.length,
            }
            if record.symbol is not None:
                row[SYMBOL_COLUMN] = record.symbol
            if record.category is not None:
                row[CATEGORY_COLUMN] = record.category
            row.update(record.extra)
            row.update(record.counts)
            rows.append(row)
            ids.append(record.feature_id)

        samples = list(samples or [])
        frame = pd.DataFrame(rows, index=pd.Index(ids, name=FEATURE_ID))
        # Drop metadata columns nobody supplied
        empty_meta = [c for c in METADATA_COLUMNS if c in frame.columns and frame[c].isna().all()]
        frame = frame.drop(columns=empty_meta)
        for sample in samples:
            if sample not in frame.columns:
                frame[sample] = pd.Series(dtype="int64")
        return cls(frame, samples)

    def _arrange(self, frame: pd.DataFrame) -> pd.DataFrame:
        frame.index.name = FEATURE_ID
        missing = [s for s in self._samples if s not in frame.columns]
        if missing:
            raise MissingSampleColumns(f"Sample columns not found: {missing}", field=", ".join(missing))
        sample_set = set(self._samples)
        meta = [c for c in METADATA_COLUMNS if c in frame.columns]
        annot = [c for c in ANNOTATION_COLUMNS if c in frame.columns]
        other = [c for c in frame.columns if c not in sample_set and c not in meta and c not in annot]
        return frame[meta + annot + other + list(self._samples)]

    def validate(self, stage: Optional[str] = None) -> None:
        """
        Check the structural invariants of the table.

        Raises:
            MissingSampleColumns: If a declared sample column is absent.
            InvalidTable: On duplicate sample names, duplicate feature ids,
                sample names colliding with metadata, or negative/missing counts.
        """
        if len(set(self._samples)) != len(self._samples):
            raise InvalidTable("Sample names are not unique", stage=stage)

        reserved = set(METADATA_COLUMNS) | set(ANNOTATION_COLUMNS)
        clashes = [s for s in self._samples if s in reserved]
        if clashes:
            raise InvalidTable(f"Sample names clash with metadata columns: {clashes}", stage=stage)

        missing = [s for s in self._samples if s not in self._frame.columns]
        if missing:
            raise MissingSampleColumns(
                f"Sample columns not found: {missing}", stage=stage, field=", ".join(missing)
            )

        if not self._frame.index.is_unique:
            dups = self._frame.index[self._frame.index.duplicated()].unique().tolist()
            raise InvalidTable(f"Feature ids are not unique: {dups[:5]}", stage=stage, field=FEATURE_ID)

        counts = self._frame[list(self._samples)]
        if len(counts) == 0:
            return
        non_numeric = [s for s in self._samples if not pd.api.types.is_numeric_dtype(counts[s])]
        if non_numeric:
            raise InvalidTable(f"Non-numeric count columns: {non_numeric}", stage=stage)
        if counts.isna().any().any():
            raise InvalidTable("Count matrix contains missing values", stage=stage)
        if (counts < 0).any().any():
            raise InvalidTable("Count matrix contains negative values", stage=stage)

    def derive(self, frame: pd.DataFrame, step: Optional[Dict[str, Any]] = None) -> "ExpressionTable":
        """Return a new table over ``frame`` sharing this table's samples."""
        steps = self._steps + ((step,) if step else ())
        return ExpressionTable(frame, self._samples, steps)

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------

    @property
    def frame(self) -> pd.DataFrame:
        """A copy of the underlying DataFrame."""
        return self._frame.copy()

    @property
    def samples(self) -> Tuple[str, ...]:
        return self._samples

    @property
    def steps(self) -> Tuple[Dict[str, Any], ...]:
        return tuple(dict(s) for s in self._steps)

    @property
    def feature_ids(self) -> List[str]:
        return self._frame.index.tolist()

    @property
    def counts(self) -> pd.DataFrame:
        return self._frame[list(self._samples)].copy()

    @property
    def metadata(self) -> pd.DataFrame:
        return self._frame.drop(columns=list(self._samples))

    @property
    def n_features(self) -> int:
        return len(self._frame)

    @property
    def n_samples(self) -> int:
        return len(self._samples)

    def has_column(self, name: str) -> bool:
        return name in self._frame.columns

    def column(self, name: str) -> pd.Series:
        return self._frame[name].copy()

    def __len__(self) -> int:
        return len(self._frame)

    def __repr__(self) -> str:
        return f"ExpressionTable({self.n_features} features x {self.n_samples} samples)"

    def equals(self, other: "ExpressionTable") -> bool:
        """True if both tables hold the same samples, rows and values."""
        return self._samples == other._samples and self._frame.equals(other._frame)

    def records(self) -> Iterator[FeatureRecord]:
        """Yield the rows as FeatureRecord values, in table order."""
        known = set(METADATA_COLUMNS) | set(ANNOTATION_COLUMNS) | set(self._samples)
        extra_cols = [c for c in self._frame.columns if c not in known]
        for feature_id, row in self._frame.iterrows():
            yield FeatureRecord(
                feature_id=feature_id,
                counts={s: row[s] for s in self._samples},
                chromosome=_missing_to_none(row.get("chromosome")),
                start=_missing_to_none(row.get("start")),
                end=_missing_to_none(row.get("end")),
                strand=_missing_to_none(row.get("strand")),
                length=_missing_to_none(row.get("length")),
                symbol=_missing_to_none(row.get(SYMBOL_COLUMN)),
                category=_missing_to_none(row.get(CATEGORY_COLUMN)),
                extra={c: _missing_to_none(row[c]) for c in extra_cols},
            )

    def count_matrix(self, symbol_field: str = SYMBOL_COLUMN) -> pd.DataFrame:
        """
        Sample-only count matrix.

        Indexed by symbol when every row has a unique symbol, otherwise by
        feature id.
        """
        matrix = self.counts
        if symbol_field in self._frame.columns:
            symbols = self._frame[symbol_field]
            if symbols.notna().all() and symbols.is_unique:
                matrix.index = pd.Index(symbols.tolist(), name=symbol_field)
        return matrix

    # ------------------------------------------------------------------
    # transformations
    # ------------------------------------------------------------------

    def rename_samples(self, old_names: Sequence[str], new_names: Sequence[str]) -> "ExpressionTable":
        """
        Rename sample columns.

        Names in ``old_names`` that are not samples are skipped with a warning.

        Raises:
            ValueError: If either list is empty or their lengths differ.
        """
        if not old_names or not new_names:
            raise ValueError("Both old_names and new_names must be provided")
        if len(old_names) != len(new_names):
            raise ValueError("old_names and new_names must have the same length")

        missing = [n for n in old_names if n not in self._samples]
        if missing:
            logger.warning(f"These sample columns were not found: {', '.join(missing)}")

        mapping = {old: new for old, new in zip(old_names, new_names) if old in self._samples}
        samples = [mapping.get(s, s) for s in self._samples]
        frame = self._frame.rename(columns=mapping)
        logger.info(f"Renamed {len(mapping)} sample columns")

        step = {"stage": "rename_samples", "renamed": mapping}
        return ExpressionTable(frame, samples, self._steps + (step,))

