"""
Gene annotation module.

This module attaches gene symbols and gene types to an expression table.
Lookups are delegated to an injected collaborator implementing
``AnnotationLookup``; two are provided here:

  - MyGeneLookup: batch queries against the MyGene.info REST service
  - TableLookup: an offline reference table (e.g. a BioMart export)
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Union

import pandas as pd
import requests

from .errors import LookupUnavailable, MissingColumn, MissingSymbolColumn
from .table import CATEGORY_COLUMN, SYMBOL_COLUMN, ExpressionTable
from .utils import percent, validate_file_exists

logger = logging.getLogger(__name__)

MYGENE_URL = "https://mygene.info/v3/query"

# Organism datasets accepted by MyGeneLookup, keyed by name or alias
ORGANISM_TAXIDS = {
    "human": 9606,
    "homo_sapiens": 9606,
    "org.hs.eg.db": 9606,
    "mouse": 10090,
    "mus_musculus": 10090,
    "org.mm.eg.db": 10090,
    "rat": 10116,
    "rattus_norvegicus": 10116,
    "org.rn.eg.db": 10116,
    "zebrafish": 7955,
    "org.dr.eg.db": 7955,
    "fruitfly": 7227,
    "org.dm.eg.db": 7227,
}

# Namespace -> (query scope, returned field)
MYGENE_NAMESPACES = {
    "ENSEMBL": ("ensembl.gene", "ensembl.gene"),
    "SYMBOL": ("symbol", "symbol"),
    "ENTREZID": ("entrezgene", "entrezgene"),
    "GENETYPE": ("type_of_gene", "type_of_gene"),
}

_ENSEMBL_VERSION = re.compile(r"^(ENS[A-Z]*[GTP]\d+)\.\d+$")


class AnnotationLookup(Protocol):
    """Collaborator that maps identifiers from one namespace to another."""

    def resolve(
        self,
        ids: Sequence[str],
        source_namespace: str,
        target_namespace: str,
    ) -> Dict[str, Optional[str]]:
        ...


def strip_version(feature_id: str) -> str:
    """
    Drop the version suffix from an Ensembl identifier.

    >>> strip_version("ENSG00000141510.17")
    'ENSG00000141510'
    """
    match = _ENSEMBL_VERSION.match(str(feature_id))
    return match.group(1) if match else str(feature_id)


def _first_value(value) -> Optional[str]:
    """Reduce a MyGene field value to a single string."""
    if value is None:
        return None
    if isinstance(value, list):
        return _first_value(value[0]) if value else None
    if isinstance(value, dict):
        # ensembl blocks look like {"gene": "ENSG..."}
        return _first_value(value.get("gene"))
    text = str(value).strip()
    return text or None


def _extract_field(hit: dict, dotted: str) -> Optional[str]:
    head, _, rest = dotted.partition(".")
    value = hit.get(head)
    if rest and value is not None:
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            value = value.get(rest)
    return _first_value(value)


class MyGeneLookup:
    """
    Annotation lookup backed by the MyGene.info query service.

    Args:
        organism: Organism dataset name (``human``, ``mouse``, ``org.Hs.eg.db``...)
        timeout: Per-request timeout in seconds
        batch_size: Number of identifiers per POST request (service limit 1000)
        url: Query endpoint
        session: Optional requests session

    Raises:
        LookupUnavailable: If the organism dataset is not supported.
    """

    def __init__(
        self,
        organism: str = "human",
        timeout: float = 30.0,
        batch_size: int = 1000,
        url: str = MYGENE_URL,
        session: Optional[requests.Session] = None,
    ):
        taxid = ORGANISM_TAXIDS.get(str(organism).lower())
        if taxid is None:
            raise LookupUnavailable(
                f"Unknown organism dataset '{organism}'. "
                f"Available: {', '.join(sorted(ORGANISM_TAXIDS))}",
                field="organism",
            )
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.organism = organism
        self.taxid = taxid
        self.timeout = timeout
        self.batch_size = batch_size
        self.url = url
        self.session = session or requests.Session()

    def _namespace(self, name: str, role: str):
        try:
            return MYGENE_NAMESPACES[name.upper()]
        except KeyError:
            raise LookupUnavailable(
                f"Unsupported {role} namespace '{name}'. "
                f"Available: {', '.join(MYGENE_NAMESPACES)}",
                field=role,
            )

    def _query(self, batch: List[str], scope: str, field: str) -> List[dict]:
        payload = {
            "q": ",".join(batch),
            "scopes": scope,
            "fields": field,
            "species": self.taxid,
        }
        try:
            response = self.session.post(self.url, data=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as e:
            raise LookupUnavailable(f"MyGene.info request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise LookupUnavailable(f"MyGene.info request failed: {e}") from e
        except ValueError as e:
            raise LookupUnavailable(f"MyGene.info returned an invalid response: {e}") from e

    def resolve(
        self,
        ids: Sequence[str],
        source_namespace: str,
        target_namespace: str,
    ) -> Dict[str, Optional[str]]:
        """
        Resolve ``ids`` from ``source_namespace`` to ``target_namespace``.

        When the service returns several hits for one query, the first hit in
        response order wins. Identifiers without a hit map to None.
        """
        scope, _ = self._namespace(source_namespace, "source")
        _, field = self._namespace(target_namespace, "target")

        unique_ids = list(dict.fromkeys(str(i) for i in ids))
        result: Dict[str, Optional[str]] = {i: None for i in unique_ids}
        seen = set()

        for start in range(0, len(unique_ids), self.batch_size):
            batch = unique_ids[start:start + self.batch_size]
            logger.debug(f"Querying MyGene.info for {len(batch)} identifiers")
            for hit in self._query(batch, scope, field):
                query = str(hit.get("query"))
                if query not in result or query in seen or hit.get("notfound"):
                    continue
                value = _extract_field(hit, field)
                if value is not None:
                    result[query] = value
                    seen.add(query)

        return result


class TableLookup:
    """
    Annotation lookup backed by a reference table.

    Args:
        reference: DataFrame with one column per namespace
        columns: Mapping of namespace name (``ENSEMBL``, ``SYMBOL``,
            ``GENETYPE``...) to column name in ``reference``
    """

    DEFAULT_COLUMNS = {
        "ENSEMBL": "ensembl_gene_id",
        "SYMBOL": "external_gene_name",
        "GENETYPE": "gene_biotype",
        "ENTREZID": "entrezgene_id",
    }

    def __init__(self, reference: pd.DataFrame, columns: Optional[Mapping[str, str]] = None):
        self.reference = reference
        self.columns = {k.upper(): v for k, v in (columns or self.DEFAULT_COLUMNS).items()}

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        columns: Optional[Mapping[str, str]] = None,
    ) -> "TableLookup":
        """Load a TSV or CSV reference table."""
        try:
            path = validate_file_exists(path)
        except FileNotFoundError as e:
            raise LookupUnavailable(f"Annotation reference not found: {path}") from e
        sep = "," if path.suffix.lower() == ".csv" else "\t"
        reference = pd.read_csv(path, sep=sep, dtype=str)
        logger.info(f"Loaded annotation reference with {len(reference)} rows from {path}")
        return cls(reference, columns)

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Optional[str]],
        source_namespace: str = "ENSEMBL",
        target_namespace: str = "SYMBOL",
    ) -> "TableLookup":
        """Build a single-namespace-pair lookup from a plain dict."""
        source, target = source_namespace.upper(), target_namespace.upper()
        reference = pd.DataFrame({source: list(mapping.keys()), target: list(mapping.values())})
        return cls(reference, {source: source, target: target})

    def _column(self, namespace: str) -> str:
        column = self.columns.get(namespace.upper())
        if column is None or column not in self.reference.columns:
            raise LookupUnavailable(
                f"Reference table has no column for namespace '{namespace}'",
                field=namespace,
            )
        return column

    def resolve(
        self,
        ids: Sequence[str],
        source_namespace: str,
        target_namespace: str,
    ) -> Dict[str, Optional[str]]:
        source = self._column(source_namespace)
        target = self._column(target_namespace)

        pairs = self.reference[[source, target]].dropna()
        pairs = pairs.drop_duplicates(subset=[source], keep="first")
        lookup = dict(zip(pairs[source].astype(str), pairs[target].astype(str)))
        return {str(i): lookup.get(str(i)) for i in ids}


def _resolve(
    lookup: AnnotationLookup,
    ids: List[str],
    source_namespace: str,
    target_namespace: str,
    stage: str,
    field: str,
) -> Dict[str, Optional[str]]:
    try:
        return lookup.resolve(ids, source_namespace, target_namespace)
    except LookupUnavailable as e:
        raise LookupUnavailable(e.detail, stage=stage, field=e.field or field) from e
    except (requests.RequestException, OSError, TimeoutError) as e:
        raise LookupUnavailable(
            f"Annotation lookup failed: {type(e).__name__}: {e}", stage=stage, field=field
        ) from e


def annotate_genes(
    table: ExpressionTable,
    lookup: AnnotationLookup,
    id_type: str = "ENSEMBL",
    key_type: str = "SYMBOL",
    discard_unmatched: bool = True,
    id_field: Optional[str] = None,
    symbol_field: str = SYMBOL_COLUMN,
) -> ExpressionTable:
    """
    Convert feature identifiers to gene symbols.

    Args:
        table: Input expression table
        lookup: Annotation collaborator
        id_type: Namespace of the feature identifiers
        key_type: Namespace to resolve to
        discard_unmatched: Remove features without a symbol
        id_field: Column holding the identifiers (default: the feature id index)
        symbol_field: Name of the column that receives the symbols

    Returns:
        New table with the symbol column added

    Raises:
        MissingColumn: If ``id_field`` is not a column of the table
        LookupUnavailable: If the collaborator cannot serve the request
    """
    stage = "annotate_genes"
    table.validate(stage=stage)

    frame = table.frame
    if id_field is None:
        raw_ids = frame.index.astype(str).tolist()
    elif id_field in frame.columns:
        raw_ids = frame[id_field].astype(str).tolist()
    else:
        raise MissingColumn(f"Column {id_field} not found", stage=stage, field=id_field)

    if id_type.upper() == "ENSEMBL":
        query_ids = [strip_version(i) for i in raw_ids]
    else:
        query_ids = raw_ids

    logger.info(f"Annotating {len(query_ids)} genes ({id_type} -> {key_type})")
    mapping = _resolve(lookup, list(dict.fromkeys(query_ids)), id_type, key_type, stage, symbol_field)

    resolved = [mapping.get(i) for i in query_ids]
    symbols = pd.Series(
        [s if s is not None and str(s).strip() else None for s in resolved],
        index=frame.index,
        dtype="object",
    )
    frame[symbol_field] = symbols

    n_total = len(frame)
    n_matched = int(symbols.notna().sum())
    n_unmatched = n_total - n_matched
    logger.info(f"Matched: {n_matched} genes")
    logger.info(f"Unmatched: {n_unmatched} genes")
    logger.info(f"Match rate: {percent(n_matched, n_total)}%")

    n_removed = 0
    if discard_unmatched:
        frame = frame[frame[symbol_field].notna()]
        n_removed = n_total - len(frame)
        logger.info(f"Removed {n_removed} genes without symbols")

    present = frame[symbol_field].dropna()
    n_unique = int(present.nunique())
    n_duplicates = len(present) - n_unique
    logger.info(f"Unique gene symbols: {n_unique}")
    logger.info(f"Total rows: {len(frame)}")
    if n_duplicates > 0:
        logger.info(f"Duplicate symbols: {n_duplicates} (will need to handle duplicates)")

    step = {
        "stage": stage,
        "id_type": id_type,
        "key_type": key_type,
        "rows_before": n_total,
        "rows_after": len(frame),
        "matched": n_matched,
        "unmatched": n_unmatched,
        "match_rate": percent(n_matched, n_total),
        "removed": n_removed,
        "unique_symbols": n_unique,
        "duplicate_symbols": n_duplicates,
    }
    return table.derive(frame, step)


def annotate_gene_types(
    table: ExpressionTable,
    lookup: AnnotationLookup,
    symbol_field: str = SYMBOL_COLUMN,
    category_field: str = CATEGORY_COLUMN,
) -> ExpressionTable:
    """
    Add gene type information (protein-coding, ncRNA, ...).

    Raises:
        MissingSymbolColumn: If the table has not been annotated with symbols
        LookupUnavailable: If the collaborator cannot serve the request
    """
    stage = "annotate_gene_types"
    table.validate(stage=stage)
    if not table.has_column(symbol_field):
        raise MissingSymbolColumn(f"Column {symbol_field} not found", stage=stage, field=symbol_field)

    frame = table.frame
    symbols = frame[symbol_field]
    query = list(dict.fromkeys(symbols.dropna().astype(str)))
    logger.info(f"Annotating gene types for {len(symbols)} genes")

    mapping = _resolve(lookup, query, "SYMBOL", "GENETYPE", stage, category_field)
    frame[category_field] = [
        mapping.get(str(s)) if pd.notna(s) else None for s in symbols
    ]

    distribution = frame[category_field].value_counts(dropna=False)
    logger.info("Gene type distribution:")
    for label, count in distribution.items():
        logger.info(f"  {label if pd.notna(label) else '<NA>'}: {count}")

    step = {
        "stage": stage,
        "rows_before": len(frame),
        "rows_after": len(frame),
        "typed": int(frame[category_field].notna().sum()),
        "distribution": {
            (str(k) if pd.notna(k) else "NA"): int(v) for k, v in distribution.items()
        },
    }
    return table.derive(frame, step)


def set_symbol_index(
    table: ExpressionTable,
    symbol_field: str = SYMBOL_COLUMN,
    keep_symbol_column: bool = False,
) -> pd.DataFrame:
    """
    Return the table's frame re-indexed by gene symbol.

    The feature id is kept as a regular column.
    """
    if not table.has_column(symbol_field):
        raise MissingSymbolColumn(f"Column {symbol_field} not found", stage="set_symbol_index", field=symbol_field)

    frame = table.frame
    if frame[symbol_field].duplicated().any():
        logger.warning("Duplicate symbols found. Consider using resolve_duplicates() first.")

    frame = frame.reset_index()
    frame.index = pd.Index(frame[symbol_field].tolist(), name=symbol_field)
    if not keep_symbol_column:
        frame = frame.drop(columns=[symbol_field])
    return frame
