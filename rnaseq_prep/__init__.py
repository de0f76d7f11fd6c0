"""
rnaseq_prep - consolidation and filtering of RNA-seq count tables.

Turns a featureCounts gene table into a uniquely symbol-keyed, filtered
count matrix ready for differential expression tools.
"""

__version__ = "1.0.0"

from .annotate import MyGeneLookup, TableLookup, annotate_gene_types, annotate_genes
from .duplicates import MERGE_METHODS, compare_duplicate_methods, find_duplicates, resolve_duplicates
from .errors import (
    IncompletePredicate,
    InvalidTable,
    LookupUnavailable,
    MissingCategoryColumn,
    MissingColumn,
    MissingSampleColumns,
    MissingSymbolColumn,
    PreprocessingError,
    UnknownMethod,
)
from .filters import ExpressionPredicate, filter_by_category, filter_expression, filter_low_expression
from .summary import summarize
from .table import ExpressionTable, FeatureRecord

__all__ = [
    "__version__",
    "ExpressionTable",
    "FeatureRecord",
    "MyGeneLookup",
    "TableLookup",
    "annotate_genes",
    "annotate_gene_types",
    "MERGE_METHODS",
    "resolve_duplicates",
    "find_duplicates",
    "compare_duplicate_methods",
    "ExpressionPredicate",
    "filter_expression",
    "filter_low_expression",
    "filter_by_category",
    "summarize",
    "PreprocessingError",
    "MissingColumn",
    "MissingSymbolColumn",
    "MissingCategoryColumn",
    "MissingSampleColumns",
    "IncompletePredicate",
    "UnknownMethod",
    "LookupUnavailable",
    "InvalidTable",
]
