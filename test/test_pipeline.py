#!/usr/bin/env python3
"""
rnaseq_prep - Test Suite

Pytest test suite for the preprocessing stages, I/O, configuration and CLI.
"""

import sys
from pathlib import Path
from unittest.mock import Mock, patch

import numpy as np
import pandas as pd
import pytest
import requests

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from rnaseq_prep import cli
from rnaseq_prep.annotate import (
    MyGeneLookup, TableLookup, annotate_gene_types, annotate_genes, set_symbol_index, strip_version
)
from rnaseq_prep.chromosomes import chromosome_distribution, filter_chromosomes
from rnaseq_prep.config import (
    CONFIG_ENV_VAR, ConfigError, ExpressionConfig, GeneTypeConfig, PipelineConfig, load_config
)
from rnaseq_prep.duplicates import (
    MERGE_METHODS, compare_duplicate_methods, find_duplicates, resolve_duplicates
)
from rnaseq_prep.errors import (
    IncompletePredicate, InvalidTable, LookupUnavailable, MissingCategoryColumn,
    MissingColumn, MissingSampleColumns, MissingSymbolColumn, UnknownMethod
)
from rnaseq_prep.filters import (
    ExpressionPredicate, expression_statistics, filter_by_category,
    filter_expression, filter_low_expression
)
from rnaseq_prep.io import load_count_matrix, load_featurecounts, save_count_matrix
from rnaseq_prep.pipeline import run_preprocessing
from rnaseq_prep.summary import sample_info, summarize
from rnaseq_prep.table import ExpressionTable, FeatureRecord

from generate_test_data import CountTableGenerator, create_sample_data, make_table


@pytest.fixture
def duplicated_table():
    """Two features sharing symbol G1 plus a singleton G2."""
    return make_table(
        [[100, 110], [150, 160], [200, 210]],
        symbols=["G1", "G1", "G2"],
    )


@pytest.fixture
def unique_table():
    return make_table(
        [[5, 6, 7], [50, 60, 70], [0, 1, 0]],
        symbols=["A", "B", "C"],
        samples=["S1", "S2", "S3"],
    )


class TestExpressionTable:
    """Test the table model."""

    def test_sample_order_and_accessors(self, duplicated_table):
        assert duplicated_table.samples == ("S1", "S2")
        assert duplicated_table.n_features == 3
        assert duplicated_table.n_samples == 2
        assert list(duplicated_table.counts.columns) == ["S1", "S2"]
        assert "symbol" in duplicated_table.metadata.columns

    def test_negative_counts_rejected(self):
        with pytest.raises(InvalidTable):
            make_table([[1, -2]])

    def test_duplicate_feature_ids_rejected(self):
        with pytest.raises(InvalidTable):
            make_table([[1, 2], [3, 4]], ids=["ENSG1", "ENSG1"])

    def test_missing_sample_column(self):
        frame = pd.DataFrame({"S1": [1, 2]}, index=["a", "b"])
        with pytest.raises(MissingSampleColumns):
            ExpressionTable(frame, ["S1", "S2"])

    def test_records(self, duplicated_table):
        records = list(duplicated_table.records())
        assert len(records) == 3
        assert records[0].feature_id == "ENSG001"
        assert records[0].symbol == "G1"
        assert records[0].counts == {"S1": 100, "S2": 110}
        assert records[0].mean_count == 105.0
        assert records[0].category is None

    def test_from_records(self):
        table = ExpressionTable.from_records([
            FeatureRecord("ENSG1", {"A": 1, "B": 2}, chromosome="1", symbol="X"),
            FeatureRecord("ENSG2", {"A": 3, "B": 4}, chromosome="2", symbol="Y"),
        ])
        assert table.samples == ("A", "B")
        assert table.column("symbol").tolist() == ["X", "Y"]
        assert not table.has_column("start")

    def test_rename_samples(self, duplicated_table):
        renamed = duplicated_table.rename_samples(["S1", "missing"], ["Ctrl_R1", "Other"])
        assert renamed.samples == ("Ctrl_R1", "S2")
        assert duplicated_table.samples == ("S1", "S2")
        assert renamed.steps[-1]["stage"] == "rename_samples"

    def test_rename_samples_length_mismatch(self, duplicated_table):
        with pytest.raises(ValueError):
            duplicated_table.rename_samples(["S1"], ["A", "B"])

    def test_count_matrix_indexed_by_unique_symbols(self, unique_table, duplicated_table):
        assert unique_table.count_matrix().index.tolist() == ["A", "B", "C"]
        assert duplicated_table.count_matrix().index.tolist() == ["ENSG001", "ENSG002", "ENSG003"]


class TestAnnotation:
    """Test symbol and gene type annotation."""

    def test_strip_version(self):
        assert strip_version("ENSG00000141510.17") == "ENSG00000141510"
        assert strip_version("ENSG00000141510") == "ENSG00000141510"
        assert strip_version("TP53") == "TP53"

    def test_annotate_genes_discards_unmatched(self):
        table = make_table([[1, 2], [3, 4], [5, 6]])
        lookup = TableLookup.from_mapping({"ENSG001": "G1", "ENSG002": "G1", "ENSG003": None})

        annotated = annotate_genes(table, lookup, discard_unmatched=True)

        assert annotated.feature_ids == ["ENSG001", "ENSG002"]
        assert annotated.column("symbol").tolist() == ["G1", "G1"]
        step = annotated.steps[-1]
        assert step["matched"] == 2
        assert step["unmatched"] == 1
        assert step["match_rate"] == pytest.approx(66.67)
        assert step["duplicate_symbols"] == 1
        assert not table.has_column("symbol")

    def test_annotate_genes_keeps_unmatched(self):
        table = make_table([[1, 2], [3, 4]])
        lookup = TableLookup.from_mapping({"ENSG001": "G1"})

        annotated = annotate_genes(table, lookup, discard_unmatched=False)

        assert annotated.n_features == 2
        symbols = annotated.column("symbol")
        assert symbols.iloc[0] == "G1"
        assert pd.isna(symbols.iloc[1])

    def test_annotate_strips_versions(self):
        table = make_table([[1, 2]], ids=["ENSG00000000001.4"])
        lookup = TableLookup.from_mapping({"ENSG00000000001": "G1"})
        annotated = annotate_genes(table, lookup)
        assert annotated.column("symbol").tolist() == ["G1"]
        assert annotated.feature_ids == ["ENSG00000000001.4"]

    def test_annotate_missing_id_field(self):
        table = make_table([[1, 2]])
        with pytest.raises(MissingColumn):
            annotate_genes(table, TableLookup.from_mapping({}), id_field="gene_id")

    def test_annotate_gene_types(self, duplicated_table):
        reference = pd.DataFrame({
            "external_gene_name": ["G1", "G2"],
            "gene_biotype": ["protein-coding", "ncRNA"],
        })
        lookup = TableLookup(reference)
        typed = annotate_gene_types(duplicated_table, lookup)
        assert typed.column("category").tolist() == ["protein-coding", "protein-coding", "ncRNA"]
        assert typed.steps[-1]["distribution"] == {"protein-coding": 2, "ncRNA": 1}

    def test_annotate_gene_types_requires_symbols(self):
        table = make_table([[1, 2]])
        with pytest.raises(MissingSymbolColumn):
            annotate_gene_types(table, TableLookup.from_mapping({}))

    def test_lookup_without_namespace_is_unavailable(self, duplicated_table):
        lookup = TableLookup.from_mapping({"ENSG001": "G1"})
        with pytest.raises(LookupUnavailable) as excinfo:
            annotate_gene_types(duplicated_table, lookup)
        assert excinfo.value.stage == "annotate_gene_types"

    @pytest.mark.parametrize("error", [
        requests.ConnectionError("connection refused"),
        TimeoutError("timed out"),
        OSError("network unreachable"),
    ])
    def test_collaborator_errors_become_lookup_unavailable(self, duplicated_table, error):
        class DownLookup:
            def resolve(self, ids, source_namespace, target_namespace):
                raise error

        with pytest.raises(LookupUnavailable) as excinfo:
            annotate_genes(make_table([[1, 2]]), DownLookup())
        assert excinfo.value.stage == "annotate_genes"
        assert excinfo.value.field == "symbol"
        assert excinfo.value.__cause__ is error

        with pytest.raises(LookupUnavailable) as excinfo:
            annotate_gene_types(duplicated_table, DownLookup())
        assert excinfo.value.stage == "annotate_gene_types"
        assert excinfo.value.field == "category"

    def test_table_lookup_from_missing_file(self, tmp_path):
        with pytest.raises(LookupUnavailable):
            TableLookup.from_file(tmp_path / "missing.tsv")

    def test_table_lookup_first_row_wins(self):
        reference = pd.DataFrame({
            "ensembl_gene_id": ["ENSG1", "ENSG1"],
            "external_gene_name": ["FIRST", "SECOND"],
        })
        mapping = TableLookup(reference).resolve(["ENSG1", "ENSG2"], "ENSEMBL", "SYMBOL")
        assert mapping == {"ENSG1": "FIRST", "ENSG2": None}

    def test_set_symbol_index(self, unique_table):
        frame = set_symbol_index(unique_table)
        assert frame.index.tolist() == ["A", "B", "C"]
        assert "feature_id" in frame.columns
        assert "symbol" not in frame.columns


class TestMyGeneLookup:
    """Test the MyGene.info collaborator with a mocked HTTP session."""

    def _session(self, payload):
        session = Mock()
        session.post.return_value.json.return_value = payload
        return session

    def test_first_hit_wins(self):
        session = self._session([
            {"query": "ENSG1", "symbol": "TP53"},
            {"query": "ENSG1", "symbol": "TP53-ALT"},
            {"query": "ENSG2", "notfound": True},
        ])
        lookup = MyGeneLookup(organism="human", session=session)

        mapping = lookup.resolve(["ENSG1", "ENSG2"], "ENSEMBL", "SYMBOL")

        assert mapping == {"ENSG1": "TP53", "ENSG2": None}
        payload = session.post.call_args.kwargs["data"]
        assert payload["scopes"] == "ensembl.gene"
        assert payload["fields"] == "symbol"
        assert payload["species"] == 9606

    def test_batches_requests(self):
        session = self._session([])
        lookup = MyGeneLookup(organism="mouse", batch_size=2, session=session)
        lookup.resolve(["a", "b", "c", "a"], "ENSEMBL", "SYMBOL")
        assert session.post.call_count == 2

    def test_gene_type_query(self):
        session = self._session([{"query": "TP53", "type_of_gene": "protein-coding"}])
        lookup = MyGeneLookup(organism="org.Hs.eg.db", session=session)
        assert lookup.resolve(["TP53"], "SYMBOL", "GENETYPE") == {"TP53": "protein-coding"}

    def test_timeout_raises_lookup_unavailable(self):
        session = Mock()
        session.post.side_effect = requests.Timeout("slow")
        lookup = MyGeneLookup(timeout=0.1, session=session)
        with pytest.raises(LookupUnavailable):
            lookup.resolve(["ENSG1"], "ENSEMBL", "SYMBOL")

    def test_http_error_raises_lookup_unavailable(self):
        session = Mock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("503")
        lookup = MyGeneLookup(session=session)
        with pytest.raises(LookupUnavailable):
            lookup.resolve(["ENSG1"], "ENSEMBL", "SYMBOL")

    def test_unknown_organism(self):
        with pytest.raises(LookupUnavailable):
            MyGeneLookup(organism="org.Xx.eg.db")

    def test_failure_aborts_annotation_with_stage(self):
        session = Mock()
        session.post.side_effect = requests.ConnectionError("down")
        table = make_table([[1, 2]])
        with pytest.raises(LookupUnavailable) as excinfo:
            annotate_genes(table, MyGeneLookup(session=session))
        assert excinfo.value.stage == "annotate_genes"
        assert isinstance(excinfo.value.__cause__, LookupUnavailable)


class TestDuplicates:
    """Test duplicate symbol resolution."""

    def test_average(self, duplicated_table):
        result = resolve_duplicates(duplicated_table, method="average")
        assert result.n_features == 2
        g1 = result.counts.loc["ENSG001"].tolist()
        assert g1 == [125.0, 135.0]
        assert result.counts.loc["ENSG003"].tolist() == [200.0, 210.0]

    def test_average_takes_metadata_from_first_member(self):
        table = make_table(
            [[10, 10], [30, 30]],
            symbols=["G1", "G1"],
            categories=["protein-coding", "ncRNA"],
            chromosomes=["1", "2"],
        )
        result = resolve_duplicates(table, method="average")
        record = next(result.records())
        assert record.feature_id == "ENSG001"
        assert record.chromosome == "1"
        assert record.category == "protein-coding"
        assert record.counts == {"S1": 20.0, "S2": 20.0}

    def test_highest(self, duplicated_table):
        result = resolve_duplicates(duplicated_table, method="highest")
        assert result.feature_ids == ["ENSG002", "ENSG003"]
        assert result.counts.loc["ENSG002"].tolist() == [150, 160]

    def test_highest_tie_keeps_earliest(self):
        table = make_table([[10, 20], [20, 10], [1, 1]], symbols=["G1", "G1", "G1"])
        result = resolve_duplicates(table, method="highest")
        assert result.feature_ids == ["ENSG001"]

    def test_first(self, duplicated_table):
        result = resolve_duplicates(duplicated_table, method="first")
        assert result.feature_ids == ["ENSG001", "ENSG003"]
        assert result.counts.loc["ENSG001"].tolist() == [100, 110]

    def test_random_is_reproducible(self):
        n_groups = 20
        counts = [[i, i + 1] for i in range(n_groups * 3)]
        symbols = [f"G{i // 3}" for i in range(n_groups * 3)]
        table = make_table(counts, symbols=symbols)

        first = resolve_duplicates(table, method="random", seed=7)
        second = resolve_duplicates(table, method="random", seed=7)

        assert first.frame.to_csv() == second.frame.to_csv()
        assert first.n_features == n_groups
        assert first.column("symbol").tolist() == [f"G{i}" for i in range(n_groups)]

    def test_numpy_integer_seed_recorded(self, duplicated_table):
        result = resolve_duplicates(duplicated_table, method="random", seed=np.int64(7))
        assert result.steps[-1]["seed"] == 7
        assert isinstance(result.steps[-1]["seed"], int)
        expected = resolve_duplicates(duplicated_table, method="random", seed=7)
        assert result.equals(expected)

    def test_random_requires_explicit_seed(self, duplicated_table):
        with pytest.raises(ValueError):
            resolve_duplicates(duplicated_table, method="random", seed=None)

    @pytest.mark.parametrize("method", MERGE_METHODS)
    def test_no_duplicates_is_noop(self, unique_table, method):
        result = resolve_duplicates(unique_table, method=method, seed=1)
        assert result.frame.equals(unique_table.frame)
        assert result.steps[-1]["duplicate_entries"] == 0

    @pytest.mark.parametrize("method", MERGE_METHODS)
    def test_symbols_unique_after_resolution(self, method):
        generator = CountTableGenerator(n_genes=60, samples=["A", "B", "C"], seed=3)
        counts = generator.generate_counts().tolist()
        symbols = [f"G{i % 17}" if i % 11 else None for i in range(60)]
        table = make_table(counts, symbols=symbols, samples=["A", "B", "C"])

        result = resolve_duplicates(table, method=method, seed=11)

        present = result.column("symbol").dropna()
        assert present.is_unique
        assert result.n_features <= table.n_features
        assert result.column("symbol").isna().sum() == table.column("symbol").isna().sum()

    def test_unsymbolled_rows_pass_through_in_place(self):
        table = make_table(
            [[1, 1], [2, 2], [9, 9], [3, 3], [4, 4]],
            symbols=["A", None, "A", "B", None],
        )
        result = resolve_duplicates(table, method="highest")
        assert result.feature_ids == ["ENSG003", "ENSG002", "ENSG004", "ENSG005"]

    def test_input_not_modified(self, duplicated_table):
        before = duplicated_table.frame
        resolve_duplicates(duplicated_table, method="average")
        assert duplicated_table.frame.equals(before)
        assert pd.api.types.is_integer_dtype(duplicated_table.counts["S1"])

    def test_unknown_method(self, duplicated_table):
        with pytest.raises(UnknownMethod):
            resolve_duplicates(duplicated_table, method="median")

    def test_missing_symbol_column(self):
        with pytest.raises(MissingSymbolColumn):
            resolve_duplicates(make_table([[1, 2]]), method="first")

    def test_find_duplicates(self):
        table = make_table(
            [[1, 1]] * 6,
            symbols=["A", "B", "A", "C", "B", "A"],
        )
        dup_df = find_duplicates(table)
        assert dup_df["symbol"].tolist() == ["A", "B"]
        assert dup_df["count"].tolist() == [3, 2]

    def test_find_duplicates_empty(self, unique_table):
        assert find_duplicates(unique_table).empty

    def test_compare_methods(self, duplicated_table):
        results = compare_duplicate_methods(duplicated_table, methods=MERGE_METHODS, seed=1)
        assert set(results) == set(MERGE_METHODS)
        assert all(r["n_genes"] == 2 for r in results.values())


class TestExpressionFilter:
    """Test expression filters."""

    def test_mean_threshold_is_strict(self):
        table = make_table([[10, 10], [10, 11]])
        result = filter_low_expression(table, min_mean=10)
        assert result.feature_ids == ["ENSG002"]

    def test_mean_just_below_value_is_kept(self):
        table = make_table([[10, 10]])
        assert filter_low_expression(table, min_mean=10 - 0.0001).n_features == 1
        assert filter_low_expression(table, min_mean=10).n_features == 0

    def test_count_in_samples(self):
        table = make_table([[4, 6, 7]])
        kept = filter_low_expression(table, min_count=5, min_samples=2)
        dropped = filter_low_expression(table, min_count=5, min_samples=3)
        assert kept.n_features == 1
        assert dropped.n_features == 0

    @pytest.mark.parametrize("kwargs", [{"min_count": 5}, {"min_samples": 2}])
    def test_incomplete_predicate(self, kwargs):
        with pytest.raises(IncompletePredicate):
            filter_low_expression(make_table([[1, 2]]), **kwargs)

    def test_both_predicates_applied_in_sequence(self):
        table = make_table([
            [100, 0, 0],   # mean 33.3, one sample > 5
            [20, 20, 20],  # passes both
            [1, 2, 3],     # fails mean
        ])
        result = filter_expression(table, ExpressionPredicate(min_mean=10, min_count=5, min_samples=2))
        assert result.feature_ids == ["ENSG002"]
        step = result.steps[-1]
        assert step["passing_mean"] == 2
        assert step["passing_samples"] == 1
        assert step["removed"] == 2

    def test_counts_untouched(self, unique_table):
        result = filter_low_expression(unique_table, min_mean=1)
        assert result.counts.equals(unique_table.counts.loc[result.feature_ids])

    def test_expression_statistics(self, unique_table):
        stats = expression_statistics(unique_table)
        assert stats.index.tolist() == ["ENSG002", "ENSG001", "ENSG003"]
        assert stats.loc["ENSG001", "mean"] == 6.0
        assert stats.loc["ENSG003", "n_zero"] == 2
        assert stats.loc["ENSG003", "n_nonzero"] == 1


class TestCategoryFilter:
    """Test gene type filtering."""

    def test_keeps_allowed(self):
        table = make_table(
            [[1, 1], [2, 2], [3, 3]],
            symbols=["A", "B", "C"],
            categories=["protein-coding", "ncRNA", None],
        )
        result = filter_by_category(table, "protein-coding")
        assert result.feature_ids == ["ENSG001"]

        both = filter_by_category(table, ["protein-coding", "ncRNA"])
        assert both.feature_ids == ["ENSG001", "ENSG002"]

    def test_missing_category_column(self, unique_table):
        with pytest.raises(MissingCategoryColumn):
            filter_by_category(unique_table, ["protein-coding"])

    def test_separator_spellings_match(self):
        table = make_table(
            [[1, 1], [2, 2], [3, 3], [4, 4]],
            symbols=["A", "B", "C", "D"],
            categories=["protein_coding", "protein-coding", "lncRNA", None],
        )
        result = filter_by_category(table, ["protein-coding"])
        assert result.feature_ids == ["ENSG001", "ENSG002"]
        assert filter_by_category(table, "protein_coding").feature_ids == ["ENSG001", "ENSG002"]

    def test_empty_allowed_set(self, unique_table):
        with pytest.raises(ValueError):
            filter_by_category(unique_table, [])


class TestChromosomes:
    """Test chromosome filtering."""

    def test_keep_autosomes_and_x(self):
        table = make_table([[1, 1]] * 5, chromosomes=["1", "2", "X", "Y", "MT"])
        assert filter_chromosomes(table).n_features == 3

    def test_exclude_pattern(self):
        table = make_table([[1, 1]] * 4, chromosomes=["1", "Y", "MT", "GL000220.1"])
        result = filter_chromosomes(table, keep_pattern=None, exclude_pattern=r"^(Y|MT|KI|GL)")
        assert result.column("chromosome").tolist() == ["1"]

    def test_missing_chromosome_column(self):
        frame = pd.DataFrame({"S1": [1]}, index=["ENSG1"])
        with pytest.raises(MissingColumn):
            filter_chromosomes(ExpressionTable(frame, ["S1"]))

    def test_distribution_order(self):
        table = make_table([[1, 1]] * 6, chromosomes=["10", "2", "X", "1;1;1", "Y", "1"])
        distribution = chromosome_distribution(table)
        assert distribution.index.tolist() == ["1", "2", "10", "X", "Y"]
        assert distribution["1"] == 2


class TestSummary:
    """Test before/after summaries."""

    def test_summarize(self, duplicated_table):
        after = resolve_duplicates(duplicated_table, method="first")
        summary = summarize(duplicated_table, after)

        assert summary.rows_before == 3
        assert summary.rows_after == 2
        assert summary.rows_removed == 1
        assert summary.percent_removed == pytest.approx(33.3)
        assert summary.sample_totals_before == {"S1": 450.0, "S2": 480.0}
        assert summary.sample_totals_after == {"S1": 300.0, "S2": 320.0}
        assert summary.symbols_before.duplicate_entries == 1
        assert summary.symbols_after.duplicate_entries == 0
        assert summary.to_dict()["samples_after"] == ["S1", "S2"]

    def test_summarize_without_symbols(self):
        table = make_table([[1, 2]])
        summary = summarize(table, table)
        assert summary.symbols_before is None
        assert summary.rows_removed == 0

    def test_sample_info(self, unique_table):
        info = sample_info(unique_table)
        assert info["sample"].tolist() == ["S1", "S2", "S3"]
        assert info["total_counts"].tolist() == [55, 67, 77]
        assert info["genes_detected"].tolist() == [2, 3, 2]


class TestIO:
    """Test loading and saving count tables."""

    def test_load_featurecounts(self, tmp_path):
        generator = CountTableGenerator(n_genes=40, seed=1)
        path = generator.write_featurecounts(tmp_path / "featureCounts.txt")

        table = load_featurecounts(path)

        assert table.n_features == 40
        assert table.samples == tuple(f"{s}.bam" for s in generator.samples)
        assert table.feature_ids[0] == "ENSG00000000001"
        assert table.has_column("chromosome")
        assert table.column("chromosome").iloc[0] == "1"

    def test_load_featurecounts_rejects_fractional_counts(self, tmp_path):
        path = tmp_path / "counts.txt"
        path.write_text("Geneid\tChr\tStart\tEnd\tStrand\tLength\ts1.bam\nENSG1\t1\t1\t10\t+\t10\t1.5\n")
        with pytest.raises(InvalidTable):
            load_featurecounts(path)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_featurecounts(tmp_path / "nope.txt")

    def test_save_and_reload(self, tmp_path):
        table = make_table(
            [[1, 2], [3, 4], [5, 6]],
            symbols=["A", None, "A"],
            samples=["Ctrl", "Treat"],
        )
        resolved = resolve_duplicates(table, method="average")
        output = save_count_matrix(resolved, tmp_path / "tables" / "counts.csv")

        assert output.exists()
        assert (tmp_path / "tables" / "counts_metadata.json").exists()

        reloaded = load_count_matrix(output)
        assert reloaded.samples == ("Ctrl", "Treat")
        assert reloaded.feature_ids == resolved.feature_ids
        assert pd.isna(reloaded.column("symbol").loc["ENSG002"])
        assert reloaded.counts.loc["ENSG001"].tolist() == [3.0, 4.0]
        assert reloaded.steps[-1]["stage"] == "resolve_duplicates"


class TestConfig:
    """Test configuration loading."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = load_config()
        assert config.annotation.organism == "human"
        assert config.duplicates.method == "random"
        assert config.expression.min_mean == 10

    def test_user_file_overrides(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("duplicates:\n  method: average\nexpression:\n  min_count: 5\n  min_samples: 3\n")
        config = load_config(path)
        assert config.duplicates.method == "average"
        assert config.duplicates.seed == 42
        predicate = config.expression.predicate()
        assert predicate.min_mean == 10
        assert predicate.min_count == 5
        assert predicate.min_samples == 3

    def test_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yml"
        path.write_text("annotation:\n  organism: mouse\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_config().annotation.organism == "mouse"

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("duplicates:\n  strategy: first\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_invalid_method(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("duplicates:\n  method: median\n")
        with pytest.raises(UnknownMethod):
            load_config(path)

    def test_incomplete_expression_thresholds(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("expression:\n  min_count: 5\n")
        with pytest.raises(IncompletePredicate):
            load_config(path)


class TestPipeline:
    """Integration tests for a full preprocessing run."""

    def test_run_preprocessing(self, tmp_path):
        files = create_sample_data(tmp_path, n_genes=300, seed=5)
        table = load_featurecounts(files["featurecounts"])
        original = table.frame
        lookup = TableLookup.from_file(files["reference"])

        config = PipelineConfig(
            expression=ExpressionConfig(min_mean=1),
            gene_types=GeneTypeConfig(enabled=True, keep=["protein-coding"]),
        )
        result = run_preprocessing(table, lookup, config)

        final = result.table
        symbols = final.column("symbol")
        assert symbols.notna().all()
        assert symbols.is_unique
        assert set(final.column("category")) <= {"protein-coding"}
        assert final.column("chromosome").str.match(r"^[0-9X]+").all()
        assert (final.counts.mean(axis=1) > 1).all()
        assert final.n_features < table.n_features
        assert not result.duplicates.empty

        assert result.summary.rows_before == 300
        assert result.summary.rows_after == final.n_features
        assert [s["stage"] for s in final.steps] == [
            "load_featurecounts",
            "filter_chromosomes",
            "annotate_genes",
            "resolve_duplicates",
            "filter_expression",
            "annotate_gene_types",
            "filter_by_category",
        ]
        assert table.frame.equals(original)

    def test_same_seed_same_result(self, tmp_path):
        files = create_sample_data(tmp_path, n_genes=120, seed=9)
        table = load_featurecounts(files["featurecounts"])
        lookup = TableLookup.from_file(files["reference"])
        config = PipelineConfig()

        a = run_preprocessing(table, lookup, config).table
        b = run_preprocessing(table, lookup, config).table
        assert a.equals(b)


class TestCLI:
    """Test command-line interface."""

    def test_cli_help(self):
        from typer.testing import CliRunner

        runner = CliRunner()
        result = runner.invoke(cli.app, ["--help"])

        assert result.exit_code == 0
        assert "rnaseq_prep" in result.output

    def test_show_config(self):
        from typer.testing import CliRunner

        runner = CliRunner()
        result = runner.invoke(cli.app, ["show-config"])

        assert result.exit_code == 0
        assert "duplicates" in result.output

    def test_preprocess_command(self, tmp_path):
        from typer.testing import CliRunner

        files = create_sample_data(tmp_path / "data", n_genes=150)
        output_dir = tmp_path / "results"

        runner = CliRunner()
        result = runner.invoke(cli.app, [
            "preprocess", str(files["featurecounts"]),
            "--output-dir", str(output_dir),
            "--reference", str(files["reference"]),
            "--method", "average",
            "--min-mean", "1",
        ])

        assert result.exit_code == 0, result.output
        assert (output_dir / "filtered_counts_average.csv").exists()
        assert (output_dir / "filtered_counts_average_metadata.json").exists()
        assert (output_dir / "sample_info.csv").exists()
        assert (output_dir / "summary.json").exists()

    def test_annotate_then_inspect_duplicates(self, tmp_path):
        from typer.testing import CliRunner

        files = create_sample_data(tmp_path / "data", n_genes=60)
        annotated = tmp_path / "annotated.csv"

        runner = CliRunner()
        result = runner.invoke(cli.app, [
            "annotate", str(files["featurecounts"]),
            "--output-file", str(annotated),
            "--reference", str(files["reference"]),
        ])
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli.app, ["duplicates", str(annotated)])
        assert result.exit_code == 0
        assert "GENE0008" in result.output

        result = runner.invoke(cli.app, ["compare-methods", str(annotated)])
        assert result.exit_code == 0

    def test_threshold_option_keeps_config_thresholds(self, tmp_path):
        from typer.testing import CliRunner

        files = create_sample_data(tmp_path / "data", n_genes=80)
        config_file = tmp_path / "config.yml"
        config_file.write_text("expression:\n  min_mean: 10\n  min_count: 5\n  min_samples: 2\n")

        runner = CliRunner()
        with patch.object(cli, "run_preprocessing", wraps=run_preprocessing) as run:
            result = runner.invoke(cli.app, [
                "preprocess", str(files["featurecounts"]),
                "--output-dir", str(tmp_path / "results"),
                "--config", str(config_file),
                "--reference", str(files["reference"]),
                "--min-mean", "3",
            ])

        assert result.exit_code == 0, result.output
        expression = run.call_args.args[2].expression
        assert expression.min_mean == 3
        assert expression.min_count == 5
        assert expression.min_samples == 2

    def test_preprocess_failure_exits_nonzero(self, tmp_path):
        from typer.testing import CliRunner

        runner = CliRunner()
        result = runner.invoke(cli.app, [
            "preprocess", str(tmp_path / "missing.txt"),
            "--output-dir", str(tmp_path / "results"),
        ])
        assert result.exit_code == 1


if __name__ == '__main__':
    # Run tests when script is executed directly
    pytest.main([__file__, '-v'])
