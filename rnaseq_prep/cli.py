#!/usr/bin/env python3
"""
rnaseq_prep CLI

Command-line interface for RNA-seq count table preprocessing.
Annotates featureCounts output with gene symbols, resolves duplicate
symbols, filters lowly expressed genes and writes the final count matrix.
"""

import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .annotate import annotate_genes
from .config import load_config
from .duplicates import MERGE_METHODS, compare_duplicate_methods, find_duplicates
from .io import load_count_matrix, load_featurecounts, save_count_matrix
from .pipeline import build_lookup, run_preprocessing
from .summary import print_processing_summary, sample_info
from .utils import save_metrics_json, setup_logging, validate_directory_exists

app = typer.Typer(
    name="rnaseq_prep",
    help="rnaseq_prep - Consolidate and filter RNA-seq gene count tables",
    add_completion=False,
)

console = Console()


# Global options
def version_callback(value: bool):
    if value:
        console.print(f"rnaseq_prep v{__version__}")
        raise typer.Exit()


def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """rnaseq_prep CLI"""
    pass


@app.command()
def preprocess(
    input_file: Path = typer.Argument(..., help="featureCounts output file"),
    output_dir: Path = typer.Option("./preprocessed", help="Output directory"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML configuration file"),
    method: Optional[str] = typer.Option(None, help=f"Duplicate method ({', '.join(MERGE_METHODS)})"),
    seed: Optional[int] = typer.Option(None, help="Seed for the random duplicate method"),
    min_mean: Optional[float] = typer.Option(None, help="Minimum mean expression"),
    min_count: Optional[float] = typer.Option(None, help="Minimum count per sample"),
    min_samples: Optional[int] = typer.Option(None, help="Samples that must exceed --min-count"),
    gene_type: Optional[List[str]] = typer.Option(None, help="Gene type(s) to keep"),
    reference: Optional[Path] = typer.Option(None, help="Annotation reference table (TSV/CSV)"),
    organism: Optional[str] = typer.Option(None, help="Organism dataset for MyGene.info"),
):
    """Run the full preprocessing workflow on a featureCounts table."""
    console.print("[bold blue]Running preprocessing[/bold blue]")

    try:
        config = load_config(config_file)
        if method is not None or seed is not None:
            config.duplicates = replace(
                config.duplicates,
                method=method if method is not None else config.duplicates.method,
                seed=seed if seed is not None else config.duplicates.seed,
            )
        thresholds = {
            name: value
            for name, value in (
                ("min_mean", min_mean), ("min_count", min_count), ("min_samples", min_samples)
            )
            if value is not None
        }
        if thresholds:
            config.expression = replace(config.expression, **thresholds)
        if gene_type:
            config.gene_types = replace(config.gene_types, enabled=True, keep=list(gene_type))
        if reference is not None or organism is not None:
            config.annotation = replace(
                config.annotation,
                reference=str(reference) if reference is not None else config.annotation.reference,
                organism=organism or config.annotation.organism,
            )
        config.validate()

        output_dir = validate_directory_exists(output_dir, create=True)
        table = load_featurecounts(input_file)
        lookup = build_lookup(config.annotation)
        result = run_preprocessing(table, lookup, config)

        matrix_file = save_count_matrix(
            result.table, output_dir / f"filtered_counts_{config.duplicates.method}.csv"
        )
        result.duplicates.to_csv(output_dir / "duplicate_symbols.tsv", sep="\t", index=False)
        sample_info(result.table).to_csv(output_dir / "sample_info.csv", index=False)
        save_metrics_json(result.summary.to_dict(), output_dir / "summary.json")

        print_processing_summary(result.summary, console=console)
        console.print("[bold green]Preprocessing completed successfully![/bold green]")
        console.print(f"Results saved to: {matrix_file}")

    except Exception as e:
        console.print(f"[bold red]Error in preprocessing: {e}[/bold red]")
        sys.exit(1)


@app.command()
def annotate(
    input_file: Path = typer.Argument(..., help="featureCounts output file"),
    output_file: Path = typer.Option("annotated_counts.csv", help="Output CSV file"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML configuration file"),
    reference: Optional[Path] = typer.Option(None, help="Annotation reference table (TSV/CSV)"),
    keep_unmatched: bool = typer.Option(False, help="Keep genes without a symbol"),
):
    """Annotate gene ids with symbols, keeping duplicate symbols."""
    console.print("[bold blue]Annotating genes[/bold blue]")

    try:
        config = load_config(config_file)
        if reference is not None:
            config.annotation = replace(config.annotation, reference=str(reference))

        table = load_featurecounts(input_file)
        annotated = annotate_genes(
            table,
            build_lookup(config.annotation),
            id_type=config.annotation.id_type,
            key_type=config.annotation.key_type,
            discard_unmatched=not keep_unmatched and config.annotation.discard_unmatched,
        )
        save_count_matrix(annotated, output_file)
        console.print("[bold green]Annotation completed![/bold green]")
        console.print(f"Annotated table saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Error in annotation: {e}[/bold red]")
        sys.exit(1)


@app.command()
def duplicates(
    input_file: Path = typer.Argument(..., help="Annotated count matrix (CSV)"),
    top: int = typer.Option(10, help="Number of symbols to show"),
):
    """List gene symbols that occur more than once."""
    try:
        table = load_count_matrix(input_file)
        dup_df = find_duplicates(table)

        if dup_df.empty:
            console.print("[bold green]No duplicate symbols found.[/bold green]")
            return

        view = Table(title=f"Top duplicated symbols ({len(dup_df)} total)")
        view.add_column("Symbol")
        view.add_column("Count", justify="right")
        for symbol, count in zip(dup_df["symbol"].head(top), dup_df["count"].head(top)):
            view.add_row(str(symbol), str(count))
        console.print(view)

    except Exception as e:
        console.print(f"[bold red]Error finding duplicates: {e}[/bold red]")
        sys.exit(1)


@app.command()
def compare_methods(
    input_file: Path = typer.Argument(..., help="Annotated count matrix (CSV)"),
    seed: int = typer.Option(42, help="Seed for the random method"),
):
    """Compare gene counts produced by each duplicate handling method."""
    try:
        table = load_count_matrix(input_file)
        results = compare_duplicate_methods(table, methods=MERGE_METHODS, seed=seed)

        view = Table(title="Duplicate handling methods")
        view.add_column("Method")
        view.add_column("Genes", justify="right")
        for method, result in results.items():
            view.add_row(method, str(result["n_genes"]))
        console.print(view)

    except Exception as e:
        console.print(f"[bold red]Error comparing methods: {e}[/bold red]")
        sys.exit(1)


@app.command("sample-info")
def sample_info_command(
    input_file: Path = typer.Argument(..., help="Count matrix (CSV)"),
    output_file: Optional[Path] = typer.Option(None, help="Write sample statistics to CSV"),
):
    """Show per-sample total, mean and median counts."""
    try:
        table = load_count_matrix(input_file)
        info = sample_info(table)

        view = Table(title="Sample information")
        for column in info.columns:
            view.add_column(column)
        for row in info.itertuples(index=False):
            view.add_row(*[f"{v:.2f}" if isinstance(v, float) else str(v) for v in row])
        console.print(view)

        if output_file:
            info.to_csv(output_file, index=False)
            console.print(f"Sample information saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Error reading samples: {e}[/bold red]")
        sys.exit(1)


@app.command()
def show_config(
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML configuration file"),
):
    """Validate and print the effective configuration."""
    try:
        config = load_config(config_file)
        for section, values in config.to_dict().items():
            console.print(f"[bold]{section}[/bold]")
            for key, value in values.items():
                console.print(f"  {key}: {value}")

    except Exception as e:
        console.print(f"[bold red]Invalid configuration: {e}[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    app()
