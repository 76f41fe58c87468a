#!/usr/bin/env python
"""
Command-line interface for the MPRA functional variant analysis.

This module handles argument parsing, logging configuration, and orchestration
of the analysis on a raw barcode count table.

Usage:
    mpra-analysis --counts counts.tsv --output-dir ./results
    mpra-analysis --counts counts.tsv --output-dir ./results --tag-snps tags.tsv --fdr-method bh --verbose
"""

import click
import logging
import sys
from pathlib import Path
from typing import Optional

from mpra_analysis.errors import ConfigurationError
from mpra_analysis.multiple_testing import FDR_METHODS
from mpra_analysis.pipeline import load_table, run_pipeline, save_results

# Configure root logger
logger = logging.getLogger()


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity level."""
    # Clear any existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    console_handler.setFormatter(formatter)

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    console_handler.setLevel(level)
    logger.addHandler(console_handler)


@click.command()
@click.option('--counts', type=click.Path(exists=True, dir_okay=False), required=True,
              help="Raw barcode count table with a header row.")
@click.option('--sep', default='\t',
              help="Separator for the input tables.")
@click.option('--output-dir', type=click.Path(file_okay=False), required=True,
              help="Directory to save output files.")
@click.option('--tag-snps', type=click.Path(exists=True, dir_okay=False), default=None,
              help="Table mapping construct to sentinel SNP (columns: construct, sentinel).")
@click.option('--rsids', type=click.Path(exists=True, dir_okay=False), default=None,
              help="Table mapping oligo to rsID (columns: oligo, rsid).")
@click.option('--flag-column', default='clean', show_default=True,
              help="Column holding the construct inclusion flag.")
@click.option('--valid-flag', default='var', show_default=True,
              help="Flag value marking usable variant constructs.")
@click.option('--min-log2-count', default=8.0, show_default=True,
              help="Minimum pooled plasmid log2 CPM for a barcode to be kept.")
@click.option('--pseudocount', default=1.0, show_default=True,
              help="Pseudocount added to every count before CPM scaling.")
@click.option('--min-observations', default=7, show_default=True,
              help="Minimum barcode x replicate observations for an allele activity test.")
@click.option('--activity-alpha', default=0.01, show_default=True,
              help="q-value threshold for active alleles (q <= alpha).")
@click.option('--mfv-alpha', default=0.01, show_default=True,
              help="q-value threshold for MPRA functional variants (q < alpha).")
@click.option('--fdr-method', type=click.Choice(FDR_METHODS, case_sensitive=False), default='qvalue',
              help=("Multiple-testing correction: "
                    "`qvalue` = Storey q-values; "
                    "`bh` = Benjamini-Hochberg; "
                    "`by` = Benjamini-Yekutieli; "
                    "`bonf` = Bonferroni; "
                    "`sidak` = Sidak; "
                    "`holm` = Holm."))
@click.option('--continuity/--no-continuity', default=False,
              help="Apply the continuity correction in the rank-sum tests.")
@click.option('--correlation-percentile', default=0.0, show_default=True,
              help="Only alleles above this activity percentile enter the replicate correlations.")
@click.option('--verbose', is_flag=True, default=False,
              help="Enable verbose (debug) logging.")
def run_mpra_analysis(counts: str,
                      sep: str,
                      output_dir: str,
                      tag_snps: Optional[str],
                      rsids: Optional[str],
                      flag_column: str,
                      valid_flag: str,
                      min_log2_count: float,
                      pseudocount: float,
                      min_observations: int,
                      activity_alpha: float,
                      mfv_alpha: float,
                      fdr_method: str,
                      continuity: bool,
                      correlation_percentile: float,
                      verbose: bool) -> None:
    """
    Call active constructs and MPRA functional variants from barcode counts.

    The count table needs the metadata columns chr, pos, ref, alt, type, oligo,
    construct, byallele and the inclusion flag, plus count columns named
    DNA_<rep> (or <condition>_DNA_<rep>) and <condition>_RNA_<rep>.

    Examples:
        mpra-analysis --counts counts.tsv --output-dir ./results
        mpra-analysis --counts counts.tsv --output-dir ./results --fdr-method bh --verbose
    """
    setup_logging(verbose)

    try:
        raw_table = load_table(counts, sep)
        tag_table = load_table(tag_snps, sep, name='tag-SNP') if tag_snps else None
        rsid_table = load_table(rsids, sep, name='rsID') if rsids else None

        result = run_pipeline(
            raw_table,
            flag_column=flag_column,
            valid_flag=valid_flag,
            min_log2_count=min_log2_count,
            pseudocount=pseudocount,
            min_observations=min_observations,
            activity_alpha=activity_alpha,
            mfv_alpha=mfv_alpha,
            fdr_method=fdr_method.lower(),
            use_continuity=continuity,
            correlation_percentile=correlation_percentile,
            tag_snps=tag_table,
            rsids=rsid_table,
        )
    except ConfigurationError as e:
        logger.error("Configuration error: %s", str(e))
        raise click.ClickException(str(e))

    save_results(result, Path(output_dir))

    for _, row in result.summary.iterrows():
        logger.info("%s\t%s\t%s", row['condition'], row['metric'], row['value'])
    if result.warnings:
        logger.info("Run completed with %d warnings", len(result.warnings))


if __name__ == "__main__":
    run_mpra_analysis()
