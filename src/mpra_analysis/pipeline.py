"""
End-to-end MPRA analysis: raw barcode counts to activity and MFV calls.

run_pipeline chains the stages

    filter_counts -> normalize -> aggregate -> test_activity / test_differential

for every condition of the experiment, joins the optional annotation tables
and builds a summary. Every warning raised along the way is recorded on the
result; structural problems raise ConfigurationError and abort the run.
"""

import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import pandas as pd

from mpra_analysis.activity import active_constructs, test_activity
from mpra_analysis.aggregation import aggregate, replicate_activity_matrix, replicate_correlations
from mpra_analysis.count_filter import filter_counts
from mpra_analysis.design import REF_TYPE, ExperimentDesign, infer_design
from mpra_analysis.differential import functional_variants, test_differential
from mpra_analysis.errors import ConfigurationError
from mpra_analysis.normalization import normalize

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Every table produced by one pipeline run."""
    design: ExperimentDesign
    filtered: pd.DataFrame
    retention: float
    log_table: pd.DataFrame
    ratio_table: pd.DataFrame
    allele_table: pd.DataFrame
    replicate_correlations: pd.DataFrame
    activity_calls: pd.DataFrame
    differential_calls: pd.DataFrame
    functional_variants: pd.DataFrame
    summary: pd.DataFrame
    warnings: List[Warning] = field(default_factory=list)


def load_table(location: Union[str, Path], sep: str = '\t', name: str = 'count') -> pd.DataFrame:
    """
    Read a delimited table with a header row (count table or annotation).

    Args:
        location: Path to the delimited table
        sep: Field separator; the two-character string '\\t' is accepted for a tab
        name: Table name used in log messages

    Returns:
        pd.DataFrame: Loaded table
    """
    if sep == '\\t':
        sep = '\t'
    logger.info("Reading %s table from %s", name, location)
    try:
        table = pd.read_csv(location, sep=sep, header=0)
    except Exception as e:
        logger.error("Error loading %s: %s", location, str(e))
        raise
    logger.info("%s table loaded with %d rows and %d columns", name.capitalize(), len(table), table.shape[1])
    logger.debug("%s table head:\n%s", name.capitalize(), table.head())
    return table


def _checked_annotation(table: pd.DataFrame, key: str, value: str, name: str) -> pd.DataFrame:
    missing = [column for column in (key, value) if column not in table.columns]
    if missing:
        raise ConfigurationError(f"{name} table is missing columns: {missing}")
    table = table[[key, value]].drop_duplicates()
    if table[key].duplicated().any():
        conflicting = table.loc[table[key].duplicated(), key].tolist()
        raise ConfigurationError(f"{name} table maps {key} values to more than one {value}: {conflicting[:10]}")
    return table


def annotate_functional_variants(functional: pd.DataFrame,
                                 allele_table: pd.DataFrame,
                                 tag_snps: Optional[pd.DataFrame] = None,
                                 rsids: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """
    Attach variant coordinates, sentinel SNPs and rsIDs to functional variants.

    Args:
        functional: Output of functional_variants
        allele_table: Output of aggregate, used for coordinates and oligo ids
        tag_snps: Table with ``construct`` and ``sentinel`` columns (many-to-one)
        rsids: Table with ``oligo`` and ``rsid`` columns

    Returns:
        pd.DataFrame: ``functional`` with ``chr``, ``pos``, ``ref``, ``alt``,
        ``oligo`` and, when the tables are given, ``sentinel`` and ``rsid``

    Raises:
        ConfigurationError: If a functional variant has no match in a given
            annotation table
    """
    ref_alleles = allele_table[allele_table['type'] == REF_TYPE]
    variant_info = (ref_alleles.drop_duplicates(subset='construct', keep='first')
                    [['construct', 'chr', 'pos', 'ref', 'alt', 'oligo']])
    annotated = functional.merge(variant_info, on='construct', how='left')

    if tag_snps is not None:
        tags = _checked_annotation(tag_snps, 'construct', 'sentinel', 'Tag-SNP')
        annotated = annotated.merge(tags, on='construct', how='left')
        unmatched = annotated.loc[annotated['sentinel'].isna(), 'construct'].tolist()
        if unmatched:
            raise ConfigurationError(f"Functional variants missing from the tag-SNP table: {unmatched[:10]}")

    if rsids is not None:
        ids = _checked_annotation(rsids, 'oligo', 'rsid', 'rsID')
        annotated = annotated.merge(ids, on='oligo', how='left')
        unmatched = annotated.loc[annotated['rsid'].isna(), 'construct'].tolist()
        if unmatched:
            raise ConfigurationError(f"Functional variants missing from the rsID table: {unmatched[:10]}")

    return annotated


def summarize(activity_calls: pd.DataFrame,
              differential_calls: pd.DataFrame,
              functional: pd.DataFrame,
              retention: Optional[float] = None) -> pd.DataFrame:
    """
    Summary counts of a run.

    Args:
        activity_calls: Concatenated outputs of test_activity
        differential_calls: Concatenated outputs of test_differential
        functional: Output of functional_variants or annotate_functional_variants
        retention: Barcode retention fraction from filter_counts

    Returns:
        pd.DataFrame: Long table with ``condition``, ``metric`` and ``value``;
        run-wide metrics use the condition ``all``
    """
    rows = []
    constructs = active_constructs(activity_calls)
    conditions = list(dict.fromkeys(list(activity_calls['condition']) + list(differential_calls['condition'])))

    for condition in conditions:
        alleles = activity_calls[activity_calls['condition'] == condition]
        condition_constructs = constructs[constructs['condition'] == condition]
        differential = differential_calls[differential_calls['condition'] == condition]
        n_active_alleles = int(alleles['is_active'].sum())
        n_active_constructs = int(condition_constructs['is_active'].sum())
        rows.extend([
            (condition, 'tested_alleles', len(alleles)),
            (condition, 'active_alleles', n_active_alleles),
            (condition, 'active_allele_percent', 100.0 * n_active_alleles / len(alleles) if len(alleles) else 0.0),
            (condition, 'tested_constructs', len(condition_constructs)),
            (condition, 'active_constructs', n_active_constructs),
            (condition, 'active_construct_percent',
             100.0 * n_active_constructs / len(condition_constructs) if len(condition_constructs) else 0.0),
            (condition, 'differential_tested_constructs', len(differential)),
            (condition, 'mfvs', int(differential['is_mfv'].sum())),
        ])

    rows.append(('all', 'functional_variants', functional['construct'].nunique()))
    if 'sentinel' in functional.columns:
        rows.append(('all', 'sentinel_loci', functional['sentinel'].nunique()))
    if retention is not None:
        rows.append(('all', 'barcode_retention', retention))

    return pd.DataFrame(rows, columns=['condition', 'metric', 'value'])


def run_pipeline(raw_table: pd.DataFrame,
                 design: Optional[ExperimentDesign] = None,
                 flag_column: str = 'clean',
                 valid_flag: str = 'var',
                 min_log2_count: float = 8.0,
                 pseudocount: float = 1.0,
                 scale: float = 1e6,
                 min_retention: float = 0.8,
                 min_observations: int = 7,
                 activity_alpha: float = 0.01,
                 mfv_alpha: float = 0.01,
                 fdr_method: str = 'qvalue',
                 use_continuity: bool = False,
                 correlation_percentile: float = 0.0,
                 tag_snps: Optional[pd.DataFrame] = None,
                 rsids: Optional[pd.DataFrame] = None) -> PipelineResult:
    """
    Run the full analysis on a raw barcode count table.

    Args:
        raw_table: Raw barcode count table
        design: Channel layout; inferred from the column names when None
        flag_column: Column holding the inclusion flag
        valid_flag: Flag value marking usable variant constructs
        min_log2_count: Minimum pooled plasmid log2 CPM per barcode
        pseudocount: Pseudocount added before CPM scaling
        scale: CPM scale constant
        min_retention: Barcode retention below which a warning is recorded
        min_observations: Minimum observations for an allele activity test
        activity_alpha: Alleles with q <= activity_alpha are active
        mfv_alpha: Constructs with q < mfv_alpha are MFVs
        fdr_method: Multiple testing correction for both tests
        use_continuity: Continuity correction in the rank-sum tests
        correlation_percentile: Activity percentile for replicate correlations
        tag_snps: Optional tag-SNP annotation (``construct``, ``sentinel``)
        rsids: Optional rsID annotation (``oligo``, ``rsid``)

    Returns:
        PipelineResult: All intermediate and final tables plus recorded warnings

    Raises:
        ConfigurationError: If a structural precondition is violated
    """
    if design is None:
        design = infer_design(raw_table.columns)
    else:
        design.validate()

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')

        filtered, retention = filter_counts(
            raw_table, design, flag_column=flag_column, valid_flag=valid_flag,
            min_log2_count=min_log2_count, pseudocount=pseudocount, scale=scale,
            min_retention=min_retention,
        )
        log_table, ratio_table = normalize(filtered, design, pseudocount=pseudocount, scale=scale)

        allele_table = aggregate(ratio_table, design)
        correlations = replicate_correlations(
            replicate_activity_matrix(ratio_table, design), design, percentile=correlation_percentile
        )

        activity_frames = []
        differential_frames = []
        for condition in design.conditions:
            activity_frames.append(test_activity(
                allele_table, condition, min_observations=min_observations, alpha=activity_alpha,
                fdr_method=fdr_method, use_continuity=use_continuity,
            ))
            differential_frames.append(test_differential(
                allele_table, condition, alpha=mfv_alpha, fdr_method=fdr_method,
                use_continuity=use_continuity,
            ))

    activity_calls = pd.concat(activity_frames, ignore_index=True)
    differential_calls = pd.concat(differential_frames, ignore_index=True)
    functional = annotate_functional_variants(
        functional_variants(differential_calls), allele_table, tag_snps=tag_snps, rsids=rsids
    )
    summary = summarize(activity_calls, differential_calls, functional, retention)

    recorded = [warning.message for warning in caught]
    for warning in caught:
        logger.warning("%s: %s", warning.category.__name__, warning.message)
    logger.info("Pipeline finished: %d functional variants, %d warnings",
                len(functional), len(recorded))

    return PipelineResult(
        design=design,
        filtered=filtered,
        retention=retention,
        log_table=log_table,
        ratio_table=ratio_table,
        allele_table=allele_table,
        replicate_correlations=correlations,
        activity_calls=activity_calls,
        differential_calls=differential_calls,
        functional_variants=functional,
        summary=summary,
        warnings=recorded,
    )


def save_results(result: PipelineResult, output_dir: Union[str, Path]) -> None:
    """
    Write the call tables and summary of a run as tab-separated files.

    Args:
        result: Output of run_pipeline
        output_dir: Directory to save output files
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(exist_ok=True, parents=True)
    logger.info("Saving results to %s", output_dir)

    allele_activity = result.allele_table.drop(
        columns=[column for column in result.allele_table.columns if column.endswith('_observations')]
    )
    outputs = {
        'activity_calls.tsv': result.activity_calls,
        'differential_calls.tsv': result.differential_calls,
        'functional_variants.tsv': result.functional_variants,
        'allele_activity.tsv': allele_activity,
        'replicate_correlations.tsv': result.replicate_correlations,
        'summary.tsv': result.summary,
    }
    for name, table in outputs.items():
        path = output_dir / name
        table.to_csv(path, sep='\t', header=True, index=False)
        logger.info("%s saved to %s", name, path)
