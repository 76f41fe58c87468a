"""
MPRA functional variant analysis.

Turns per-barcode DNA/RNA counts from a massively parallel reporter assay into
allele activity scores, active construct calls and MPRA functional variant
(MFV) calls with false discovery rate control.
"""

__version__ = "0.1.0"

# Import main functionality to expose at package level
from mpra_analysis.design import ExperimentDesign, Channel, infer_design, validate_count_table
from mpra_analysis.count_filter import filter_counts, pool_dna_counts
from mpra_analysis.normalization import normalize, quantile_normalize, counts_per_million, log2_cpm
from mpra_analysis.aggregation import aggregate, to_long, replicate_activity_matrix, replicate_correlations
from mpra_analysis.activity import test_activity, active_constructs
from mpra_analysis.differential import test_differential, functional_variants
from mpra_analysis.multiple_testing import estimate_pi0, qvalues, adjust_pvalues
from mpra_analysis.rank_tests import rank_sum_test
from mpra_analysis.pipeline import (
    PipelineResult,
    run_pipeline,
    annotate_functional_variants,
    summarize,
    load_table,
    save_results,
)
from mpra_analysis.errors import (
    ConfigurationError,
    InsufficientDataWarning,
    NumericDegeneracyWarning,
    LowRetentionWarning,
    DegenerateReplicateWarning,
)

__all__ = [
    "ExperimentDesign",
    "Channel",
    "infer_design",
    "validate_count_table",
    "filter_counts",
    "pool_dna_counts",
    "normalize",
    "quantile_normalize",
    "counts_per_million",
    "log2_cpm",
    "aggregate",
    "to_long",
    "replicate_activity_matrix",
    "replicate_correlations",
    "test_activity",
    "active_constructs",
    "test_differential",
    "functional_variants",
    "estimate_pi0",
    "qvalues",
    "adjust_pvalues",
    "rank_sum_test",
    "PipelineResult",
    "run_pipeline",
    "annotate_functional_variants",
    "summarize",
    "load_table",
    "save_results",
    "ConfigurationError",
    "InsufficientDataWarning",
    "NumericDegeneracyWarning",
    "LowRetentionWarning",
    "DegenerateReplicateWarning",
]
