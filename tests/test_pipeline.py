#!/usr/bin/env python
"""
Integration tests for the end-to-end pipeline and the annotation joins.

Run with pytest: pytest tests/test_pipeline.py
"""

import numpy as np
import pandas as pd
import pytest

from mpra_analysis.errors import ConfigurationError, DegenerateReplicateWarning
from mpra_analysis.pipeline import annotate_functional_variants, run_pipeline, save_results, summarize

from conftest import ACTIVE_CONSTRUCTS, DIFFERENTIAL_CONSTRUCTS


@pytest.fixture
def result(raw_counts):
    return run_pipeline(raw_counts)


@pytest.fixture
def tag_snps():
    constructs = [f'c{c:02d}' for c in range(20)]
    return pd.DataFrame({'construct': constructs, 'sentinel': [f'rs{c // 4}' for c in range(20)]})


@pytest.fixture
def rsids():
    oligos = [f'c{c:02d}_{t}' for c in range(20) for t in ('Ref', 'Mut')]
    return pd.DataFrame({'oligo': oligos, 'rsid': [f'rs{1000 + i}' for i in range(len(oligos))]})


class TestRunPipeline:
    """End-to-end runs on the simulated count table."""

    def test_stage_tables(self, result):
        assert result.design.conditions == ['CTRL', 'GATA1']
        assert len(result.filtered) == 400
        assert result.retention == pytest.approx(400 / 410)
        assert len(result.allele_table) == 40
        assert set(result.activity_calls['condition']) == {'CTRL', 'GATA1'}
        assert len(result.activity_calls) == 80
        assert len(result.differential_calls) == 40

    def test_differential_constructs_are_functional(self, result):
        mfv = result.differential_calls[result.differential_calls['is_mfv']]
        for condition in ['CTRL', 'GATA1']:
            called = set(mfv.loc[mfv['condition'] == condition, 'construct'])
            assert set(DIFFERENTIAL_CONSTRUCTS) <= called
        functional = set(result.functional_variants['construct'])
        assert set(DIFFERENTIAL_CONSTRUCTS) <= functional

        fold_changes = result.differential_calls.set_index(['condition', 'construct'])['fold_change']
        for construct in DIFFERENTIAL_CONSTRUCTS:
            assert fold_changes[('CTRL', construct)] == pytest.approx(3.0, abs=0.5)

    def test_highly_active_constructs_are_active(self, result):
        calls = result.activity_calls
        active = set(calls.loc[calls['is_active'], 'construct'])
        assert set(ACTIVE_CONSTRUCTS) <= active

    def test_qvalues_monotone_per_condition(self, result):
        for _, calls in result.activity_calls.groupby('condition'):
            ordered = calls.sort_values('p_value')
            assert np.all(np.diff(ordered['q_value'].to_numpy()) >= 0)
            assert set(calls.index[calls['q_value'] <= 0.01]) <= set(calls.index[calls['p_value'] <= 0.01])

    def test_functional_variants_annotated_with_coordinates(self, result):
        assert {'chr', 'pos', 'ref', 'alt', 'oligo'} <= set(result.functional_variants.columns)
        assert (result.functional_variants['oligo'].str.endswith('_Ref')).all()

    def test_summary(self, result):
        summary = result.summary.set_index(['condition', 'metric'])['value']
        assert summary[('CTRL', 'tested_alleles')] == 40
        assert summary[('CTRL', 'tested_constructs')] == 20
        assert summary[('GATA1', 'differential_tested_constructs')] == 20
        assert summary[('all', 'functional_variants')] == len(result.functional_variants)
        assert summary[('all', 'barcode_retention')] == pytest.approx(400 / 410)
        assert 0 < summary[('CTRL', 'active_construct_percent')] <= 100

    def test_warnings_are_recorded(self, raw_counts):
        raw_counts['CTRL_RNA_r3'] = 0
        result = run_pipeline(raw_counts)
        assert any(isinstance(w, DegenerateReplicateWarning) for w in result.warnings)
        assert 'CTRL_r3_ratio' not in result.ratio_table.columns
        assert (result.activity_calls.loc[result.activity_calls['condition'] == 'CTRL', 'n_obs'] == 20).all()

    def test_structural_error_aborts(self, raw_counts):
        with pytest.raises(ConfigurationError):
            run_pipeline(raw_counts.drop(columns=['construct']))

    def test_explicit_design(self, raw_counts, design):
        result = run_pipeline(raw_counts, design=design, fdr_method='bh')
        assert len(result.differential_calls) == 40

    def test_annotations(self, raw_counts, tag_snps, rsids):
        result = run_pipeline(raw_counts, tag_snps=tag_snps, rsids=rsids)
        functional = result.functional_variants
        assert functional['sentinel'].notna().all()
        assert functional['rsid'].notna().all()
        summary = result.summary.set_index(['condition', 'metric'])['value']
        assert summary[('all', 'sentinel_loci')] == functional['sentinel'].nunique()


class TestAnnotateFunctionalVariants:
    """Tests for the annotation joins."""

    @pytest.fixture
    def allele_table(self):
        return pd.DataFrame({
            'byallele': ['c1_Ref', 'c1_Mut', 'c2_Ref', 'c2_Mut'],
            'construct': ['c1', 'c1', 'c2', 'c2'],
            'type': ['Ref', 'Mut', 'Ref', 'Mut'],
            'chr': ['chr1'] * 4,
            'pos': [10, 10, 20, 20],
            'ref': ['A', 'A', 'C', 'C'],
            'alt': ['G', 'G', 'T', 'T'],
            'oligo': ['o1r', 'o1m', 'o2r', 'o2m'],
        })

    @pytest.fixture
    def functional(self):
        return pd.DataFrame({'construct': ['c1'], 'conditions': ['CTRL'], 'min_q_value': [0.001], 'fold_change': [1.0]})

    def test_joins(self, functional, allele_table):
        annotated = annotate_functional_variants(
            functional, allele_table,
            tag_snps=pd.DataFrame({'construct': ['c1', 'c2'], 'sentinel': ['rsA', 'rsA']}),
            rsids=pd.DataFrame({'oligo': ['o1r'], 'rsid': ['rs123']}),
        )
        row = annotated.iloc[0]
        assert row['pos'] == 10
        assert row['sentinel'] == 'rsA'
        assert row['rsid'] == 'rs123'

    def test_missing_tag_snp(self, functional, allele_table):
        with pytest.raises(ConfigurationError, match="tag-SNP"):
            annotate_functional_variants(
                functional, allele_table, tag_snps=pd.DataFrame({'construct': ['c2'], 'sentinel': ['rsA']})
            )

    def test_conflicting_tag_snp(self, functional, allele_table):
        with pytest.raises(ConfigurationError, match="more than one"):
            annotate_functional_variants(
                functional, allele_table,
                tag_snps=pd.DataFrame({'construct': ['c1', 'c1'], 'sentinel': ['rsA', 'rsB']}),
            )

    def test_missing_rsid(self, functional, allele_table):
        with pytest.raises(ConfigurationError, match="rsID"):
            annotate_functional_variants(
                functional, allele_table, rsids=pd.DataFrame({'oligo': ['o2r'], 'rsid': ['rs1']})
            )

    def test_missing_annotation_column(self, functional, allele_table):
        with pytest.raises(ConfigurationError, match="missing columns"):
            annotate_functional_variants(functional, allele_table, rsids=pd.DataFrame({'oligo': ['o1r']}))


class TestSummarizeAndSave:
    """Tests for summary counts and output files."""

    def test_summarize_counts(self):
        activity_calls = pd.DataFrame({
            'condition': ['CTRL'] * 4,
            'construct': ['c1', 'c1', 'c2', 'c2'],
            'is_active': [True, False, False, False],
        })
        differential_calls = pd.DataFrame({'condition': ['CTRL', 'CTRL'], 'is_mfv': [True, False]})
        functional = pd.DataFrame({'construct': ['c1']})
        summary = summarize(activity_calls, differential_calls, functional).set_index(['condition', 'metric'])['value']
        assert summary[('CTRL', 'active_alleles')] == 1
        assert summary[('CTRL', 'active_allele_percent')] == pytest.approx(25.0)
        assert summary[('CTRL', 'active_construct_percent')] == pytest.approx(50.0)
        assert summary[('CTRL', 'mfvs')] == 1
        assert summary[('all', 'functional_variants')] == 1

    def test_save_results(self, result, tmp_path):
        save_results(result, tmp_path / 'out')
        for name in ['activity_calls.tsv', 'differential_calls.tsv', 'functional_variants.tsv',
                     'allele_activity.tsv', 'replicate_correlations.tsv', 'summary.tsv']:
            assert (tmp_path / 'out' / name).exists()
        alleles = pd.read_csv(tmp_path / 'out' / 'allele_activity.tsv', sep='\t')
        assert 'CTRL_activity' in alleles.columns
        assert 'CTRL_observations' not in alleles.columns


if __name__ == "__main__":
    pytest.main()
