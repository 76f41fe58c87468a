"""Shared fixtures: synthetic MPRA count tables and allele tables."""

import numpy as np
import pandas as pd
import pytest

from mpra_analysis.design import Channel, ExperimentDesign

CONDITIONS = ['CTRL', 'GATA1']
RNA_REPLICATES = ['r1', 'r2', 'r3']
DNA_REPLICATES = ['r1', 'r2']

# constructs whose mutant allele is eight times more active than the reference
DIFFERENTIAL_CONSTRUCTS = ['c00', 'c01', 'c02']
# constructs whose alleles are both far above the rest
ACTIVE_CONSTRUCTS = ['c03', 'c04']


def synthetic_counts(n_constructs=20, n_barcodes=10, n_low=10, n_excluded=6, seed=0):
    """
    Simulate a raw barcode count table with shared plasmid DNA replicates.

    Every construct has a Ref and a Mut allele with ``n_barcodes`` barcodes each.
    ``n_low`` extra barcodes have almost no plasmid reads and ``n_excluded``
    barcodes carry a non-variant inclusion flag.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for c in range(n_constructs):
        construct = f'c{c:02d}'
        base = rng.uniform(-1.0, 1.0)
        if construct in ACTIVE_CONSTRUCTS:
            base = 4.0
        for allele_type, ref, alt in (('Ref', 'A', 'A'), ('Mut', 'A', 'G')):
            activity = base + (3.0 if allele_type == 'Mut' and construct in DIFFERENTIAL_CONSTRUCTS else 0.0)
            for b in range(n_barcodes):
                dna_mean = rng.uniform(300, 700)
                row = {
                    'chr': 'chr1', 'pos': 1000 + c, 'ref': ref, 'alt': 'G', 'type': allele_type,
                    'oligo': f'{construct}_{allele_type}', 'construct': construct,
                    'byallele': f'{construct}_{allele_type}', 'clean': 'var',
                }
                for rep in DNA_REPLICATES:
                    row[f'DNA_{rep}'] = rng.poisson(dna_mean)
                for condition in CONDITIONS:
                    for rep in RNA_REPLICATES:
                        row[f'{condition}_RNA_{rep}'] = rng.poisson(dna_mean * 2 ** activity)
                rows.append(row)

    for i in range(n_low):
        row = {
            'chr': 'chr2', 'pos': 5000 + i, 'ref': 'C', 'alt': 'T', 'type': 'Ref',
            'oligo': f'low{i}_Ref', 'construct': f'low{i}', 'byallele': f'low{i}_Ref', 'clean': 'var',
            'DNA_r1': 0, 'DNA_r2': 1,
        }
        for condition in CONDITIONS:
            for rep in RNA_REPLICATES:
                row[f'{condition}_RNA_{rep}'] = int(rng.poisson(2))
        rows.append(row)

    for i in range(n_excluded):
        row = {
            'chr': 'chr3', 'pos': 9000 + i, 'ref': 'G', 'alt': 'A', 'type': 'Mut',
            'oligo': f'enz{i}_Mut', 'construct': f'enz{i}', 'byallele': f'enz{i}_Mut', 'clean': 'enz',
            'DNA_r1': 500, 'DNA_r2': 500,
        }
        for condition in CONDITIONS:
            for rep in RNA_REPLICATES:
                row[f'{condition}_RNA_{rep}'] = 500
        rows.append(row)

    return pd.DataFrame(rows)


def allele_table_from_observations(condition, alleles):
    """
    Build a minimal allele table for the statistical tests.

    Args:
        condition: Condition name used for the column prefix
        alleles: List of (byallele, construct, type, observations)
    """
    cells = np.empty(len(alleles), dtype=object)
    for i, (_, _, _, values) in enumerate(alleles):
        cells[i] = np.asarray(values, dtype=float)
    table = pd.DataFrame({
        'byallele': [a[0] for a in alleles],
        'construct': [a[1] for a in alleles],
        'type': [a[2] for a in alleles],
    })
    table[f'{condition}_activity'] = [float(np.median(v)) if len(v) else np.nan for v in cells]
    table[f'{condition}_n_obs'] = [len(v) for v in cells]
    table[f'{condition}_observations'] = pd.Series(cells, index=table.index)
    return table


@pytest.fixture
def raw_counts():
    return synthetic_counts()


@pytest.fixture
def design():
    channels = [Channel(f'DNA_{rep}', 'DNA', rep) for rep in DNA_REPLICATES]
    for condition in CONDITIONS:
        channels.extend(Channel(f'{condition}_RNA_{rep}', 'RNA', rep, condition) for rep in RNA_REPLICATES)
    return ExperimentDesign(tuple(channels))
