"""
Replicate-channel layout and raw count table validation.

A count table carries one integer column per sequencing channel. RNA channels
are named ``<condition>_RNA_<replicate>``. DNA (plasmid) channels are named
``DNA_<replicate>`` when the plasmid pool is shared by every condition, or
``<condition>_DNA_<replicate>`` when a condition has its own plasmid library.
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from mpra_analysis.errors import ConfigurationError

logger = logging.getLogger(__name__)

METADATA_COLUMNS = ['chr', 'pos', 'ref', 'alt', 'type', 'oligo', 'construct', 'byallele', 'clean']

REF_TYPE = 'Ref'
MUT_TYPE = 'Mut'

DNA_PATTERN = re.compile(r'^(?:(?P<condition>.+?)_)?DNA_(?P<replicate>[^_]+)$')
RNA_PATTERN = re.compile(r'^(?P<condition>.+?)_RNA_(?P<replicate>[^_]+)$')


@dataclass(frozen=True)
class Channel:
    """One count column of the raw table.

    ``condition`` is None for DNA channels shared by every condition.
    """
    column: str
    kind: str
    replicate: str
    condition: Optional[str] = None


@dataclass(frozen=True)
class ExperimentDesign:
    """Immutable description of which count column belongs to which channel."""
    channels: Tuple[Channel, ...]

    @property
    def conditions(self) -> List[str]:
        """Conditions in order of first appearance among the RNA channels."""
        seen = []
        for channel in self.channels:
            if channel.kind == 'RNA' and channel.condition not in seen:
                seen.append(channel.condition)
        return seen

    @property
    def count_columns(self) -> List[str]:
        return [channel.column for channel in self.channels]

    def dna_columns(self, condition: str) -> List[str]:
        """DNA replicate columns pooled for ``condition`` (shared plus condition-specific)."""
        return [
            channel.column for channel in self.channels
            if channel.kind == 'DNA' and channel.condition in (None, condition)
        ]

    def rna_channels(self, condition: str) -> List[Channel]:
        return [
            channel for channel in self.channels
            if channel.kind == 'RNA' and channel.condition == condition
        ]

    @staticmethod
    def pooled_dna_column(condition: str) -> str:
        return f'{condition}_DNA_pooled'

    @staticmethod
    def ratio_column(condition: str, replicate: str) -> str:
        return f'{condition}_{replicate}_ratio'

    def ratio_columns(self, condition: str) -> Dict[str, str]:
        """Map each ratio column of ``condition`` to its replicate id."""
        return {
            self.ratio_column(condition, channel.replicate): channel.replicate
            for channel in self.rna_channels(condition)
        }

    def without(self, columns: Iterable[str]) -> 'ExperimentDesign':
        """Return a copy of the design with the given count columns removed."""
        dropped = set(columns)
        return ExperimentDesign(tuple(c for c in self.channels if c.column not in dropped))

    def validate(self) -> None:
        """Check the channel layout; raise ConfigurationError on any violation."""
        if not self.conditions:
            raise ConfigurationError("Experiment design has no RNA channels")

        pairs = [(c.kind, c.condition, c.replicate) for c in self.channels]
        duplicated = {pair for pair in pairs if pairs.count(pair) > 1}
        if duplicated:
            raise ConfigurationError(
                f"Channels map to the same (condition, replicate) pair more than once: {sorted(duplicated, key=str)}"
            )

        unknown = {
            c.condition for c in self.channels
            if c.kind == 'DNA' and c.condition is not None and c.condition not in self.conditions
        }
        if unknown:
            raise ConfigurationError(f"DNA channels reference conditions without RNA channels: {sorted(unknown)}")

        for condition in self.conditions:
            if not self.dna_columns(condition):
                raise ConfigurationError(f"Condition '{condition}' has no DNA channel to normalize against")


def infer_design(columns: Iterable[str]) -> ExperimentDesign:
    """
    Build an ExperimentDesign from count table column names.

    Args:
        columns: Column names of the raw count table

    Returns:
        ExperimentDesign: Validated channel layout

    Raises:
        ConfigurationError: If the columns do not describe a usable layout
    """
    channels = []
    for column in columns:
        if column in METADATA_COLUMNS:
            continue
        rna_match = RNA_PATTERN.match(column)
        if rna_match:
            channels.append(Channel(column, 'RNA', rna_match.group('replicate'), rna_match.group('condition')))
            continue
        dna_match = DNA_PATTERN.match(column)
        if dna_match and dna_match.group('replicate') != 'pooled':
            channels.append(Channel(column, 'DNA', dna_match.group('replicate'), dna_match.group('condition')))
            continue
        logger.debug("Ignoring column %s: not a count channel", column)

    design = ExperimentDesign(tuple(channels))
    design.validate()
    logger.info(
        "Inferred %d conditions (%s) from %d count channels",
        len(design.conditions), ', '.join(design.conditions), len(channels)
    )
    return design


def validate_count_table(raw_table: pd.DataFrame, design: ExperimentDesign,
                         flag_column: str = 'clean') -> None:
    """
    Check the raw count table against the required schema.

    Args:
        raw_table: One row per barcode, metadata plus count columns
        design: Channel layout of the count columns
        flag_column: Column holding the inclusion flag

    Raises:
        ConfigurationError: On missing columns or invalid counts
    """
    required = [c for c in METADATA_COLUMNS if c != 'clean'] + [flag_column] + design.count_columns
    missing = [column for column in required if column not in raw_table.columns]
    if missing:
        raise ConfigurationError(f"Count table is missing required columns: {missing}")

    counts = raw_table[design.count_columns]
    if not all(pd.api.types.is_numeric_dtype(dtype) for dtype in counts.dtypes):
        raise ConfigurationError("Count columns must be numeric")

    values = counts.to_numpy(dtype=float)
    if np.isnan(values).any():
        raise ConfigurationError("Count columns contain missing values")
    if (values < 0).any():
        raise ConfigurationError("Count columns contain negative values")
    if not np.array_equal(values, np.round(values)):
        raise ConfigurationError("Count columns contain non-integer values")
