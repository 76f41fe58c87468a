"""
Error and warning taxonomy for the MPRA analysis pipeline.

Structural problems (schema, channel layout, joins) raise ConfigurationError and
abort the run. Data-level problems that only affect individual alleles or
constructs are reported as warnings and the affected rows are left out of the
corresponding call table.
"""


class ConfigurationError(ValueError):
    """A precondition of the pipeline is violated; the run cannot continue."""


class InsufficientDataWarning(UserWarning):
    """An allele or construct did not qualify for a statistical test."""


class NumericDegeneracyWarning(UserWarning):
    """A rank-sum test had no variance to work with; p-value set to 1.0."""


class LowRetentionWarning(UserWarning):
    """Too few barcodes survived the plasmid abundance filter."""


class DegenerateReplicateWarning(UserWarning):
    """A replicate channel carried no signal and was left out."""
