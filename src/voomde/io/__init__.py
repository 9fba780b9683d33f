"""
Input/output collaborators of the statistical core.

- loaders: count tables, gene annotation, sample sheets
- metadata: factor derivation from sample ids and identifier-checked alignment
- writers: result assembly (statistics + annotation + expression) and TSV output
"""

from voomde.io.loaders import load_annotation, load_count_table, load_sample_sheet
from voomde.io.metadata import align_metadata, derive_factors, make_group
from voomde.io.writers import assemble_results, strip_gene_version, write_result_table

__all__ = [
    'load_count_table',
    'load_annotation',
    'load_sample_sheet',
    'derive_factors',
    'make_group',
    'align_metadata',
    'assemble_results',
    'strip_gene_version',
    'write_result_table',
]
