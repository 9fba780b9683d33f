"""
Quality control for RNA-seq count matrices.

Components:
    ExpressionFilter: Drops genes whose normalized CPM never reaches a cutoff
        in any sample. Low-count genes carry almost no information about
        differential expression and distort the voom mean-variance trend.
"""

from voomde.quality.filtering import ExpressionFilter, ExpressionFilterResult, filter_by_expression

__all__ = [
    "ExpressionFilter",
    "ExpressionFilterResult",
    "filter_by_expression",
]
