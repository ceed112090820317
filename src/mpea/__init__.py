"""
Multi-omics Pathway Enrichment Analysis
=======================================

Merge gene p-values across datasets and test gene sets with a ranked
hypergeometric test.
"""

from .pipeline import EnrichmentPipeline, analyze, run_enrichment
from .config import AnalysisOptions, PipelineConfig
from .exceptions import InvalidInput, NoSignificantResults, NumericalDegeneracyWarning
from .structures import EnrichmentResult, Term
from .data import (
    read_gmt as read_gmt,
    write_gmt as write_gmt,
    load_scores as load_scores,
    load_background as load_background,
    make_background as make_background,
    filter_gene_sets as filter_gene_sets,
    write_results as write_results,
)
from .stats import (
    merge_p_values as merge_p_values,
    fisher_method as fisher_method,
    brown_method as brown_method,
    rank_genes as rank_genes,
    ordered_hypergeometric as ordered_hypergeometric,
    adjust_p_values as adjust_p_values,
)
from .cytoscape import write_cytoscape_files as write_cytoscape_files
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "EnrichmentPipeline",
    "analyze",
    "run_enrichment",
    "AnalysisOptions",
    "PipelineConfig",
    "InvalidInput",
    "NoSignificantResults",
    "NumericalDegeneracyWarning",
    "EnrichmentResult",
    "Term",
    "read_gmt",
    "write_gmt",
    "load_scores",
    "load_background",
    "make_background",
    "filter_gene_sets",
    "write_results",
    "merge_p_values",
    "fisher_method",
    "brown_method",
    "rank_genes",
    "ordered_hypergeometric",
    "adjust_p_values",
    "write_cytoscape_files",
    "setup_logging",
    "ensure_dir",
]
