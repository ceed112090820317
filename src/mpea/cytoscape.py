"""
Tab-separated files for loading significant gene sets into Cytoscape's
EnrichmentMap.
"""

import logging
from pathlib import Path
from typing import List, Sequence, Union

import polars as pl

from .data import write_gmt
from .structures import Term
from .utils import ensure_dir

logger = logging.getLogger(__name__)


def write_cytoscape_files(
    results: pl.DataFrame,
    gene_sets: Sequence[Term],
    output_dir: Union[str, Path],
    prefix: str = "",
    significant: float = 0.05
) -> List[Path]:
    """
    Write the terms, groups and abridged GMT files for significant gene sets.

    Args:
        results: Table returned by analyze
        gene_sets: Gene sets the analysis was run on
        output_dir: Directory for the files
        prefix: Prefix added to every file name
        significant: Adjusted p-value threshold defining significant terms

    Returns:
        Paths of the written files; empty when no term is significant
    """
    significant_terms = results.filter(pl.col("adjusted.p.val") <= significant)
    if significant_terms.height == 0:
        logger.warning("No significant terms; Cytoscape files were not written")
        return []

    output_dir = ensure_dir(Path(output_dir))
    terms_file = output_dir / f"{prefix}terms.txt"
    groups_file = output_dir / f"{prefix}groups.txt"
    gmt_file = output_dir / f"{prefix}abridged.gmt"

    significant_terms.select(["term.id", "term.name", "adjusted.p.val"]).write_csv(
        terms_file, separator="\t"
    )

    # One 0/1 column per dataset, plus 'combined' for combined-only evidence
    datasets = [c[len("Genes_"):] for c in results.columns if c.startswith("Genes_")]
    groups = significant_terms.select(
        [pl.col("term.id")]
        + [pl.col("evidence").list.contains(d).cast(pl.Int8).alias(d) for d in datasets]
        + [pl.col("evidence").list.contains("combined").cast(pl.Int8).alias("combined")]
    )
    groups.write_csv(groups_file, separator="\t")

    term_ids = set(significant_terms.get_column("term.id").to_list())
    write_gmt([t for t in gene_sets if t.id in term_ids], gmt_file)

    logger.info(f"Saved Cytoscape files for {significant_terms.height} terms to {output_dir}")
    return [terms_file, groups_file, gmt_file]
