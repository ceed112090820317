"""
Readers, writers and preprocessing for score matrices and gene sets.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

import numpy as np
import polars as pl

from .exceptions import InvalidInput
from .structures import Term

GENE_ID_COLUMN = "gene_id"

logger = logging.getLogger(__name__)


def read_gmt(file_path: Union[str, Path], merge_duplicates: bool = True) -> List[Term]:
    """
    Read gene sets from a GMT file.

    Each line holds a term id, a name and then the genes, separated by tabs.

    Args:
        file_path: Path to the GMT file
        merge_duplicates: Collapse terms sharing an id into one term with the
            union of their genes. When False, duplicate ids raise InvalidInput

    Returns:
        List of terms in file order
    """
    terms: Dict[str, Term] = {}
    with open(file_path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            fields = line.split("\t")
            if len(fields) < 2:
                raise InvalidInput(f"{file_path}:{line_number}: expected at least an id and a name")
            term_id, name = fields[0], fields[1]
            genes = tuple(g for g in fields[2:] if g)

            if term_id in terms:
                if not merge_duplicates:
                    raise InvalidInput(f"Duplicate term id {term_id} in {file_path}")
                logger.warning(f"Duplicate term id {term_id} in {file_path}; merging gene lists")
                previous = terms[term_id]
                terms[term_id] = Term(term_id, previous.name, previous.genes + genes)
            else:
                terms[term_id] = Term(term_id, name, genes)

    logger.info(f"Loaded {len(terms)} gene sets from {file_path}")
    return list(terms.values())


def write_gmt(terms: Iterable[Term], file_path: Union[str, Path]) -> None:
    """
    Write gene sets to a GMT file.

    Args:
        terms: Terms to write
        file_path: Destination path
    """
    with open(file_path, "w", encoding="utf-8") as f:
        for term in terms:
            f.write("\t".join((term.id, term.name) + term.genes) + "\n")


def load_scores(
    file_path: Union[str, Path],
    fill_missing: Optional[float] = None,
    separator: str = "\t"
) -> pl.DataFrame:
    """
    Load a gene-by-dataset matrix of p-values.

    The first column holds gene identifiers and is renamed to ``gene_id``;
    every other column is a dataset.

    Args:
        file_path: Path to the delimited file
        fill_missing: Value substituted for missing scores, or None to keep them
        separator: Field separator

    Returns:
        DataFrame with gene_id and one Float64 column per dataset
    """
    df = pl.read_csv(
        file_path,
        separator=separator,
        has_header=True,
        null_values=["NA", "NaN", ""],
    )
    if df.width < 2:
        raise InvalidInput(f"{file_path} must hold a gene column and at least one score column")

    df = df.rename({df.columns[0]: GENE_ID_COLUMN}).with_columns(pl.col(GENE_ID_COLUMN).cast(pl.Utf8))
    dataset_columns = [c for c in df.columns if c != GENE_ID_COLUMN]

    try:
        df = df.with_columns([pl.col(c).cast(pl.Float64) for c in dataset_columns])
    except (pl.exceptions.ComputeError, pl.exceptions.InvalidOperationError) as e:
        raise InvalidInput(f"Non-numeric scores in {file_path}: {e}")

    if fill_missing is not None:
        df = df.with_columns([
            pl.col(c).fill_nan(None).fill_null(fill_missing) for c in dataset_columns
        ])

    logger.info(f"Loaded {df.height} genes with scores for {len(dataset_columns)} datasets")
    return df


def load_background(file_path: Optional[Union[str, Path]]) -> Optional[Set[str]]:
    """
    Load background genes, one identifier per line.

    Args:
        file_path: Path to the background file, or None

    Returns:
        Set of gene identifiers, or None if no file provided
    """
    if file_path is None:
        return None
    with open(file_path, "r", encoding="utf-8") as f:
        return {line.strip() for line in f if line.strip()}


def make_background(terms: Iterable[Term]) -> Set[str]:
    """Union of the genes of all terms."""
    background: Set[str] = set()
    for term in terms:
        background.update(term.genes)
    return background


def filter_gene_sets(
    terms: Iterable[Term],
    min_size: Optional[int] = 5,
    max_size: Optional[int] = 1000
) -> List[Term]:
    """
    Keep terms whose size lies within the inclusive bounds.

    Args:
        terms: Terms to filter
        min_size: Smallest size kept, or None for no lower bound
        max_size: Largest size kept, or None for no upper bound

    Returns:
        Filtered terms in input order
    """
    kept = []
    for term in terms:
        if min_size is not None and term.size < min_size:
            continue
        if max_size is not None and term.size > max_size:
            continue
        kept.append(term)
    return kept


def restrict_gene_sets(terms: Iterable[Term], universe: Set[str]) -> List[Term]:
    """Restrict every term to ``universe``, dropping terms left empty."""
    restricted = [term.restrict(universe) for term in terms]
    return [term for term in restricted if term.size > 0]


def validate_scores(scores: pl.DataFrame) -> Tuple[List[str], List[str], np.ndarray]:
    """
    Check a score matrix and split it into genes, dataset names and values.

    Args:
        scores: DataFrame with a gene_id column and numeric dataset columns

    Returns:
        Tuple of (gene ids, dataset column names, genes x datasets float array)
    """
    if GENE_ID_COLUMN not in scores.columns:
        raise InvalidInput(f"Scores must contain a '{GENE_ID_COLUMN}' column")

    dataset_columns = [c for c in scores.columns if c != GENE_ID_COLUMN]
    if not dataset_columns:
        raise InvalidInput("Scores must contain at least one dataset column")

    non_numeric = [c for c in dataset_columns if not scores.schema[c].is_numeric()]
    if non_numeric:
        raise InvalidInput(f"Non-numeric score columns: {', '.join(non_numeric)}")

    genes = scores.get_column(GENE_ID_COLUMN).cast(pl.Utf8)
    if genes.null_count() > 0:
        raise InvalidInput("Gene identifiers must not be missing")
    if genes.n_unique() != len(genes):
        raise InvalidInput("Gene identifiers must be unique")

    values = scores.select([pl.col(c).cast(pl.Float64) for c in dataset_columns]).to_numpy()
    if np.isnan(values).any():
        raise InvalidInput("Scores contain missing values; substitute or remove them first")
    if (values < 0).any() or (values > 1).any():
        raise InvalidInput("Scores must be p-values in the range [0, 1]")

    return genes.to_list(), dataset_columns, np.ascontiguousarray(values, dtype=np.float64)


def write_results(results: pl.DataFrame, file_path: Union[str, Path], separator: str = ",") -> None:
    """
    Write a result table, joining list columns with '|'.

    Args:
        results: Table returned by analyze
        file_path: Destination path
        separator: Field separator
    """
    list_columns = [c for c, dtype in results.schema.items() if isinstance(dtype, pl.List)]
    flat = results.with_columns([pl.col(c).list.join("|") for c in list_columns])
    flat.write_csv(file_path, separator=separator)
