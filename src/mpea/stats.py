"""
Statistical core of the enrichment engine: p-value merging, ranking,
the ranked hypergeometric test and multiple-testing correction.
"""

import logging
import warnings
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numba as nb
import numpy as np
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .exceptions import InvalidInput, NumericalDegeneracyWarning

logger = logging.getLogger(__name__)

# Floor applied to zero p-values before taking logs or probits
P_VALUE_FLOOR = 1e-300

MERGE_METHODS = ("fisher", "brown")
BROWNS_COVARIANCE = ("kost", "empirical")

# Kost & McDermott polynomial mapping the correlation of probit-transformed
# p-values to the covariance of -2 ln(p)
_KOST_COEFFICIENTS = (3.263, 0.710, 0.027)

# Correction names accepted by adjust_p_values, mapped to statsmodels methods
CORRECTION_METHODS = {
    "holm": "holm",
    "bonferroni": "bonferroni",
    "fdr": "fdr_bh",
    "bh": "fdr_bh",
    "fdr_bh": "fdr_bh",
    "by": "fdr_by",
    "fdr_by": "fdr_by",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
    "sidak": "sidak",
    "none": None,
}


#  Core numba-optimised kernels

@nb.njit(parallel=True)
def _fisher_statistics(p_matrix):
    """
    Fisher's statistic -2 * sum(ln p) for every row of a 2D array.

    Args:
        p_matrix: C-contiguous float64 array of clamped p-values

    Returns:
        Array with one statistic per row
    """
    n_rows, n_cols = p_matrix.shape
    out = np.zeros(n_rows)
    for i in nb.prange(n_rows):
        total = 0.0
        for j in range(n_cols):
            total += np.log(p_matrix[i, j])
        out[i] = -2.0 * total
    return out


@nb.njit
def _hit_positions(hits):
    """
    1-based prefix lengths at which the cumulative hit count increases.

    Args:
        hits: Boolean array flagging ranked genes that belong to the term

    Returns:
        int64 array of prefix lengths, one per hit
    """
    n_hits = 0
    for i in range(hits.shape[0]):
        if hits[i]:
            n_hits += 1
    positions = np.empty(n_hits, dtype=np.int64)
    j = 0
    for i in range(hits.shape[0]):
        if hits[i]:
            positions[j] = i + 1
            j += 1
    return positions


#  P-value merging

def _check_p_values(values: np.ndarray) -> np.ndarray:
    """Validate p-values and clamp zeros to P_VALUE_FLOOR."""
    if values.size == 0:
        raise InvalidInput("At least one p-value column is required")
    if np.isnan(values).any():
        raise InvalidInput("Scores contain missing values")
    if (values < 0).any() or (values > 1).any():
        raise InvalidInput("Scores must be p-values in the range [0, 1]")
    return np.maximum(values, P_VALUE_FLOOR)


def fisher_method(p_values: Union[Sequence[float], np.ndarray]) -> float:
    """
    Combine one row of p-values with Fisher's method.

    Args:
        p_values: P-values for a single gene

    Returns:
        Merged p-value
    """
    row = np.asarray(p_values, dtype=float).ravel()
    if row.size == 1:
        _check_p_values(row)
        return float(row[0])
    row = _check_p_values(row)
    statistic = -2.0 * np.sum(np.log(row))
    return float(stats.chi2.sf(statistic, 2 * row.size))


def _kost_covariance(z: np.ndarray) -> np.ndarray:
    rho = np.corrcoef(z, rowvar=False)
    a, b, c = _KOST_COEFFICIENTS
    return a * rho + b * rho ** 2 + c * rho ** 3


def _empirical_transform(column: np.ndarray) -> np.ndarray:
    standardised = (column - column.mean()) / column.std()
    ecdf = np.searchsorted(np.sort(standardised), standardised, side="right") / column.size
    return -2.0 * np.log(ecdf)


def calculate_covariances(
    scores: np.ndarray,
    estimator: str = "kost"
) -> Optional[np.ndarray]:
    """
    Estimate the covariance of -2 ln(p) between score columns.

    Args:
        scores: Genes x datasets array of p-values
        estimator: 'kost' (probit transform and Kost-McDermott mapping) or
            'empirical' (ECDF transform of standardised columns)

    Returns:
        k x k covariance matrix, or None when the estimate is degenerate
    """
    if estimator not in BROWNS_COVARIANCE:
        raise InvalidInput(f"Unknown Brown's covariance estimator: {estimator}")

    p_matrix = _check_p_values(np.asarray(scores, dtype=float))
    if p_matrix.ndim != 2 or p_matrix.shape[0] < 2:
        return None

    transformed = (
        stats.norm.isf(np.minimum(p_matrix, 1.0 - np.finfo(float).eps))
        if estimator == "kost" else p_matrix
    )
    zero_variance = [j for j in range(p_matrix.shape[1]) if np.std(transformed[:, j]) == 0]
    if zero_variance:
        logger.debug(f"Zero-variance score columns at positions {zero_variance}")
        return None

    if estimator == "kost":
        covariance = _kost_covariance(transformed)
    else:
        empirical = np.column_stack([
            _empirical_transform(p_matrix[:, j]) for j in range(p_matrix.shape[1])
        ])
        covariance = np.cov(empirical, rowvar=False)

    covariance = np.atleast_2d(covariance)
    if not np.all(np.isfinite(covariance)):
        return None
    return covariance


def _brown_parameters(covariance: np.ndarray) -> Optional[Tuple[float, float]]:
    """Scale factor and degrees of freedom matching c * chi2(f) to Fisher's statistic."""
    k = covariance.shape[0]
    expected = 2.0 * k
    cov_sum = 2.0 * np.sum(covariance[np.triu_indices(k, 1)])
    variance = 4.0 * k + cov_sum
    if not np.isfinite(variance) or variance <= 0:
        return None
    scale = variance / (2.0 * expected)
    df = (2.0 * expected ** 2) / variance
    if df > 2 * k:
        df = 2.0 * k
        scale = 1.0
    return scale, df


def brown_method(
    p_values: Union[Sequence[float], np.ndarray],
    covariance: np.ndarray
) -> float:
    """
    Combine one row of p-values with Brown's method.

    Args:
        p_values: P-values for a single gene
        covariance: Covariance matrix from calculate_covariances

    Returns:
        Merged p-value
    """
    row = np.asarray(p_values, dtype=float).ravel()
    if row.size == 1:
        _check_p_values(row)
        return float(row[0])
    params = _brown_parameters(np.atleast_2d(covariance))
    if params is None:
        _warn_degenerate()
        return fisher_method(row)
    scale, df = params
    statistic = -2.0 * np.sum(np.log(_check_p_values(row)))
    return float(stats.chi2.sf(statistic / scale, df))


def _warn_degenerate():
    message = "Covariance for Brown's method is degenerate; falling back to Fisher's method"
    logger.warning(message)
    warnings.warn(message, NumericalDegeneracyWarning, stacklevel=3)


def merge_p_values(
    scores,
    method: str = "brown",
    covariance: Optional[np.ndarray] = None,
    browns_covariance: str = "kost"
):
    """
    Merge p-values across dataset columns.

    A 2D array (genes x datasets) yields one merged p-value per gene; Brown's
    covariance is estimated from the whole array unless supplied. A 1D array
    is treated as a single row and yields a float; Brown's method then needs
    an explicit ``covariance`` unless the row has a single value.

    Args:
        scores: P-values, 1D (one gene) or 2D (genes x datasets)
        method: 'brown' or 'fisher'
        covariance: Optional precomputed covariance matrix for Brown's method
        browns_covariance: Covariance estimator passed to calculate_covariances

    Returns:
        Merged p-value(s)
    """
    if method not in MERGE_METHODS:
        raise InvalidInput(f"Unknown merge method: {method}. Use one of {', '.join(MERGE_METHODS)}")

    values = np.asarray(scores, dtype=float)

    if values.ndim == 1:
        if method == "fisher" or values.size == 1:
            return fisher_method(values)
        if covariance is None:
            raise InvalidInput(
                "Brown's method needs the full score matrix or a covariance matrix to merge a single row"
            )
        return brown_method(values, covariance)

    if values.ndim != 2 or values.shape[1] == 0:
        raise InvalidInput("Scores must be a genes x datasets matrix with at least one column")

    clamped = _check_p_values(values)
    if values.shape[1] == 1:
        return values[:, 0].copy()

    statistics = _fisher_statistics(np.ascontiguousarray(clamped, dtype=np.float64))
    k = values.shape[1]

    if method == "brown":
        if covariance is None:
            covariance = calculate_covariances(values, browns_covariance)
        params = None if covariance is None else _brown_parameters(np.atleast_2d(covariance))
        if params is None:
            _warn_degenerate()
        else:
            scale, df = params
            logger.debug(f"Brown's method: scale factor {scale:.4f}, degrees of freedom {df:.4f}")
            return stats.chi2.sf(statistics / scale, df)

    return stats.chi2.sf(statistics, 2 * k)


#  Ranking

def rank_genes(
    p_values: Union[Mapping[str, float], Sequence[float], np.ndarray],
    genes: Optional[Sequence[str]] = None,
    cutoff: Optional[float] = None
) -> List[str]:
    """
    Order genes from most to least significant.

    Ties keep the input order. Missing values are dropped, as are genes whose
    p-value exceeds ``cutoff`` when one is given.

    Args:
        p_values: Mapping of gene to p-value, or values aligned with ``genes``
        genes: Gene identifiers when ``p_values`` is not a mapping
        cutoff: Optional maximum p-value retained in the ranking

    Returns:
        List of gene identifiers
    """
    if isinstance(p_values, Mapping):
        genes = list(p_values.keys())
        values = np.asarray(list(p_values.values()), dtype=float)
    else:
        if genes is None:
            raise InvalidInput("Gene identifiers are required when p-values are not keyed by gene")
        values = np.asarray(p_values, dtype=float)
        if len(genes) != values.size:
            raise InvalidInput(f"Got {len(genes)} genes for {values.size} p-values")

    keep = ~np.isnan(values)
    if cutoff is not None:
        keep &= values <= cutoff
    indices = np.flatnonzero(keep)
    order = indices[np.argsort(values[indices], kind="stable")]
    return [genes[i] for i in order]


#  Ranked hypergeometric test

def ordered_hypergeometric(
    ranked_genes: Sequence[str],
    term_genes: Iterable[str],
    background_size: int
) -> Tuple[float, int]:
    """
    Ranked hypergeometric test of a term against an ordered gene list.

    Every prefix of the ranking that ends on a term gene is tested with the
    upper-tail hypergeometric probability of drawing at least as many term
    genes; the smallest probability is reported. Other prefixes can only
    give larger p-values and are skipped.

    Args:
        ranked_genes: Genes ordered from most to least significant
        term_genes: Term genes, already restricted to the background
        background_size: Number of genes in the sampling universe

    Returns:
        Tuple of (minimum p-value, prefix length where it first occurs);
        (1.0, 0) when no ranked gene belongs to the term
    """
    term_genes = term_genes if isinstance(term_genes, (set, frozenset)) else set(term_genes)
    n_term = len(term_genes)
    if n_term == 0:
        return 1.0, 0
    if n_term > background_size:
        raise InvalidInput(
            f"Term has {n_term} genes but the background holds only {background_size}"
        )
    if len(ranked_genes) > background_size:
        raise InvalidInput(
            f"Ranking holds {len(ranked_genes)} genes but the background holds only {background_size}"
        )

    hits = np.fromiter((g in term_genes for g in ranked_genes), dtype=np.bool_, count=len(ranked_genes))
    positions = _hit_positions(hits)
    if positions.size == 0:
        return 1.0, 0

    successes = np.arange(1, positions.size + 1)
    p_values = stats.hypergeom.sf(successes - 1, background_size, n_term, positions)
    best = int(np.argmin(p_values))
    return float(min(p_values[best], 1.0)), int(positions[best])


def leading_edge(ranked_genes: Sequence[str], term_genes: Iterable[str], prefix: int) -> Tuple[str, ...]:
    """Term genes among the first ``prefix`` ranked genes, in rank order."""
    term_genes = term_genes if isinstance(term_genes, (set, frozenset)) else set(term_genes)
    return tuple(g for g in ranked_genes[:prefix] if g in term_genes)


#  Multiple-testing correction

def adjust_p_values(p_values, method: str = "holm") -> np.ndarray:
    """
    Adjust p-values for multiple comparisons.

    Args:
        p_values: Raw p-values, one per test
        method: holm, bonferroni, fdr/BH, BY, hochberg, hommel, sidak or none

    Returns:
        Array of adjusted p-values in input order
    """
    key = str(method).lower()
    if key not in CORRECTION_METHODS:
        raise InvalidInput(
            f"Unknown correction method: {method}. Use one of {', '.join(CORRECTION_METHODS)}"
        )

    values = np.asarray(p_values, dtype=float)
    if values.size == 0 or CORRECTION_METHODS[key] is None:
        return values.copy()

    _, corrected, _, _ = multipletests(values, method=CORRECTION_METHODS[key])
    return np.minimum(corrected, 1.0)

