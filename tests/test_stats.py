"""Tests for statistical analysis functions."""

import numpy as np
import pytest
from scipy import stats

from mpea.exceptions import InvalidInput, NumericalDegeneracyWarning
from mpea.stats import (
    _brown_parameters,
    adjust_p_values,
    brown_method,
    calculate_covariances,
    fisher_method,
    leading_edge,
    merge_p_values,
    ordered_hypergeometric,
    rank_genes,
)


@pytest.fixture
def random_scores():
    """Two loosely related p-value columns for 200 genes."""
    rng = np.random.default_rng(42)
    a = rng.uniform(0.001, 1.0, size=200)
    b = np.clip(a * rng.uniform(0.5, 1.5, size=200), 0.001, 1.0)
    return np.column_stack([a, b])


@pytest.fixture
def duplicated_scores():
    """Two identical p-value columns."""
    rng = np.random.default_rng(7)
    a = rng.uniform(0.001, 1.0, size=100)
    return np.column_stack([a, a])


def test_single_value_is_returned_unchanged():
    """A single p-value merges to itself under both methods."""
    assert merge_p_values([0.037], method="fisher") == 0.037
    assert merge_p_values([0.037], method="brown") == 0.037
    assert fisher_method([0.2]) == 0.2
    assert brown_method([0.2], np.array([[4.0]])) == 0.2


def test_single_column_matrix_is_returned_unchanged():
    """A one-column matrix merges to the column itself."""
    column = np.array([[0.01], [0.5], [1.0], [0.2]])
    for method in ("fisher", "brown"):
        merged = merge_p_values(column, method=method)
        assert np.array_equal(merged, column[:, 0])


def test_fisher_matches_scipy():
    """Fisher's method agrees with scipy's combine_pvalues."""
    _, expected = stats.combine_pvalues([0.05, 0.05], method="fisher")
    assert fisher_method([0.05, 0.05]) == pytest.approx(expected)

    _, expected = stats.combine_pvalues([0.001, 0.8, 0.3], method="fisher")
    assert merge_p_values([0.001, 0.8, 0.3], method="fisher") == pytest.approx(expected)


def test_fisher_matrix_matches_rows(random_scores):
    """Merging a matrix equals merging each row on its own."""
    merged = merge_p_values(random_scores, method="fisher")
    expected = [fisher_method(row) for row in random_scores]
    np.testing.assert_allclose(merged, expected, rtol=1e-10)


def test_fisher_is_monotonic():
    """Lowering one p-value never raises the merged p-value."""
    base = fisher_method([0.2, 0.3, 0.4])
    assert fisher_method([0.1, 0.3, 0.4]) <= base
    assert fisher_method([0.2, 0.3, 0.01]) <= base
    assert fisher_method([0.2, 0.3, 0.4]) == base


def test_brown_with_identical_columns_returns_input(duplicated_scores):
    """Perfectly correlated columns carry no extra evidence."""
    merged = merge_p_values(duplicated_scores, method="brown")
    np.testing.assert_allclose(merged, duplicated_scores[:, 0], rtol=1e-6)


def test_brown_is_more_conservative_for_correlated_columns(random_scores):
    """Positive correlation inflates Fisher's significance; Brown corrects it."""
    fisher = merge_p_values(random_scores, method="fisher")
    brown = merge_p_values(random_scores, method="brown")
    strongest = np.argsort(fisher)[:10]
    assert np.all(brown[strongest] >= fisher[strongest])


def test_brown_row_with_covariance_matches_matrix(random_scores):
    """Merging one row with a precomputed covariance matches the matrix result."""
    covariance = calculate_covariances(random_scores)
    merged = merge_p_values(random_scores, method="brown")
    for i in (0, 17, 99):
        row_value = merge_p_values(random_scores[i], method="brown", covariance=covariance)
        assert row_value == pytest.approx(merged[i])


def test_brown_row_without_covariance_raises():
    """Brown's method needs covariance to merge a lone row."""
    with pytest.raises(InvalidInput, match="covariance"):
        merge_p_values([0.1, 0.2], method="brown")


def test_empirical_covariance(random_scores):
    """The empirical estimator produces valid merged p-values."""
    covariance = calculate_covariances(random_scores, estimator="empirical")
    assert covariance.shape == (2, 2)
    merged = merge_p_values(random_scores, method="brown", browns_covariance="empirical")
    assert np.all((merged >= 0) & (merged <= 1))


def test_brown_parameters_from_covariance():
    """Positive covariance inflates the scale and lowers the degrees of freedom."""
    covariance = np.array([[4.0, 2.0], [2.0, 4.0]])
    scale, df = _brown_parameters(covariance)
    # Var = 4k + 2 * cov = 12, c = Var / 4k, f = 8k^2 / Var
    assert scale == pytest.approx(1.5)
    assert df == pytest.approx(8 / 3)


def test_brown_parameters_without_covariance_match_fisher():
    """Independent columns give Fisher's scale and degrees of freedom."""
    assert _brown_parameters(np.diag([4.0, 4.0, 4.0])) == pytest.approx((1.0, 6.0))


def test_brown_parameters_cap_degrees_of_freedom():
    """Negative covariance caps f at 2k with no rescaling."""
    covariance = np.array([[4.0, -1.0], [-1.0, 4.0]])
    assert _brown_parameters(covariance) == (1.0, 4.0)


def test_empirical_covariance_matches_direct_computation():
    """Merged values agree with Brown's method computed step by step."""
    rng = np.random.default_rng(11)
    base = rng.uniform(0.001, 1.0, size=50)
    scores = np.column_stack([
        base,
        np.clip(base * rng.uniform(0.6, 1.4, size=50), 0.001, 1.0),
        rng.uniform(0.001, 1.0, size=50),
    ])
    k = scores.shape[1]

    transformed = []
    for j in range(k):
        column = scores[:, j]
        standardised = (column - column.mean()) / column.std(ddof=0)
        ecdf = stats.rankdata(standardised, method="max") / column.size
        transformed.append(-2.0 * np.log(ecdf))
    covariance = np.cov(np.column_stack(transformed), rowvar=False)

    variance = 4 * k + 2 * covariance[np.triu_indices(k, 1)].sum()
    scale = variance / (4 * k)
    df = 8 * k ** 2 / variance
    if df > 2 * k:
        scale, df = 1.0, 2 * k
    expected = stats.chi2.sf(-2.0 * np.log(scores).sum(axis=1) / scale, df)

    merged = merge_p_values(scores, method="brown", browns_covariance="empirical")
    np.testing.assert_allclose(merged, expected, rtol=1e-10)


def test_zero_variance_column_falls_back_to_fisher():
    """A constant column makes Brown's covariance degenerate."""
    scores = np.column_stack([np.linspace(0.01, 0.9, 20), np.full(20, 0.5)])
    with pytest.warns(NumericalDegeneracyWarning):
        merged = merge_p_values(scores, method="brown")
    np.testing.assert_allclose(merged, merge_p_values(scores, method="fisher"))


def test_zero_p_values_are_clamped():
    """Zeros are floored instead of producing infinities."""
    scores = np.array([[0.0, 0.5], [0.3, 0.2], [0.9, 0.1], [0.6, 0.7]])
    merged = merge_p_values(scores, method="fisher")
    assert np.all(np.isfinite(merged))
    assert merged[0] < merged[1]


def test_merge_rejects_invalid_values():
    """Missing and out-of-range values are rejected."""
    with pytest.raises(InvalidInput):
        merge_p_values([[0.1, 1.5], [0.2, 0.3]], method="fisher")
    with pytest.raises(InvalidInput):
        merge_p_values([[0.1, np.nan], [0.2, 0.3]], method="fisher")
    with pytest.raises(InvalidInput):
        merge_p_values([[0.1, -0.1], [0.2, 0.3]], method="fisher")
    with pytest.raises(InvalidInput):
        merge_p_values(np.empty((3, 0)), method="fisher")
    with pytest.raises(InvalidInput):
        merge_p_values([0.1, 0.2], method="stouffer")


def test_rank_genes_breaks_ties_by_input_order():
    """Equal p-values keep the order they were given in."""
    ranked = rank_genes({"a": 0.5, "b": 0.1, "c": 0.5, "d": 0.01})
    assert ranked == ["d", "b", "a", "c"]
    assert rank_genes({"a": 0.5, "b": 0.1, "c": 0.5, "d": 0.01}) == ranked


def test_rank_genes_cutoff_and_missing():
    """The cutoff is inclusive and missing values are dropped."""
    ranked = rank_genes([0.2, 0.05, np.nan, 0.5], genes=["x", "y", "w", "z"], cutoff=0.2)
    assert ranked == ["y", "x"]
    assert rank_genes([0.2, 0.05], genes=["x", "y"], cutoff=0.01) == []


def test_rank_genes_requires_matching_genes():
    """Values and identifiers must align."""
    with pytest.raises(InvalidInput):
        rank_genes([0.1, 0.2], genes=["x"])
    with pytest.raises(InvalidInput):
        rank_genes([0.1, 0.2])


def test_ordered_hypergeometric_small_example():
    """Term {g1, g2} at the top of a three-gene ranking."""
    p_value, prefix = ordered_hypergeometric(["g1", "g2", "g3"], {"g1", "g2"}, 3)
    assert p_value == pytest.approx(1 / 3)
    assert prefix == 2
    assert leading_edge(["g1", "g2", "g3"], {"g1", "g2"}, prefix) == ("g1", "g2")


def test_ordered_hypergeometric_without_overlap():
    """No hits and empty terms give p = 1."""
    assert ordered_hypergeometric(["g1", "g2"], {"g5"}, 10) == (1.0, 0)
    assert ordered_hypergeometric(["g1", "g2"], set(), 10) == (1.0, 0)
    assert ordered_hypergeometric([], {"g1"}, 10) == (1.0, 0)


def test_ordered_hypergeometric_matches_exhaustive_scan():
    """Testing only hit positions finds the minimum over every prefix."""
    rng = np.random.default_rng(3)
    universe = [f"gene{i}" for i in range(50)]
    ranked = list(rng.permutation(universe)[:30])
    term = set(rng.choice(universe, size=8, replace=False))

    p_value, prefix = ordered_hypergeometric(ranked, term, len(universe))

    exhaustive = []
    for n in range(1, len(ranked) + 1):
        hits = sum(g in term for g in ranked[:n])
        if hits:
            exhaustive.append(stats.hypergeom.sf(hits - 1, len(universe), len(term), n))
    assert p_value == pytest.approx(min(exhaustive))
    assert ranked[prefix - 1] in term

    hits = sum(g in term for g in ranked)
    full_prefix = stats.hypergeom.sf(hits - 1, len(universe), len(term), len(ranked))
    assert p_value <= full_prefix


def test_ordered_hypergeometric_rejects_oversized_term():
    """A term cannot be larger than its universe."""
    with pytest.raises(InvalidInput):
        ordered_hypergeometric(["a"], {"a", "b", "c"}, 2)


def test_ordered_hypergeometric_rejects_ranking_larger_than_background():
    """A ranking cannot hold more genes than its universe."""
    with pytest.raises(InvalidInput, match="Ranking holds 3 genes"):
        ordered_hypergeometric(["a", "b", "c"], {"c"}, 2)


def test_holm_adjustment():
    """Holm adjustment is never below the raw values and keeps their order."""
    raw = np.array([0.04, 0.001, 0.03, 0.5, 0.01])
    adjusted = adjust_p_values(raw, "holm")
    assert np.all(adjusted >= raw)
    in_order = adjusted[np.argsort(raw)]
    assert np.all(np.diff(in_order) >= 0)
    assert adjusted[1] == pytest.approx(0.005)


def test_other_adjustments():
    """Bonferroni, none and BH adjustments."""
    raw = np.array([0.01, 0.2, 0.4])
    np.testing.assert_allclose(adjust_p_values(raw, "bonferroni"), [0.03, 0.6, 1.0])
    np.testing.assert_array_equal(adjust_p_values(raw, "none"), raw)
    assert np.all(adjust_p_values(raw, "fdr") >= raw)
    assert adjust_p_values([], "holm").size == 0


def test_unknown_adjustment():
    """Unknown correction methods are rejected."""
    with pytest.raises(InvalidInput, match="Unknown correction method"):
        adjust_p_values([0.1], "magic")
