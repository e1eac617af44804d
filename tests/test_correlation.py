import numpy as np
import pandas as pd
import pytest

from autoab_pipeline.correlation import correlate_by_group, pearson_test, rma_regression


def test_perfect_linear_relation():
    x = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
    y = 2 * x + 1

    r, p = pearson_test(x, y)
    slope, intercept = rma_regression(x, y)

    assert r == pytest.approx(1.0)
    assert p < 1e-6
    assert slope == pytest.approx(2.0)
    assert intercept == pytest.approx(1.0)


def test_pearson_is_symmetric():
    rng = np.random.default_rng(0)
    x = rng.normal(size=30)
    y = 0.5 * x + rng.normal(size=30)

    assert pearson_test(x, y)[0] == pytest.approx(pearson_test(y, x)[0])
    assert pearson_test(x, y)[1] == pytest.approx(pearson_test(y, x)[1])


def test_rma_slope_sign_and_inverse():
    rng = np.random.default_rng(1)
    x = rng.normal(size=40)
    y = -3 * x + rng.normal(scale=0.5, size=40)

    slope_xy, _ = rma_regression(x, y)
    slope_yx, _ = rma_regression(y, x)

    assert slope_xy < 0
    assert slope_xy * slope_yx == pytest.approx(1.0)


def test_too_few_pairs_and_constant_input():
    assert all(np.isnan(pearson_test([1.0, 2.0], [2.0, 4.0])))
    assert all(np.isnan(pearson_test([1.0, 1.0, 1.0], [2.0, 4.0, 5.0])))
    assert all(np.isnan(pearson_test([1.0, np.nan, 3.0], [2.0, 4.0, np.nan])))


def test_correlate_by_group(logger):
    x = np.arange(1.0, 9.0)
    table = pd.DataFrame({
        "antigen": ["Ro60"] * 8 + ["Sm"] * 8 + ["La"] * 2,
        "IgG": np.concatenate([x, x, [1.0, 2.0]]),
        "IgA": np.concatenate([
            np.expm1(2 * np.log1p(x)),
            [5.0, 1.0, 7.0, 2.0, 8.0, 3.0, 4.0, 6.0],
            [1.0, 2.0],
        ]),
    })

    result = correlate_by_group(table, "IgG", "IgA", group="antigen", logger=logger)

    assert result.index.name == "group"
    assert result.columns.tolist() == ["n", "r", "p_value", "q_value", "slope", "intercept"]
    assert result.index[0] == "Ro60"
    assert result.loc["Ro60", "r"] == pytest.approx(1.0)
    assert result.loc["Ro60", "slope"] == pytest.approx(2.0)
    assert result.loc["La", "n"] == 2
    assert np.isnan(result.loc["La", "p_value"])
    assert np.isnan(result.loc["La", "q_value"])
    assert (result["q_value"].dropna() >= result["p_value"].dropna()).all()


def test_correlate_without_group(logger):
    table = pd.DataFrame({"a": [1.0, 2.0, 3.0, 4.0], "b": [3.0, 5.0, 7.0, 9.0]})
    result = correlate_by_group(table, "a", "b", log1p=False, logger=logger)

    assert result.index.tolist() == ["all"]
    assert result.loc["all", "intercept"] == pytest.approx(1.0)


def test_correlate_missing_column(logger):
    with pytest.raises(KeyError):
        correlate_by_group(pd.DataFrame({"a": [1.0]}), "a", "b", logger=logger)


def test_correlate_without_any_group_is_empty(logger):
    table = pd.DataFrame(
        {"antigen": [np.nan] * 4, "mfi": [1.0, 2.0, 3.0, 4.0], "igg": [2.0, 1.0, 4.0, 3.0]}
    )

    result = correlate_by_group(table, "mfi", "igg", group="antigen", logger=logger)

    assert result.empty
    assert result.index.name == "group"
    assert result.columns.tolist() == ["n", "r", "p_value", "q_value", "slope", "intercept"]
