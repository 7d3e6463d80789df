"""
Tests for surrogate variable estimation.
"""

import numpy as np
import pandas as pd
import pytest

from markerscan.stats.design_matrix import CovariateTerm, build_design_matrix
from markerscan.stats.surrogate import (
    edge_lfdr,
    estimate_n_sv,
    estimate_surrogate_variables,
    f_pvalue,
)


def generate_batch_data(n_features=500, n_samples=20, seed=7):
    """
    Log expression with a primary group effect and a hidden batch.

    Probes 0-49 respond to group (+1.5), probes 100-299 to the batch (+2.0).
    The batch is not aligned with the group.
    """
    rng = np.random.default_rng(seed)
    group = np.array(["control"] * (n_samples // 2) + ["AD"] * (n_samples // 2))
    batch = np.tile([0.0, 1.0, 1.0, 0.0], n_samples // 4)
    data = rng.normal(8.0, 0.5, size=(n_features, n_samples))
    data[:50, group == "AD"] += 1.5
    data[100:300] += 2.0 * batch
    metadata = pd.DataFrame({"group": group}, index=[f"s{i}" for i in range(n_samples)])
    return data, metadata, batch


@pytest.fixture
def batch_data():
    data, metadata, batch = generate_batch_data()
    design = build_design_matrix(metadata, [CovariateTerm("group", reference="control")])
    return data, design, design.drop_terms(["group"]), batch


class TestEstimateSurrogates:
    """IRW-SVA recovers a hidden batch."""

    def test_recovers_hidden_batch(self, batch_data):
        data, design, null, batch = batch_data
        result = estimate_surrogate_variables(data, design, null, n_sv=1)

        assert result.sv.shape == (20, 1)
        assert abs(np.corrcoef(result.sv[:, 0], batch)[0, 1]) > 0.9

    def test_deterministic(self, batch_data):
        data, design, null, _ = batch_data
        first = estimate_surrogate_variables(data, design, null, n_sv=2)
        second = estimate_surrogate_variables(data, design, null, n_sv=2)
        np.testing.assert_array_equal(first.sv, second.sv)

    def test_zero_surrogates(self, batch_data):
        data, design, null, _ = batch_data
        result = estimate_surrogate_variables(data, design, null, n_sv=0)
        assert result.sv.shape == (20, 0)
        assert design.with_surrogates(result.sv) is design

    def test_too_many_surrogates(self, batch_data):
        data, design, null, _ = batch_data
        with pytest.raises(ValueError, match="no residual df"):
            estimate_surrogate_variables(data, design, null, n_sv=18)

    def test_incomplete_probes_ignored(self, batch_data):
        data, design, null, _ = batch_data
        data = data.copy()
        data[3, 4] = np.nan
        result = estimate_surrogate_variables(data, design, null, n_sv=1)
        assert not result.feature_mask[3]
        assert result.pprob_b.shape == (499,)

    def test_permutation_estimate_finds_batch(self, batch_data):
        data, design, _, _ = batch_data
        assert estimate_n_sv(data, design, n_permutations=20, random_state=0) >= 1


class TestHelpers:

    def test_f_pvalue_detects_group_probes(self, batch_data):
        data, design, null, _ = batch_data
        p = f_pvalue(data, design.X, null.X)
        assert np.median(p[:50]) < 1e-3
        assert np.median(p[300:]) > 0.2

    def test_f_pvalue_requires_nested_models(self, batch_data):
        data, design, null, _ = batch_data
        with pytest.raises(ValueError, match="must be larger"):
            f_pvalue(data, null.X, design.X)

    def test_edge_lfdr_bounds_and_monotonicity(self):
        rng = np.random.default_rng(0)
        p = np.concatenate([rng.uniform(size=900), rng.uniform(0, 1e-5, size=100)])
        lfdr = edge_lfdr(p)

        assert np.all((lfdr >= 0) & (lfdr <= 1))
        assert np.all(np.diff(lfdr[np.argsort(p)]) >= 0)
        assert np.median(lfdr[900:]) < 0.2
        assert np.median(lfdr[:900]) > 0.5
