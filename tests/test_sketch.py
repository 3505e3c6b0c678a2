import anndata as ad
import numpy as np
import pytest

import anchormap as am
from anchormap._utils import _leverage_exact


class TestSketch:
    n_genes = 60
    n_rare = 20

    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(f - s) < threshold).all()

    def _adata(self):
        return am.datasets.simulate_rare(n_rare=self.n_rare, n_genes=self.n_genes)

    def test_leverage_exact(self):
        rng = np.random.default_rng(0)
        X = rng.normal(size=(50, 8))
        hat = X @ np.linalg.inv(X.T @ X) @ X.T
        self.assert_equals(_leverage_exact(X), np.diag(hat), 1e-10)

    def test_leverage_score(self):
        adata = self._adata()
        am.tl.leverage_score(adata, use_genes_column=None)

        scores = adata.obs["leverage_score"].to_numpy()
        assert scores.shape == (adata.n_obs,)
        assert (scores >= 0).all()
        # leverage scores sum up to the rank of the data
        assert abs(scores.sum() - self.n_genes) < 1e-6

        rare = (adata.obs["cell_type"] == "rare").to_numpy()
        assert scores[rare].mean() > scores[~rare].mean()

    def test_leverage_score_sketched(self):
        adata = self._adata()
        scores = am.tl.leverage_score(
            adata, use_genes_column=None, n_sketch=500, chunk_size=700, inplace=False
        )
        assert "leverage_score" not in adata.obs
        assert scores.shape == (adata.n_obs,)
        assert np.isfinite(scores).all()

        rare = (adata.obs["cell_type"] == "rare").to_numpy()
        assert scores[rare].mean() > scores[~rare].mean()

    def test_sketch_data(self):
        adata = self._adata()
        n_obs = adata.n_obs
        sketch = am.tl.sketch_data(adata, n_cells=300, use_genes_column=None)

        assert sketch.n_obs == 300
        assert adata.n_obs == n_obs
        assert "leverage_score" not in adata.obs
        indices = sketch.uns["sketch"]["indices"]
        assert len(np.unique(indices)) == 300
        assert (np.diff(indices) > 0).all()
        assert (sketch.obs_names == adata.obs_names[indices]).all()
        assert sketch.uns["sketch"]["method"] == "LeverageScore"
        assert "batch_key" not in sketch.uns["sketch"]
        assert "leverage_score" in sketch.obs

        # rare cells are over-represented compared to uniform sampling
        assert (sketch.obs["cell_type"] == "rare").sum() >= 5

    def test_sketch_deterministic(self):
        adata = self._adata()
        first = am.tl.sketch_data(adata, n_cells=300, use_genes_column=None)
        second = am.tl.sketch_data(adata, n_cells=300, use_genes_column=None)
        assert (first.uns["sketch"]["indices"] == second.uns["sketch"]["indices"]).all()

    def test_sketch_uniform_per_batch(self):
        adata = self._adata()
        sketch = am.tl.sketch_data(adata, n_cells=100, method="Uniform", batch_key="batch")

        assert sketch.n_obs == 100 * adata.obs["batch"].nunique()
        assert (sketch.obs["batch"].value_counts() == 100).all()
        assert sketch.uns["sketch"]["batch_key"] == "batch"
        assert "leverage_score" not in sketch.obs

    def test_sketch_leverage_per_batch(self):
        adata = self._adata()
        sketch = am.tl.sketch_data(adata, n_cells=300, batch_key="batch", use_genes_column=None)

        assert sketch.n_obs == 300 * adata.obs["batch"].nunique()
        assert (sketch.obs["batch"].value_counts() == 300).all()
        assert sketch.uns["sketch"]["method"] == "LeverageScore"
        assert sketch.uns["sketch"]["batch_key"] == "batch"
        assert "leverage_score" in sketch.obs
        assert (sketch.obs["cell_type"] == "rare").sum() >= 5

    def test_sketch_errors(self):
        adata = self._adata()
        with pytest.raises(ValueError):
            am.tl.sketch_data(adata, n_cells=adata.n_obs + 1, use_genes_column=None)
        with pytest.raises(ValueError):
            am.tl.sketch_data(adata, method="not_a_method")
        with pytest.raises(KeyError):
            am.tl.sketch_data(adata, n_cells=100, batch_key="not_a_column")

    def test_sketch_backed(self, tmp_path):
        path = tmp_path / "rare.h5ad"
        self._adata().write_h5ad(path)
        adata = ad.read_h5ad(path, backed="r")

        sketch = am.tl.sketch_data(adata, n_cells=200, use_genes_column=None, chunk_size=500)
        assert not sketch.isbacked
        assert sketch.n_obs == 200
        assert adata.isbacked
        adata.file.close()

    def test_project_data(self):
        adata = self._adata()
        sketch = am.tl.sketch_data(adata, n_cells=500, method="Uniform")
        am.pp.prepare_reference(sketch, n_comps=10, use_genes_column=None)

        am.tl.project_data(
            adata,
            sketch,
            refdata="cell_type",
            use_genes_column=None,
            k_neighbors=10,
            chunk_size=700,
        )

        assert adata.obsm["X_pca_full"].shape == (adata.n_obs, 10)
        indices = sketch.uns["sketch"]["indices"]
        self.assert_equals(adata.obsm["X_pca_full"][indices], sketch.obsm["X_pca"], 1e-6)

        common = (adata.obs["cell_type"] != "rare").to_numpy()
        predicted = adata.obs["predicted_cell_type"].astype(str).to_numpy()[common]
        truth = adata.obs["cell_type"].astype(str).to_numpy()[common]
        assert (predicted == truth).mean() > 0.9

    def test_project_data_unfitted_features(self):
        adata = self._adata()
        sketch = am.tl.sketch_data(adata, n_cells=500, method="Uniform")
        sketch.var["pca_genes"] = np.arange(sketch.n_vars) < 30
        am.pp.prepare_reference(sketch, n_comps=10, use_genes_column="pca_genes")

        with pytest.raises(ValueError, match="mean/std"):
            am.tl.project_data(adata, sketch, use_genes_column=None)
        assert "X_pca_full" not in adata.obsm

        am.tl.project_data(adata, sketch, use_genes_column="pca_genes")
        assert np.isfinite(adata.obsm["X_pca_full"]).all()
