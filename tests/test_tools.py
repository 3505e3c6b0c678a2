import dataclasses

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scanpy as sc

from scipy import sparse

import anchormap as am
from anchormap._utils import UNASSIGNED, _empty_anchors, _nn_helper, _transfer_labels


class TestAnchors:
    k_filter = 50

    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(f - s) < threshold).all()

    def test_find_transfer_anchors(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = am.tl.find_transfer_anchors(adata_ref, adata_query, k_filter=self.k_filter)

        n_features = adata_ref.var["highly_variable"].sum()
        combined = anchorset.combined
        assert combined.shape == (adata_ref.n_obs + adata_query.n_obs, n_features)
        assert combined.obsm["pcaproject"].shape == (combined.n_obs, 30)
        assert combined.obsm["pcaproject.l2"].shape == (combined.n_obs, 30)
        assert combined.varm["pcaproject"].shape == (n_features, 30)
        assert combined.obs_names[0] == f"{adata_ref.obs_names[0]}_reference"
        assert combined.obs_names[-1] == f"{adata_query.obs_names[-1]}_query"
        assert (combined.obs["dataset"] == "query").sum() == adata_query.n_obs

        anchors = anchorset.anchors
        assert anchorset.n_anchors > 0
        assert anchors["cell1"].between(0, adata_ref.n_obs - 1).all()
        assert anchors["cell2"].between(0, adata_query.n_obs - 1).all()
        assert anchors["score"].between(0, 1).all()
        assert anchorset.anchor_matrix.shape == (anchorset.n_anchors, 3)

    def test_deterministic(self):
        adata_ref, adata_query = am.datasets.simulate()
        first = am.tl.find_transfer_anchors(adata_ref, adata_query, k_filter=self.k_filter)
        second = am.tl.find_transfer_anchors(adata_ref, adata_query, k_filter=self.k_filter)
        pd.testing.assert_frame_equal(first.anchors, second.anchors)

    def test_anchors_are_mutual(self):
        adata_ref, adata_query = am.datasets.simulate()
        k_anchor = 5
        anchorset = am.tl.find_transfer_anchors(
            adata_ref, adata_query, k_anchor=k_anchor, k_filter=None
        )
        ref_emb = anchorset.embedding("pcaproject.l2", "reference")
        query_emb = anchorset.embedding("pcaproject.l2", "query")
        nn_ab = _nn_helper(query_emb, ref_emb, k=k_anchor)
        nn_ba = _nn_helper(ref_emb, query_emb, k=k_anchor)

        for cell1, cell2 in anchorset.anchors[["cell1", "cell2"]].to_numpy():
            assert cell2 in nn_ab.indices[cell1]
            assert cell1 in nn_ba.indices[cell2]

        ordered = anchorset.anchors.sort_values(["cell1", "cell2"]).reset_index(drop=True)
        pd.testing.assert_frame_equal(anchorset.anchors, ordered)

    def test_more_neighbors_more_anchors(self):
        adata_ref, adata_query = am.datasets.simulate()
        small = am.tl.find_transfer_anchors(adata_ref, adata_query, k_anchor=5, k_filter=None)
        large = am.tl.find_transfer_anchors(adata_ref, adata_query, k_anchor=10, k_filter=None)

        pairs_small = set(map(tuple, small.anchors[["cell1", "cell2"]].to_numpy()))
        pairs_large = set(map(tuple, large.anchors[["cell1", "cell2"]].to_numpy()))
        assert pairs_small <= pairs_large

    def test_filtering_removes_anchors(self):
        adata_ref, adata_query = am.datasets.simulate()
        unfiltered = am.tl.find_transfer_anchors(adata_ref, adata_query, k_filter=None)
        filtered = am.tl.find_transfer_anchors(adata_ref, adata_query, k_filter=5)
        assert filtered.n_anchors <= unfiltered.n_anchors

    def test_errors(self):
        adata_ref, adata_query = am.datasets.simulate()
        n_cells = adata_ref.n_obs
        find = am.tl.find_transfer_anchors

        with pytest.raises(ValueError):
            find(adata_ref, adata_query, k_anchor=n_cells)
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, k_score=n_cells)
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, reduction="not_a_reduction")
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, normalization_method="SCT")
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, normalization_method="not_a_method")
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, features=["not_a_gene"])
        with pytest.raises(KeyError):
            find(adata_ref, adata_query, reference_layer="not_a_layer")
        with pytest.raises(KeyError):
            find(adata_ref, adata_query, query_layer="not_a_layer")
        with pytest.raises(KeyError):
            find(adata_ref, adata_query, reference_reduction="not_a_reduction")
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, npcs=30, n_dims=40)
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, npcs=None)
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, reduction="cca", project_query=True)
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, reduction="cca", reference_reduction="X_pca")
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, project_query=True, reference_reduction="X_pca")
        with pytest.raises(ValueError):
            find(adata_ref, adata_query, nn_method="annoy")

    def test_k_filter_clamped(self):
        adata_ref, adata_query = am.datasets.simulate()
        with pytest.warns(UserWarning, match="k_filter"):
            anchorset = am.tl.find_transfer_anchors(
                adata_ref, adata_query, k_filter=adata_ref.n_obs + 1
            )
        assert anchorset.params["k_filter"] == adata_ref.n_obs

    def test_cca(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = am.tl.find_transfer_anchors(
            adata_ref, adata_query, reduction="cca", k_filter=self.k_filter
        )
        assert anchorset.reduction == "cca"
        assert anchorset.combined.obsm["cca"].shape == (adata_ref.n_obs + adata_query.n_obs, 30)
        assert "cca.l2" in anchorset.combined.obsm
        assert anchorset.n_anchors > 0

    def test_reduction_stdev(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = am.tl.find_transfer_anchors(adata_ref, adata_query, k_filter=self.k_filter)

        combined = anchorset.combined
        reductions = combined.uns["reductions"]
        for name in ("pcaproject", "pcaproject.l2"):
            stdev = np.asarray(combined.obsm[name]).std(axis=0, ddof=1)
            self.assert_equals(reductions[name]["stdev"], stdev, 1e-10)
        assert not np.allclose(
            reductions["pcaproject.l2"]["stdev"], reductions["pcaproject"]["stdev"]
        )

    def test_project_query(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = am.tl.find_transfer_anchors(
            adata_ref, adata_query, project_query=True, k_filter=self.k_filter
        )
        assert len(anchorset.anchor_features) == adata_query.var["highly_variable"].sum()
        assert anchorset.n_anchors > 0

    def test_reference_reduction(self):
        adata_ref, adata_query = am.datasets.simulate()
        am.pp.prepare_reference(adata_ref, n_comps=30)
        anchorset = am.tl.find_transfer_anchors(
            adata_ref, adata_query, reference_reduction="X_pca", k_filter=self.k_filter
        )
        self.assert_equals(
            anchorset.embedding("pcaproject", "reference"), adata_ref.obsm["X_pca"]
        )
        assert anchorset.n_anchors > 0

        with pytest.raises(ValueError):
            am.tl.find_transfer_anchors(
                adata_ref, adata_query, reference_reduction="X_pca", n_dims=31
            )

    def test_reference_neighbors(self):
        adata_ref, adata_query = am.datasets.simulate()
        am.pp.prepare_reference(adata_ref, n_comps=30)
        sc.pp.neighbors(adata_ref, n_neighbors=31, use_rep="X_pca")

        anchorset = am.tl.find_transfer_anchors(
            adata_ref,
            adata_query,
            reference_reduction="X_pca",
            reference_neighbors="neighbors",
            k_score=30,
            k_filter=self.k_filter,
        )
        assert anchorset.n_anchors > 0
        assert "reference" in anchorset.neighbors

        with pytest.raises(ValueError):
            am.tl.find_transfer_anchors(
                adata_ref,
                adata_query,
                reference_reduction="X_pca",
                reference_neighbors="neighbors",
                k_score=31,
            )
        with pytest.raises(ValueError):
            am.tl.find_transfer_anchors(
                adata_ref, adata_query, reduction="cca", reference_neighbors="neighbors"
            )

    def test_find_integration_anchors(self):
        adata_1, adata_2 = am.datasets.simulate(random_state=1)
        adata_3, _ = am.datasets.simulate(random_state=2)
        anchorset = am.tl.find_integration_anchors(
            [adata_1, adata_2, adata_3], reference=[0], n_features=100, k_filter=self.k_filter
        )

        pairs = set(map(tuple, anchorset.anchors[["dataset1", "dataset2"]].to_numpy()))
        assert pairs == {(0, 1), (0, 2)}
        assert anchorset.anchors["score"].between(0, 1).all()

        pair = anchorset.pair(2, 0)
        forward = anchorset.pair(0, 2)
        assert (pair["cell1"].to_numpy() == forward["cell2"].to_numpy()).all()
        assert pair["cell1"].max() < adata_3.n_obs

    def test_find_integration_anchors_rpca(self):
        adata_1, adata_2 = am.datasets.simulate(random_state=1)
        anchorset = am.tl.find_integration_anchors(
            [adata_1, adata_2], reduction="rpca", n_features=100, k_filter=self.k_filter
        )
        assert anchorset.n_anchors > 0
        assert (anchorset.anchors["dataset1"] == 0).all()


class TestTransfer:
    k_filter = 50
    k_weight = 20

    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(f - s) < threshold).all()

    def _anchorset(self, adata_ref, adata_query, **kwargs):
        return am.tl.find_transfer_anchors(
            adata_ref, adata_query, k_filter=self.k_filter, **kwargs
        )

    def test_transfer_labels(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = self._anchorset(adata_ref, adata_query)
        am.tl.transfer_data(
            anchorset,
            "cell_type",
            adata_ref=adata_ref,
            adata_query=adata_query,
            k_weight=self.k_weight,
        )

        predicted = adata_query.obs["predicted_cell_type"]
        score = adata_query.obs["predicted_cell_type_score"]
        assert predicted.notna().all()
        assert score.between(0, 1).all()
        accuracy = (predicted.astype(str) == adata_query.obs["cell_type"].astype(str)).mean()
        assert accuracy > 0.7

        scores = adata_query.obsm["predicted_cell_type_scores"]
        assigned = (predicted != UNASSIGNED).to_numpy()
        self.assert_equals(scores.to_numpy().sum(axis=1)[assigned], 1.0, 1e-6)
        self.assert_equals(scores.max(axis=1).to_numpy(), score.to_numpy(), 1e-10)

    def test_transfer_labels_cca(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = self._anchorset(adata_ref, adata_query, reduction="cca")
        am.tl.transfer_data(
            anchorset,
            "cell_type",
            adata_ref=adata_ref,
            adata_query=adata_query,
            k_weight=self.k_weight,
        )

        predicted = adata_query.obs["predicted_cell_type"]
        assert predicted.notna().all()
        assert adata_query.obs["predicted_cell_type_score"].between(0, 1).all()
        accuracy = (predicted.astype(str) == adata_query.obs["cell_type"].astype(str)).mean()
        assert accuracy > 0.5

    def test_transfer_without_query_object(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = self._anchorset(adata_ref, adata_query)
        marker = np.asarray(adata_ref.X[:, 0]).ravel()
        result = am.tl.transfer_data(
            anchorset,
            {"labels": adata_ref.obs["cell_type"], "marker": marker, "pca": anchorset.embedding("pcaproject", "reference")},
            k_weight=self.k_weight,
        )

        assert list(result["labels"].columns[:2]) == ["predicted_labels", "predicted_labels_score"]
        assert result["labels"].shape[0] == adata_query.n_obs
        assert result["marker"].shape == (adata_query.n_obs,)
        assert result["pca"].shape == (adata_query.n_obs, 30)

    def test_transfer_copy(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = self._anchorset(adata_ref, adata_query)
        result = am.tl.transfer_data(
            anchorset,
            "cell_type",
            adata_ref=adata_ref,
            adata_query=adata_query,
            k_weight=self.k_weight,
            inplace=False,
        )
        assert "predicted_cell_type" in result.obs
        assert "predicted_cell_type" not in adata_query.obs

    def test_unassigned(self):
        W = sparse.csr_matrix(np.array([[0.5, 0.5, 0.0], [0.0, 0.0, 0.0]]))
        result = _transfer_labels(W, ["a", "b", "a"], "label", pd.Index(["c1", "c2"]))

        assert result["predicted_label"].tolist() == ["a", UNASSIGNED]
        self.assert_equals(result["predicted_label_score"].to_numpy(), np.array([0.5, 0.0]))
        assert list(result.columns[2:]) == ["label_score_a", "label_score_b"]

    def test_transfer_errors(self):
        adata_ref, adata_query = am.datasets.simulate()
        anchorset = self._anchorset(adata_ref, adata_query)

        empty = dataclasses.replace(anchorset, anchors=_empty_anchors())
        with pytest.raises(ValueError, match="No anchors"):
            am.tl.transfer_data(empty, "cell_type", adata_ref=adata_ref, k_weight=self.k_weight)
        with pytest.raises(ValueError):
            am.tl.transfer_data(anchorset, "cell_type", adata_ref=adata_ref, k_weight=10**4)
        with pytest.raises(ValueError):
            am.tl.transfer_data(
                anchorset, "cell_type", adata_ref=adata_ref, adata_query=adata_query[:10]
            )
        with pytest.raises(KeyError):
            am.tl.transfer_data(anchorset, "not_a_column", adata_ref=adata_ref)
        with pytest.raises(ValueError):
            am.tl.transfer_data(anchorset, {"labels": ["a"] * 3}, k_weight=self.k_weight)

    def test_integrate_embeddings(self):
        adata_ref, adata_query = am.datasets.simulate(batch_effect=0.5)
        anchorset = self._anchorset(adata_ref, adata_query)
        am.tl.integrate_embeddings(anchorset, adata_query, k_weight=self.k_weight)

        ref_emb = anchorset.embedding("pcaproject", "reference")
        query_emb = anchorset.embedding("pcaproject", "query")
        integrated = adata_query.obsm["X_ref_pca"]
        assert integrated.shape == query_emb.shape
        assert np.isfinite(integrated).all()

        shift_before = np.linalg.norm(query_emb.mean(axis=0) - ref_emb.mean(axis=0))
        shift_after = np.linalg.norm(integrated.mean(axis=0) - ref_emb.mean(axis=0))
        assert shift_after < shift_before

    def test_map_query(self):
        adata_ref, adata_query = am.datasets.simulate()
        am.pp.prepare_reference(adata_ref, n_comps=30)
        adata_ref.obsm["X_umap"] = adata_ref.obsm["X_pca"][:, :2]
        anchorset = self._anchorset(adata_ref, adata_query, reference_reduction="X_pca")

        am.tl.map_query(
            anchorset,
            adata_query,
            adata_ref,
            refdata={"celltype": "cell_type"},
            k_weight=self.k_weight,
        )
        assert adata_query.obsm["X_ref_pca"].shape == (adata_query.n_obs, 30)
        assert adata_query.obsm["X_ref_umap"].shape == (adata_query.n_obs, 2)
        assert "predicted_celltype" in adata_query.obs

        with pytest.raises(ValueError, match="map_query failed while projecting"):
            am.tl.map_query(
                anchorset,
                adata_query,
                adata_ref,
                reduction_model="X_tsne",
                k_weight=self.k_weight,
            )


class TestIntegration:
    batch_key = "batch"
    k_filter = 50
    k_weight = 20

    def _adata(self):
        adata_ref, adata_query = am.datasets.simulate()
        adata = ad.concat(
            [adata_ref, adata_query], label=self.batch_key, keys=["ref", "query"], merge="first"
        )
        am.pp.prepare_reference(adata, n_comps=30)
        return adata

    @pytest.mark.parametrize("method", ["cca", "rpca"])
    def test_integrate_layers(self, method):
        adata = self._adata()
        am.tl.integrate_layers(
            adata, self.batch_key, method=method, k_filter=self.k_filter, k_weight=self.k_weight
        )

        key = f"X_integrated_{method}"
        assert adata.obsm[key].shape == adata.obsm["X_pca"].shape
        assert np.isfinite(adata.obsm[key]).all()
        assert sorted(adata.uns[key]["merge_order"]) == ["query", "ref"]
        assert adata.uns[key]["n_anchors"] > 0

        # the first merged batch is kept as is
        first = adata.uns[key]["merge_order"][0]
        mask = (adata.obs[self.batch_key] == first).to_numpy()
        assert (adata.obsm[key][mask] == adata.obsm["X_pca"][mask]).all()

    def test_integrate_layers_harmony(self):
        adata = self._adata()
        am.tl.integrate_layers(adata, self.batch_key, method="harmony")
        assert adata.obsm["X_integrated_harmony"].shape == adata.obsm["X_pca"].shape

    def test_integrate_layers_errors(self):
        adata = self._adata()
        with pytest.raises(KeyError):
            am.tl.integrate_layers(adata, "not_a_column")
        with pytest.raises(KeyError):
            am.tl.integrate_layers(adata, self.batch_key, orig_reduction="X_umap")
        with pytest.raises(ValueError):
            am.tl.integrate_layers(adata, self.batch_key, method="not_a_method")
        with pytest.raises(ValueError):
            am.tl.integrate_layers(adata, self.batch_key, reference=["not_a_batch"])
