from __future__ import annotations

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy import sparse

from .preprocessing import prepare_reference


def _log_normalize(adata: AnnData, n_top_genes: int | None) -> None:
    adata.layers["counts"] = sparse.csr_matrix(adata.X)
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    if n_top_genes is not None:
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, flavor="seurat")


def _counts(rng: np.random.Generator, means: np.ndarray) -> np.ndarray:
    size_factors = rng.lognormal(0.0, 0.2, size=means.shape[0])[:, np.newaxis]
    return rng.poisson(means * size_factors).astype(np.float32)


def simulate(
    n_ref: int = 80,
    n_query: int = 80,
    n_genes: int = 230,
    n_types: int = 3,
    n_top_genes: int = 100,
    batch_effect: float = 0.2,
    random_state: int = 42,
) -> tuple[AnnData, AnnData]:
    """
    Simulated log-normalized reference and query sharing ``n_types`` cell types
    (``obs["cell_type"]``), every type with its own block of marker genes.
    The query carries a per-gene multiplicative batch effect.
    Raw counts are kept in ``layers["counts"]``, variable genes in
    ``var["highly_variable"]``.
    """
    rng = np.random.default_rng(random_state)
    base = 0.5 + rng.gamma(2.0, 1.0, size=n_genes)
    block = max(5, n_genes // (2 * n_types))

    # [types, genes]
    means = np.tile(base, (n_types, 1))
    for t in range(n_types):
        genes = slice(t * block, min((t + 1) * block, n_genes))
        means[t, genes] *= rng.uniform(4.0, 10.0, size=means[t, genes].shape[0])
    batch = np.exp(rng.normal(0.0, batch_effect, size=n_genes))

    var = pd.DataFrame(index=[f"gene_{j}" for j in range(n_genes)])
    adatas = []
    for prefix, n_cells, shift in (("ref", n_ref, 1.0), ("query", n_query, batch)):
        types = rng.permutation(np.arange(n_cells) % n_types)
        adata = AnnData(
            X=_counts(rng, means[types] * shift),
            obs=pd.DataFrame(
                {"cell_type": pd.Categorical([f"type_{t}" for t in types])},
                index=[f"{prefix}_{i}" for i in range(n_cells)],
            ),
            var=var.copy(),
        )
        _log_normalize(adata, n_top_genes)
        adatas.append(adata)

    return adatas[0], adatas[1]


def simulate_rare(
    n_cells: int = 3000,
    n_rare: int = 20,
    n_genes: int = 60,
    n_types: int = 3,
    n_batches: int = 2,
    random_state: int = 0,
) -> AnnData:
    """
    Simulated log-normalized dataset with ``n_types`` common cell types and
    ``n_rare`` cells of a "rare" type expressing its own marker genes,
    spread over ``n_batches`` batches (``obs["batch"]``).
    """
    rng = np.random.default_rng(random_state)
    n_markers = max(3, n_genes // 10)
    common = 1.0 + rng.gamma(2.0, 1.0, size=(n_types, n_genes))
    common[:, :n_markers] = 0.05
    rare = np.full(n_genes, 0.05)
    rare[:n_markers] = 20.0
    means = np.vstack([common, rare])

    types = np.concatenate(
        [np.arange(n_cells - n_rare) % n_types, np.full(n_rare, n_types)]
    )
    types = rng.permutation(types)
    labels = np.array([f"type_{t}" for t in range(n_types)] + ["rare"])

    adata = AnnData(
        X=_counts(rng, means[types]),
        obs=pd.DataFrame(
            {
                "cell_type": pd.Categorical(labels[types]),
                "batch": pd.Categorical(
                    [f"batch_{b}" for b in rng.integers(0, n_batches, size=n_cells)]
                ),
            },
            index=[f"cell_{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=[f"gene_{j}" for j in range(n_genes)]),
    )
    _log_normalize(adata, n_top_genes=None)
    return adata


def pbmc3k_reference(n_top_genes: int = 2000, n_comps: int = 30) -> AnnData:
    """
    Log-normalized PBMC 3k from scanpy datasets with its ``louvain`` labels and
    ``X_umap`` layout, ready to be used as a reference.
    """
    processed = sc.datasets.pbmc3k_processed()
    adata = processed.raw.to_adata()
    adata.obsm["X_umap"] = processed.obsm["X_umap"]
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, flavor="seurat")
    prepare_reference(adata, n_comps=n_comps)
    return adata
