# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import itertools
import logging
import warnings

from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from pandas.api.types import is_bool_dtype, is_numeric_dtype
from scipy import sparse

from . import preprocessing as pp
from ._anchorset import IntegrationAnchorSet, TransferAnchorSet
from ._utils import (
    NN_METHODS,
    Neighbors,
    _check_normalization,
    _check_zero_variance,
    _distance_weights,
    _feature_matrix,
    _find_anchors,
    _find_weights,
    _fit_pca,
    _get_layer,
    _iter_chunks,
    _kernel_normalize,
    _l2_normalize,
    _leverage_exact,
    _leverage_sketched,
    _mean_std,
    _neighbors_from_adata,
    _nn_helper,
    _run_cca,
    _scale,
    _to_dense,
    _transfer_continuous,
    _transfer_labels,
    _weighted_sample,
)


TRANSFER_REDUCTIONS = ("pcaproject", "cca")
INTEGRATION_REDUCTIONS = ("cca", "rpca")
SKETCH_METHODS = ("LeverageScore", "Uniform")
logger = logging.getLogger("anchormap")


# ---------------------------------------------------------------------------
# validation shared by the anchor finders


def _check_k(
    k_anchor: int, k_score: int, k_filter: int | None, n_cells: int
) -> int | None:
    if k_anchor < 1 or k_score < 1:
        raise ValueError("`k_anchor` and `k_score` should be positive")
    if k_anchor >= n_cells:
        raise ValueError(
            f"`k_anchor` ({k_anchor}) should be smaller than the number of cells "
            f"in the smallest dataset ({n_cells})"
        )
    if k_score >= n_cells:
        raise ValueError(
            f"`k_score` ({k_score}) should be smaller than the number of cells "
            f"in the smallest dataset ({n_cells})"
        )
    if k_filter is not None:
        if k_filter < 1:
            raise ValueError("`k_filter` should be positive or None")
        if k_filter > n_cells:
            warnings.warn(
                f"`k_filter` ({k_filter}) is larger than the number of cells in the "
                f"smallest dataset ({n_cells}), using k_filter={n_cells}"
            )
            k_filter = n_cells
    return k_filter


def _check_nn_method(nn_method: str) -> None:
    if nn_method not in NN_METHODS:
        raise ValueError(f"`nn_method` should be one of {NN_METHODS}, got '{nn_method}'")


def _shared_features(
    features: Iterable[str], adatas: Sequence[AnnData], param: str = "features"
) -> list[str]:
    features = pd.Index(features)
    present = np.ones(len(features), dtype=bool)
    for adata in adatas:
        present &= features.isin(adata.var_names)
    if not present.all():
        warnings.warn(
            f"{(~present).sum()} of {len(features)} `{param}` are missing "
            f"from some of the datasets and are ignored"
        )
    features = list(features[present])
    if len(features) == 0:
        raise ValueError(f"`{param}`: none of the requested features is present in all datasets")
    return features


def _variable_features(adata: AnnData, use_genes_column: str | None, dataset: str) -> pd.Index:
    if use_genes_column is None:
        return adata.var_names
    if use_genes_column not in adata.var:
        raise KeyError(
            f"`use_genes_column`: column '{use_genes_column}' not found in the {dataset}'s var"
        )
    return adata.var_names[adata.var[use_genes_column].to_numpy(dtype=bool)]


def _scaling_stats(X: np.ndarray, sct: bool) -> tuple[np.ndarray, np.ndarray]:
    # Pearson residuals are already centered and scaled
    if sct:
        return np.zeros(X.shape[1]), np.ones(X.shape[1])
    return _mean_std(X)


def _stack(*matrices) -> np.ndarray:
    return np.vstack([np.asarray(m) for m in matrices])


# ---------------------------------------------------------------------------
# anchors


def find_transfer_anchors(
    adata_ref: AnnData,
    adata_query: AnnData,
    normalization_method: str = "LogNormalize",
    reference_layer: str | None = None,
    query_layer: str | None = None,
    reduction: str = "pcaproject",
    reference_reduction: str | None = None,
    reference_loadings: str = "PCs",
    reference_neighbors: str | Neighbors | None = None,
    project_query: bool = False,
    features: Iterable[str] | None = None,
    use_genes_column: str | None = "highly_variable",
    npcs: int | None = 30,
    n_dims: int | None = 30,
    l2_norm: bool = True,
    k_anchor: int = 5,
    k_filter: int | None = 200,
    k_score: int = 30,
    max_features: int = 200,
    max_value: float | None = 10.0,
    nn_method: str = "auto",
    n_jobs: int | None = None,
    random_state: int = 42,
) -> TransferAnchorSet:
    """
    Find anchors between a reference and a query dataset.

    Both datasets are placed in a shared space, either by projecting the
    query onto the reference PCA (``"pcaproject"``) or by canonical
    correlation analysis (``"cca"``). Pairs of cells that are mutual nearest
    neighbors across the datasets become anchors; anchors not supported by the
    original feature space are filtered out and the rest are scored by the
    overlap of their neighborhoods.

    Neither dataset is modified.

    :param adata_ref: log-normalized reference
    :type adata_ref: AnnData
    :param adata_query: log-normalized query
    :type adata_query: AnnData
    :param normalization_method: "LogNormalize" or "SCT" (Pearson residuals), both datasets must match, defaults to "LogNormalize"
    :type normalization_method: str, optional
    :param reference_layer: layer of ``adata_ref`` to use instead of ``X``, defaults to None
    :type reference_layer: str | None, optional
    :param query_layer: layer of ``adata_query`` to use instead of ``X``, defaults to None
    :type query_layer: str | None, optional
    :param reduction: "pcaproject" or "cca", defaults to "pcaproject"
    :type reduction: str, optional
    :param reference_reduction: precomputed ``adata_ref.obsm`` embedding to project onto (requires ``var["mean"]``, ``var["std"]`` and ``varm[reference_loadings]``), defaults to None
    :type reference_reduction: str | None, optional
    :param reference_loadings: ``adata_ref.varm`` loadings of ``reference_reduction``, defaults to "PCs"
    :type reference_loadings: str, optional
    :param reference_neighbors: ``adata_ref.uns`` scanpy neighbors key, or :class:`Neighbors`, used as reference neighborhoods, defaults to None
    :type reference_neighbors: str | Neighbors | None, optional
    :param project_query: project the reference onto the query PCA instead, defaults to False
    :type project_query: bool, optional
    :param features: features to use, defaults to the variable features of the fitted dataset
    :type features: Iterable[str] | None, optional
    :param use_genes_column: boolean ``var`` column marking variable features, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param npcs: number of principal components to compute, defaults to 30
    :type npcs: int | None, optional
    :param n_dims: number of dimensions used for neighbor search, defaults to 30
    :type n_dims: int | None, optional
    :param l2_norm: search neighbors in the L2-normalized embedding, defaults to True
    :type l2_norm: bool, optional
    :param k_anchor: neighbors used to pick anchors, defaults to 5
    :type k_anchor: int, optional
    :param k_filter: neighbors used to filter anchors in feature space, None to skip filtering, defaults to 200
    :type k_filter: int | None, optional
    :param k_score: neighbors used to score anchors, defaults to 30
    :type k_score: int, optional
    :param max_features: maximum number of features used for filtering, defaults to 200
    :type max_features: int, optional
    :param max_value: scaled values are clipped to ``[-max_value, max_value]``, defaults to 10.0
    :type max_value: float | None, optional
    :param nn_method: ``sklearn.neighbors.NearestNeighbors`` algorithm, defaults to "auto"
    :type nn_method: str, optional
    :param n_jobs: parallel jobs for neighbor search, defaults to None
    :type n_jobs: int | None, optional
    :param random_state: random seed, defaults to 42
    :type random_state: int, optional
    :return: the anchor set
    :rtype: TransferAnchorSet
    """
    # Errors
    _check_normalization(normalization_method, adata_ref, adata_query)
    sct = normalization_method == "SCT"

    if reduction not in TRANSFER_REDUCTIONS:
        raise ValueError(
            f"`reduction` should be one of {TRANSFER_REDUCTIONS}, got '{reduction}'"
        )
    _check_nn_method(nn_method)
    _get_layer(adata_ref, reference_layer, "reference_layer")
    _get_layer(adata_query, query_layer, "query_layer")

    if reduction == "cca" and project_query:
        raise ValueError("`project_query` can't be used with reduction='cca'")

    if reference_reduction is not None:
        if reduction == "cca":
            raise ValueError("`reference_reduction` can't be used with reduction='cca'")
        if project_query:
            raise ValueError("`reference_reduction` can't be used with project_query=True")
        if reference_reduction not in adata_ref.obsm:
            raise KeyError(
                f"`reference_reduction`: '{reference_reduction}' not found in adata_ref.obsm"
            )
        if reference_loadings not in adata_ref.varm:
            raise KeyError(
                f"`reference_loadings`: '{reference_loadings}' not found in adata_ref.varm"
            )
        for column in ("mean", "std"):
            if column not in adata_ref.var:
                raise KeyError(
                    f"Gene expression {column}s are expected to be saved in "
                    f"adata_ref.var['{column}'] when `reference_reduction` is used"
                )
        available_dims = adata_ref.obsm[reference_reduction].shape[1]
    elif reduction == "cca":
        available_dims = None
    elif npcs is None:
        raise ValueError("`npcs` should be set when `reference_reduction` isn't given")
    else:
        available_dims = npcs

    if reference_neighbors is not None and (reduction != "pcaproject" or project_query):
        raise ValueError(
            "`reference_neighbors` can only be used with reduction='pcaproject' "
            "and project_query=False"
        )

    n_dims = available_dims if n_dims is None else n_dims
    if n_dims is None:
        raise ValueError("`n_dims` should be set with reduction='cca'")
    if available_dims is not None and n_dims > available_dims:
        raise ValueError(
            f"`n_dims` ({n_dims}) exceeds the number of available components "
            f"({available_dims})"
        )

    # features
    if features is None:
        fitted, name = (adata_query, "query") if project_query else (adata_ref, "reference")
        features = _variable_features(fitted, use_genes_column, name)
    features = _shared_features(features, [adata_ref, adata_query])

    n_ref, n_query = adata_ref.n_obs, adata_query.n_obs
    if reference_reduction is None:
        n_fit = n_query if project_query else n_ref
        if reduction == "cca":
            if n_dims >= min(n_ref, n_query):
                raise ValueError(
                    f"`n_dims` ({n_dims}) should be smaller than the number of cells "
                    f"in both datasets ({min(n_ref, n_query)})"
                )
        elif npcs >= min(n_fit, len(features)):
            raise ValueError(
                f"`npcs` ({npcs}) should be smaller than both the number of cells "
                f"({n_fit}) and of features ({len(features)})"
            )

    k_filter = _check_k(k_anchor, k_score, k_filter, min(n_ref, n_query))

    nn_aa = None
    neighbors = {}
    if reference_neighbors is not None:
        nn_aa = (
            reference_neighbors
            if isinstance(reference_neighbors, Neighbors)
            else _neighbors_from_adata(adata_ref, reference_neighbors)
        )
        if nn_aa.indices.shape[0] != n_ref:
            raise ValueError(
                "`reference_neighbors` should hold one row per reference cell"
            )
        if max(k_anchor, k_score) >= nn_aa.n_neighbors:
            raise ValueError(
                f"`k_anchor` and `k_score` should be smaller than the number of "
                f"precomputed reference neighbors ({nn_aa.n_neighbors})"
            )
        neighbors["reference"] = nn_aa

    # 1. shared space
    ref_data = _feature_matrix(adata_ref, features, reference_layer, "reference_layer")
    query_data = _feature_matrix(adata_query, features, query_layer, "query_layer")

    if reduction == "pcaproject":
        logger.info("Projecting cell embeddings")
        if reference_reduction is not None:
            var = adata_ref.var.loc[features]
            mean = var["mean"].to_numpy(dtype=float)
            std = var["std"].to_numpy(dtype=float)
            if np.isnan(mean).any() or np.isnan(std).any():
                raise ValueError(
                    "Some of `features` have no saved mean/std in adata_ref.var, "
                    "they weren't used to compute `reference_reduction`"
                )
            _check_zero_variance(std, features, "reference")
            ref_scaled = _scale(ref_data, mean, std, max_value)
            loadings = np.asarray(
                adata_ref.varm[reference_loadings][adata_ref.var_names.get_indexer(features)]
            )
            ref_emb = np.asarray(adata_ref.obsm[reference_reduction])
            query_scaled = _scale(query_data, mean, std, max_value)
            query_emb = query_scaled @ loadings
        elif project_query:
            mean, std = _scaling_stats(query_data, sct)
            _check_zero_variance(std, features, "query")
            query_scaled = _scale(query_data, mean, std, max_value)
            query_emb, loadings, _ = _fit_pca(query_scaled, npcs, random_state)
            ref_scaled = _scale(ref_data, mean, std, max_value)
            ref_emb = ref_scaled @ loadings
        else:
            mean, std = _scaling_stats(ref_data, sct)
            _check_zero_variance(std, features, "reference")
            ref_scaled = _scale(ref_data, mean, std, max_value)
            ref_emb, loadings, _ = _fit_pca(ref_scaled, npcs, random_state)
            query_scaled = _scale(query_data, mean, std, max_value)
            query_emb = query_scaled @ loadings
        key = "ProjectPC_"
    else:
        logger.info("Running CCA")
        ref_mean, ref_std = _scaling_stats(ref_data, sct)
        _check_zero_variance(ref_std, features, "reference")
        query_mean, query_std = _scaling_stats(query_data, sct)
        _check_zero_variance(query_std, features, "query")
        ref_scaled = _scale(ref_data, ref_mean, ref_std, max_value)
        query_scaled = _scale(query_data, query_mean, query_std, max_value)
        ref_emb, query_emb, _ = _run_cca(ref_scaled, query_scaled, n_dims, random_state)
        key = "CC_"

    # [cells, dims]
    combined_emb = _stack(ref_emb, query_emb)
    # [features, dims]
    projected_loadings = _stack(ref_scaled, query_scaled).T @ combined_emb
    match_emb = _l2_normalize(combined_emb) if l2_norm else combined_emb

    # 2. anchors
    anchors = _find_anchors(
        match_emb[:n_ref, :n_dims],
        match_emb[n_ref:, :n_dims],
        ref_data,
        query_data,
        projected_loadings[:, :n_dims],
        k_anchor=k_anchor,
        k_filter=k_filter,
        k_score=k_score,
        max_features=max_features,
        nn_aa=nn_aa,
        nn_method=nn_method,
        n_jobs=n_jobs,
    )

    # 3. combined object
    combined = AnnData(
        X=_stack(ref_data, query_data),
        obs=pd.DataFrame(
            {
                "dataset": pd.Categorical(
                    ["reference"] * n_ref + ["query"] * n_query,
                    categories=["reference", "query"],
                )
            },
            index=[f"{c}_reference" for c in adata_ref.obs_names]
            + [f"{c}_query" for c in adata_query.obs_names],
        ),
        var=pd.DataFrame(index=features),
    )
    combined.obsm[reduction] = combined_emb
    combined.varm[reduction] = projected_loadings
    if l2_norm:
        combined.obsm[f"{reduction}.l2"] = match_emb
        combined.varm[f"{reduction}.l2"] = projected_loadings
    combined.uns["reductions"] = {
        name: {"key": key, "stdev": np.asarray(combined.obsm[name]).std(axis=0, ddof=1)}
        for name in combined.obsm.keys()
    }

    return TransferAnchorSet(
        combined=combined,
        anchors=anchors,
        anchor_features=features,
        reference_cells=adata_ref.obs_names.copy(),
        query_cells=adata_query.obs_names.copy(),
        reduction=reduction,
        neighbors=neighbors,
        params={
            "normalization_method": normalization_method,
            "reduction": reduction,
            "reference_reduction": reference_reduction,
            "project_query": project_query,
            "npcs": npcs,
            "n_dims": n_dims,
            "l2_norm": l2_norm,
            "k_anchor": k_anchor,
            "k_filter": k_filter,
            "k_score": k_score,
            "max_features": max_features,
            "random_state": random_state,
        },
    )


def find_integration_anchors(
    adatas: Sequence[AnnData],
    features: Iterable[str] | None = None,
    n_features: int = 2000,
    reduction: str = "cca",
    reference: Sequence[int] | None = None,
    layer: str | None = None,
    use_genes_column: str = "highly_variable",
    npcs: int = 30,
    n_dims: int = 30,
    l2_norm: bool = True,
    k_anchor: int = 5,
    k_filter: int | None = 200,
    k_score: int = 30,
    max_features: int = 200,
    max_value: float | None = 10.0,
    nn_method: str = "auto",
    n_jobs: int | None = None,
    random_state: int = 42,
) -> IntegrationAnchorSet:
    """
    Find anchors between every pair of datasets (or every pair involving a
    ``reference`` dataset).

    With ``"cca"`` each pair is embedded jointly by canonical correlation
    analysis. With ``"rpca"`` every dataset gets its own PCA, the other
    dataset of a pair is projected into it, and each side searches its
    neighbors in its own PCA space.

    :param adatas: log-normalized datasets sharing features
    :type adatas: Sequence[AnnData]
    :param features: features to use, defaults to :func:`anchormap.pp.select_integration_features`
    :type features: Iterable[str] | None, optional
    :param n_features: number of features to select when ``features`` is None, defaults to 2000
    :type n_features: int, optional
    :param reduction: "cca" or "rpca", defaults to "cca"
    :type reduction: str, optional
    :param reference: positions of reference datasets, defaults to None (all pairs)
    :type reference: Sequence[int] | None, optional
    :param layer: layer to use instead of ``X``, defaults to None
    :type layer: str | None, optional
    :param use_genes_column: boolean ``var`` column marking variable features, defaults to "highly_variable"
    :type use_genes_column: str, optional
    :param npcs: principal components per dataset for "rpca", defaults to 30
    :type npcs: int, optional
    :param n_dims: dimensions used for neighbor search, defaults to 30
    :type n_dims: int, optional
    :param l2_norm: search neighbors in the L2-normalized embedding, defaults to True
    :type l2_norm: bool, optional
    :param k_anchor: neighbors used to pick anchors, defaults to 5
    :type k_anchor: int, optional
    :param k_filter: neighbors used to filter anchors, None to skip filtering, defaults to 200
    :type k_filter: int | None, optional
    :param k_score: neighbors used to score anchors, defaults to 30
    :type k_score: int, optional
    :param max_features: maximum number of features used for filtering, defaults to 200
    :type max_features: int, optional
    :param max_value: scaled values are clipped to ``[-max_value, max_value]``, defaults to 10.0
    :type max_value: float | None, optional
    :param nn_method: ``sklearn.neighbors.NearestNeighbors`` algorithm, defaults to "auto"
    :type nn_method: str, optional
    :param n_jobs: parallel jobs for neighbor search, defaults to None
    :type n_jobs: int | None, optional
    :param random_state: random seed, defaults to 42
    :type random_state: int, optional
    :return: the anchor set
    :rtype: IntegrationAnchorSet
    """
    if len(adatas) < 2:
        raise ValueError("`adatas` should hold at least two datasets")
    if reduction not in INTEGRATION_REDUCTIONS:
        raise ValueError(
            f"`reduction` should be one of {INTEGRATION_REDUCTIONS}, got '{reduction}'"
        )
    _check_nn_method(nn_method)
    if reference is not None:
        reference = tuple(int(i) for i in reference)
        if any(i < 0 or i >= len(adatas) for i in reference):
            raise ValueError(f"`reference` positions should lie within [0, {len(adatas)})")
    for adata in adatas:
        _get_layer(adata, layer, "layer")

    if features is None:
        features = pp.select_integration_features(adatas, n_features, use_genes_column)
    features = _shared_features(features, adatas)

    sizes = [adata.n_obs for adata in adatas]
    k_filter = _check_k(k_anchor, k_score, k_filter, min(sizes))
    if reduction == "cca" and n_dims >= min(sizes):
        raise ValueError(
            f"`n_dims` ({n_dims}) should be smaller than the number of cells "
            f"in every dataset ({min(sizes)})"
        )
    if reduction == "rpca":
        if npcs >= min(min(sizes), len(features)):
            raise ValueError(
                f"`npcs` ({npcs}) should be smaller than both the number of cells "
                f"({min(sizes)}) and of features ({len(features)})"
            )
        if n_dims > npcs:
            raise ValueError(f"`n_dims` ({n_dims}) exceeds `npcs` ({npcs})")

    data, scaled, pcas = [], [], []
    for i, adata in enumerate(adatas):
        X = _feature_matrix(adata, features, layer)
        mean, std = _mean_std(X)
        _check_zero_variance(std, features, f"dataset {i}")
        data.append(X)
        scaled.append(_scale(X, mean, std, max_value))
        if reduction == "rpca":
            logger.info("Computing PCA of dataset %i", i)
            _, loadings, _ = _fit_pca(scaled[i], npcs, random_state)
            pcas.append(loadings)

    pairs = [
        (i, j)
        for i, j in itertools.combinations(range(len(adatas)), 2)
        if reference is None or i in reference or j in reference
    ]

    tables = []
    for i, j in pairs:
        logger.info("Finding anchors between datasets %i and %i", i, j)
        combined_scaled = _stack(scaled[i], scaled[j])
        if reduction == "cca":
            emb_i, emb_j, _ = _run_cca(scaled[i], scaled[j], n_dims, random_state)
            space1 = _stack(emb_i, emb_j)
            space2 = None
        else:
            # [cells_i + cells_j, npcs] in the PCA of i, then of j
            space1 = combined_scaled @ pcas[i]
            space2 = combined_scaled @ pcas[j]
        loadings = combined_scaled.T @ space1

        if l2_norm:
            space1 = _l2_normalize(space1)
            space2 = None if space2 is None else _l2_normalize(space2)

        n_i = sizes[i]
        anchors = _find_anchors(
            space1[:n_i, :n_dims],
            space1[n_i:, :n_dims],
            data[i],
            data[j],
            loadings[:, :n_dims],
            k_anchor=k_anchor,
            k_filter=k_filter,
            k_score=k_score,
            max_features=max_features,
            emb_a2=None if space2 is None else space2[:n_i, :n_dims],
            emb_b2=None if space2 is None else space2[n_i:, :n_dims],
            nn_method=nn_method,
            n_jobs=n_jobs,
        )
        anchors["dataset1"] = i
        anchors["dataset2"] = j
        tables.append(anchors)

    anchors = pd.concat(tables, ignore_index=True)
    anchors[["dataset1", "dataset2"]] = anchors[["dataset1", "dataset2"]].astype(int)
    logger.info("Found %i anchors in total", anchors.shape[0])

    return IntegrationAnchorSet(
        object_list=[adata[:, features].copy() for adata in adatas],
        anchors=anchors,
        anchor_features=features,
        reference=reference,
        params={
            "reduction": reduction,
            "npcs": npcs,
            "n_dims": n_dims,
            "l2_norm": l2_norm,
            "k_anchor": k_anchor,
            "k_filter": k_filter,
            "k_score": k_score,
            "max_features": max_features,
            "random_state": random_state,
        },
    )


# ---------------------------------------------------------------------------
# transfer


def _check_anchorset_query(anchorset: TransferAnchorSet, adata_query: AnnData | None) -> None:
    if adata_query is None:
        return
    if adata_query.n_obs != len(anchorset.query_cells) or not (
        adata_query.obs_names == anchorset.query_cells
    ).all():
        raise ValueError(
            "`adata_query` cells don't match the query cells of the anchor set"
        )


def _reference_order(anchorset: TransferAnchorSet, adata_ref: AnnData) -> np.ndarray:
    order = adata_ref.obs_names.get_indexer(anchorset.reference_cells)
    if (order < 0).any():
        raise ValueError(
            f"{(order < 0).sum()} reference cells of the anchor set "
            f"are missing from `adata_ref`"
        )
    return order


def _resolve_refdata(
    refdata,
    adata_ref: AnnData | None,
    order: np.ndarray | None,
    n_cells: int,
) -> dict[str, tuple[str, object]]:
    """
    Turns ``refdata`` into ``{name: (kind, values)}`` with values aligned to
    the reference cells; kind is "labels", "obs" (numeric column) or "obsm".
    """
    if isinstance(refdata, str):
        refdata = [refdata]
    items = refdata.items() if isinstance(refdata, dict) else [(key, key) for key in refdata]

    resolved = {}
    for name, value in items:
        if isinstance(value, str):
            if adata_ref is None:
                raise ValueError(
                    f"`adata_ref` is needed to look up `refdata` '{value}'"
                )
            if value in adata_ref.obs:
                column = adata_ref.obs[value].iloc[order]
                if is_numeric_dtype(column) and not is_bool_dtype(column):
                    resolved[name] = ("obs", column.to_numpy(dtype=float))
                else:
                    resolved[name] = ("labels", column.to_numpy())
            elif value in adata_ref.obsm:
                resolved[name] = ("obsm", np.asarray(adata_ref.obsm[value])[order])
            else:
                raise KeyError(
                    f"`refdata`: '{value}' not found in adata_ref.obs or adata_ref.obsm"
                )
            continue

        values = value.to_numpy() if isinstance(value, (pd.Series, pd.DataFrame)) else value
        values = np.asarray(values)
        if values.shape[0] != n_cells:
            raise ValueError(
                f"`refdata` '{name}' has {values.shape[0]} rows, "
                f"expected one per reference cell ({n_cells})"
            )
        if values.ndim == 1 and not (
            is_numeric_dtype(values.dtype) and not is_bool_dtype(values.dtype)
        ):
            resolved[name] = ("labels", values)
        else:
            resolved[name] = ("obs" if values.ndim == 1 else "obsm", values)
    return resolved


def _weight_embedding(
    anchorset: TransferAnchorSet,
    weight_reduction,
    adata_query: AnnData | None,
    dims: int | None,
    l2_norm: bool,
) -> np.ndarray:
    n_query = len(anchorset.query_cells)
    if weight_reduction is None:
        weight_reduction = anchorset.reduction
    if isinstance(weight_reduction, str):
        if weight_reduction in anchorset.combined.obsm:
            emb = anchorset.embedding(weight_reduction, "query")
        elif adata_query is not None and weight_reduction in adata_query.obsm:
            emb = np.asarray(adata_query.obsm[weight_reduction])
        else:
            raise KeyError(
                f"`weight_reduction`: '{weight_reduction}' not found in the anchor set "
                f"embeddings or in adata_query.obsm"
            )
    else:
        emb = np.asarray(weight_reduction)
        if emb.ndim != 2 or emb.shape[0] != n_query:
            raise ValueError(
                f"`weight_reduction` should be a [{n_query}, dims] array, got {emb.shape}"
            )

    if dims is not None:
        if dims > emb.shape[1]:
            raise ValueError(
                f"`dims` ({dims}) exceeds the weight reduction dimensionality ({emb.shape[1]})"
            )
        emb = emb[:, :dims]
    return _l2_normalize(emb) if l2_norm else emb


def _anchor_weights(
    anchorset: TransferAnchorSet,
    adata_query: AnnData | None,
    weight_reduction,
    dims: int | None,
    l2_norm: bool,
    k_weight: int,
    sd_weight: float,
    nn_method: str,
    n_jobs: int | None,
) -> sparse.csr_matrix:
    if anchorset.n_anchors == 0:
        raise ValueError(
            "No anchors in the anchor set, there's nothing to transfer. "
            "Consider increasing `k_anchor` or `k_filter`"
        )
    _check_nn_method(nn_method)
    emb = _weight_embedding(anchorset, weight_reduction, adata_query, dims, l2_norm)
    return _find_weights(
        anchorset.anchors, emb, k_weight, sd_weight, nn_method=nn_method, n_jobs=n_jobs
    )


def _apply_transfer(
    W: sparse.spmatrix,
    resolved: dict[str, tuple[str, object]],
    rows: np.ndarray,
    index: pd.Index,
) -> dict[str, tuple[str, object]]:
    """Every field is weighted independently with the same ``W``; ``rows`` selects its columns."""
    results = {}
    for name, (kind, values) in resolved.items():
        if kind == "labels":
            results[name] = (kind, _transfer_labels(W, values[rows], name, index))
        else:
            results[name] = (kind, _transfer_continuous(W, values[rows], name))
    return results


def _write_results(adata: AnnData, results: dict[str, tuple[str, object]]) -> None:
    for name, (kind, result) in results.items():
        if kind == "labels":
            adata.obs[f"predicted_{name}"] = pd.Categorical(
                result[f"predicted_{name}"].to_numpy()
            )
            adata.obs[f"predicted_{name}_score"] = result[f"predicted_{name}_score"].to_numpy()
            per_class = result.iloc[:, 2:].copy()
            per_class.columns = [c[len(f"{name}_score_"):] for c in per_class.columns]
            per_class.index = adata.obs_names
            adata.obsm[f"predicted_{name}_scores"] = per_class
        elif kind == "obs":
            adata.obs[f"predicted_{name}"] = result
        else:
            adata.obsm[f"predicted_{name}"] = result


def transfer_data(
    anchorset: TransferAnchorSet,
    refdata,
    adata_ref: AnnData | None = None,
    adata_query: AnnData | None = None,
    weight_reduction=None,
    dims: int | None = None,
    l2_norm: bool = False,
    k_weight: int = 50,
    sd_weight: float = 1.0,
    nn_method: str = "auto",
    n_jobs: int | None = None,
    inplace: bool = True,
):
    """
    Transfer labels or continuous data from the reference onto the query cells
    using anchor weights.

    Each query cell is weighted against its ``k_weight`` nearest anchors in the
    ``weight_reduction`` space, the weights are scaled by the anchor scores and
    normalized per cell. Labels are transferred by weighted vote: the winning
    label and its share of the total vote are reported, a cell without any
    anchor weight is labeled "unassigned" with score 0. Continuous values
    (numeric ``obs`` columns, ``obsm`` embeddings such as a reference UMAP,
    arrays) are transferred as weighted averages.

    If ``adata_query`` is given, labels are written to
    ``adata_query.obs["predicted_<name>"]`` and ``["predicted_<name>_score"]``,
    per-label scores to ``adata_query.obsm["predicted_<name>_scores"]``, numeric
    columns to ``obs["predicted_<name>"]`` and embeddings to ``obsm["predicted_<name>"]``.

    :param anchorset: anchors from :func:`find_transfer_anchors`
    :type anchorset: TransferAnchorSet
    :param refdata: ``adata_ref.obs``/``obsm`` key(s), or a ``{name: key or array}`` dict with one row per reference cell
    :type refdata: str | list[str] | dict
    :param adata_ref: reference, needed to look up string ``refdata``, defaults to None
    :type adata_ref: AnnData | None, optional
    :param adata_query: query to write results to, defaults to None
    :type adata_query: AnnData | None, optional
    :param weight_reduction: anchor set embedding name, ``adata_query.obsm`` key or [cells, dims] array used for weighting, defaults to the anchor set reduction
    :type weight_reduction: str | np.ndarray, optional
    :param dims: number of dimensions of ``weight_reduction`` to use, defaults to None (all)
    :type dims: int | None, optional
    :param l2_norm: L2-normalize the weight reduction, defaults to False
    :type l2_norm: bool, optional
    :param k_weight: number of anchors considered per query cell, defaults to 50
    :type k_weight: int, optional
    :param sd_weight: bandwidth of the weight kernel, defaults to 1.0
    :type sd_weight: float, optional
    :param nn_method: ``sklearn.neighbors.NearestNeighbors`` algorithm, defaults to "auto"
    :type nn_method: str, optional
    :param n_jobs: parallel jobs for neighbor search, defaults to None
    :type n_jobs: int | None, optional
    :param inplace: write to ``adata_query`` or to a copy of it, defaults to True
    :type inplace: bool, optional
    :return: without ``adata_query``, a dict of per-field results (``DataFrame`` for labels, arrays otherwise);
        with ``adata_query`` and ``inplace=False``, the updated copy
    """
    _check_anchorset_query(anchorset, adata_query)
    order = _reference_order(anchorset, adata_ref) if adata_ref is not None else None
    resolved = _resolve_refdata(refdata, adata_ref, order, len(anchorset.reference_cells))

    W = _anchor_weights(
        anchorset, adata_query, weight_reduction, dims, l2_norm, k_weight, sd_weight, nn_method, n_jobs
    )
    logger.info("Transferring %i field(s)", len(resolved))
    results = _apply_transfer(
        W, resolved, anchorset.anchors["cell1"].to_numpy(), anchorset.query_cells
    )

    if adata_query is None:
        return {name: result for name, (_, result) in results.items()}

    adata = adata_query if inplace else adata_query.copy()
    _write_results(adata, results)
    return None if inplace else adata


def integrate_embeddings(
    anchorset: TransferAnchorSet,
    adata_query: AnnData | None = None,
    reduction: str | None = None,
    weight_reduction=None,
    dims: int | None = None,
    l2_norm: bool = False,
    k_weight: int = 50,
    sd_weight: float = 1.0,
    key_added: str = "X_ref_pca",
    nn_method: str = "auto",
    n_jobs: int | None = None,
    inplace: bool = True,
):
    """
    Correct the query embedding towards the reference: every query cell moves by
    the anchor-weighted average of (reference anchor - query anchor) differences
    in the ``reduction`` space.

    :param anchorset: anchors from :func:`find_transfer_anchors`
    :type anchorset: TransferAnchorSet
    :param adata_query: query to write ``obsm[key_added]`` to, defaults to None
    :type adata_query: AnnData | None, optional
    :param reduction: anchor set embedding to integrate, defaults to the matching reduction (not L2-normalized)
    :type reduction: str | None, optional
    :param weight_reduction: see :func:`transfer_data`, defaults to the anchor set reduction
    :param dims: dimensions of ``weight_reduction`` to use, defaults to None
    :type dims: int | None, optional
    :param l2_norm: L2-normalize the weight reduction, defaults to False
    :type l2_norm: bool, optional
    :param k_weight: number of anchors considered per query cell, defaults to 50
    :type k_weight: int, optional
    :param sd_weight: bandwidth of the weight kernel, defaults to 1.0
    :type sd_weight: float, optional
    :param key_added: ``adata_query.obsm`` key for the result, defaults to "X_ref_pca"
    :type key_added: str, optional
    :param nn_method: ``sklearn.neighbors.NearestNeighbors`` algorithm, defaults to "auto"
    :type nn_method: str, optional
    :param n_jobs: parallel jobs for neighbor search, defaults to None
    :type n_jobs: int | None, optional
    :param inplace: write to ``adata_query`` or to a copy of it, defaults to True
    :type inplace: bool, optional
    :return: the integrated [query cells, dims] array without ``adata_query``,
        the updated copy with ``inplace=False``
    """
    _check_anchorset_query(anchorset, adata_query)
    W = _anchor_weights(
        anchorset, adata_query, weight_reduction, dims, l2_norm, k_weight, sd_weight, nn_method, n_jobs
    )
    integrated = _integrate_query(W, anchorset, reduction or anchorset.reduction)

    if adata_query is None:
        return integrated
    adata = adata_query if inplace else adata_query.copy()
    adata.obsm[key_added] = integrated
    return None if inplace else adata


def _integrate_query(
    W: sparse.spmatrix, anchorset: TransferAnchorSet, reduction: str
) -> np.ndarray:
    ref_emb = anchorset.embedding(reduction, "reference")
    query_emb = anchorset.embedding(reduction, "query")
    anchors = anchorset.anchors
    # [N_anchors, dims]
    corrections = (
        ref_emb[anchors["cell1"].to_numpy()] - query_emb[anchors["cell2"].to_numpy()]
    )
    return query_emb + np.asarray(W @ corrections)


def map_query(
    anchorset: TransferAnchorSet,
    adata_query: AnnData,
    adata_ref: AnnData,
    refdata=None,
    reference_reduction: str | None = None,
    reduction_model: str | None = "X_umap",
    weight_reduction=None,
    dims: int | None = None,
    k_weight: int = 50,
    sd_weight: float = 1.0,
    nn_method: str = "auto",
    n_jobs: int | None = None,
    inplace: bool = True,
):
    """
    Map query cells onto a reference: transfer ``refdata`` labels, integrate the
    query into the reference embedding (``obsm["X_ref_pca"]``) and carry the
    reference layout ``adata_ref.obsm[reduction_model]`` over to the query
    (``obsm["X_ref_<name>"]``, e.g. ``X_ref_umap``) without recomputing it.
    All steps share one set of anchor weights.

    :param anchorset: anchors from :func:`find_transfer_anchors`
    :type anchorset: TransferAnchorSet
    :param adata_query: query
    :type adata_query: AnnData
    :param adata_ref: reference
    :type adata_ref: AnnData
    :param refdata: label/continuous fields to transfer, see :func:`transfer_data`, defaults to None
    :param reference_reduction: anchor set embedding to integrate, defaults to the matching reduction
    :type reference_reduction: str | None, optional
    :param reduction_model: ``adata_ref.obsm`` layout to carry over, None to skip, defaults to "X_umap"
    :type reduction_model: str | None, optional
    :param weight_reduction: see :func:`transfer_data`, defaults to the anchor set reduction
    :param dims: dimensions of ``weight_reduction`` to use, defaults to None
    :type dims: int | None, optional
    :param k_weight: number of anchors considered per query cell, defaults to 50
    :type k_weight: int, optional
    :param sd_weight: bandwidth of the weight kernel, defaults to 1.0
    :type sd_weight: float, optional
    :param nn_method: ``sklearn.neighbors.NearestNeighbors`` algorithm, defaults to "auto"
    :type nn_method: str, optional
    :param n_jobs: parallel jobs for neighbor search, defaults to None
    :type n_jobs: int | None, optional
    :param inplace: write to ``adata_query`` or to a copy of it, defaults to True
    :type inplace: bool, optional
    :return: the updated copy of ``adata_query`` if ``inplace`` is False
    """
    stage = "checking the inputs"
    try:
        _check_anchorset_query(anchorset, adata_query)
        order = _reference_order(anchorset, adata_ref)

        stage = "finding anchor weights"
        W = _anchor_weights(
            anchorset, adata_query, weight_reduction, dims, False, k_weight, sd_weight, nn_method, n_jobs
        )
        adata = adata_query if inplace else adata_query.copy()
        cell1 = anchorset.anchors["cell1"].to_numpy()

        if refdata is not None:
            stage = "transferring reference data"
            resolved = _resolve_refdata(
                refdata, adata_ref, order, len(anchorset.reference_cells)
            )
            _write_results(adata, _apply_transfer(W, resolved, cell1, anchorset.query_cells))

        stage = "integrating embeddings"
        adata.obsm["X_ref_pca"] = _integrate_query(
            W, anchorset, reference_reduction or anchorset.reduction
        )

        if reduction_model is not None:
            stage = "projecting the reference layout"
            if reduction_model not in adata_ref.obsm:
                raise KeyError(
                    f"`reduction_model`: '{reduction_model}' not found in adata_ref.obsm"
                )
            layout = np.asarray(adata_ref.obsm[reduction_model])[order]
            name = reduction_model[2:] if reduction_model.startswith("X_") else reduction_model
            adata.obsm[f"X_ref_{name}"] = _transfer_continuous(W, layout[cell1], name)
    except (ValueError, KeyError) as exc:
        message = exc.args[0] if exc.args else repr(exc)
        raise ValueError(f"map_query failed while {stage}: {message}") from exc

    logger.info("Mapped %i query cells", adata.n_obs)
    return None if inplace else adata


# ---------------------------------------------------------------------------
# integration


def _merge_order(
    anchorset: IntegrationAnchorSet, sizes: list[int]
) -> list[int]:
    """
    Greedy order: start with the largest (reference) dataset, then keep adding the
    dataset sharing most anchors (relative to the smaller side) with the merged ones.
    """
    n = len(sizes)
    counts = np.zeros((n, n))
    for (i, j), pair in anchorset.anchors.groupby(["dataset1", "dataset2"]):
        counts[i, j] = counts[j, i] = pair.shape[0]

    references = list(anchorset.reference) if anchorset.reference else list(range(n))
    start = max(references, key=lambda i: (sizes[i], -i))
    merged = [start]
    remaining = [i for i in range(n) if i != start]
    while remaining:
        candidates = [i for i in remaining if i in references] or remaining
        merged_size = sum(sizes[m] for m in merged)
        similarity = {
            d: counts[d, merged].sum() / min(sizes[d], merged_size) for d in candidates
        }
        best = max(candidates, key=lambda d: (similarity[d], -d))
        if similarity[best] == 0:
            raise ValueError(
                f"No anchors between dataset {best} and the already merged datasets {merged}"
            )
        merged.append(best)
        remaining.remove(best)
    return merged


def _integrate_datasets(
    anchorset: IntegrationAnchorSet,
    embeddings: list[np.ndarray],
    n_dims: int,
    k_weight: int,
    sd_weight: float,
    nn_method: str,
    n_jobs: int | None,
) -> tuple[list[np.ndarray], list[int]]:
    sizes = [emb.shape[0] for emb in embeddings]
    order = _merge_order(anchorset, sizes)

    integrated = {order[0]: np.asarray(embeddings[order[0]], dtype=np.float64)}
    merged = [order[0]]
    for d in order[1:]:
        logger.info("Integrating dataset %i into %s", d, merged)
        offsets = np.cumsum([0] + [sizes[m] for m in merged])
        merged_emb = _stack(*[integrated[m] for m in merged])

        tables = []
        for m, offset in zip(merged, offsets):
            pair = anchorset.pair(m, d)
            pair["cell1"] += offset
            tables.append(pair)
        anchors = pd.concat(tables, ignore_index=True)

        emb = np.asarray(embeddings[d], dtype=np.float64)
        W = _find_weights(
            anchors, emb[:, :n_dims], k_weight, sd_weight, nn_method=nn_method, n_jobs=n_jobs
        )
        # [N_anchors, dims]
        corrections = merged_emb[anchors["cell1"].to_numpy()] - emb[anchors["cell2"].to_numpy()]
        integrated[d] = emb + np.asarray(W @ corrections)
        merged.append(d)

    return [integrated[i] for i in range(len(embeddings))], order


def integrate_layers(
    adata: AnnData,
    batch_key: str,
    method: str = "cca",
    orig_reduction: str = "X_pca",
    new_reduction: str | None = None,
    features: Iterable[str] | None = None,
    use_genes_column: str = "highly_variable",
    layer: str | None = None,
    reference: Sequence[str] | None = None,
    npcs: int = 30,
    n_dims: int = 30,
    l2_norm: bool = True,
    k_anchor: int = 5,
    k_filter: int | None = 200,
    k_score: int = 30,
    k_weight: int = 100,
    sd_weight: float = 1.0,
    max_features: int = 200,
    nn_method: str = "auto",
    n_jobs: int | None = None,
    random_state: int = 42,
    **harmony_kwargs,
) -> None:
    """
    Integrate the batches of one dataset in a low-dimensional space.

    For "cca" and "rpca", batches are split apart, pairwise anchors are found
    with :func:`find_integration_anchors` and ``adata.obsm[orig_reduction]`` of
    every batch is corrected towards the already integrated ones, merging the
    most anchored batches first. "harmony" runs :func:`anchormap.pp.harmony_integrate`.

    Saves the result to ``adata.obsm[new_reduction]`` (``"X_integrated_<method>"``
    by default) and the run details to ``adata.uns[new_reduction]``.

    :param adata: log-normalized dataset with a joint embedding
    :type adata: AnnData
    :param batch_key: ``adata.obs`` column with batches
    :type batch_key: str
    :param method: "cca", "rpca" or "harmony", defaults to "cca"
    :type method: str, optional
    :param orig_reduction: embedding to integrate, defaults to "X_pca"
    :type orig_reduction: str, optional
    :param new_reduction: where to save the integrated embedding, defaults to None
    :type new_reduction: str | None, optional
    :param features: features for anchor finding, defaults to ``adata.var[use_genes_column]``
    :type features: Iterable[str] | None, optional
    :param use_genes_column: boolean ``var`` column marking variable features, defaults to "highly_variable"
    :type use_genes_column: str, optional
    :param layer: layer to use instead of ``X``, defaults to None
    :type layer: str | None, optional
    :param reference: batches used as references, defaults to None
    :type reference: Sequence[str] | None, optional
    :param npcs: principal components per batch for "rpca", defaults to 30
    :type npcs: int, optional
    :param n_dims: dimensions used for anchors and weights, defaults to 30
    :type n_dims: int, optional
    :param k_weight: number of anchors considered per cell, defaults to 100
    :type k_weight: int, optional
    :param random_state: random seed, defaults to 42
    :type random_state: int, optional
    :param harmony_kwargs: forwarded to harmonypy when ``method="harmony"``
    """
    if batch_key not in adata.obs:
        raise KeyError(f"`batch_key`: '{batch_key}' not found in adata.obs")
    if orig_reduction not in adata.obsm:
        raise KeyError(f"`orig_reduction`: '{orig_reduction}' not found in adata.obsm")
    if method not in INTEGRATION_REDUCTIONS + ("harmony",):
        raise ValueError(
            f"`method` should be one of {INTEGRATION_REDUCTIONS + ('harmony',)}, got '{method}'"
        )
    new_reduction = new_reduction or f"X_integrated_{method}"

    if method == "harmony":
        pp.harmony_integrate(
            adata,
            key=batch_key,
            ref_basis_source=orig_reduction,
            ref_basis_adjusted=new_reduction,
            random_seed=random_state,
            **harmony_kwargs,
        )
        adata.uns[new_reduction] = {"method": method, "batch_key": batch_key}
        return

    emb = np.asarray(adata.obsm[orig_reduction])
    if n_dims > emb.shape[1]:
        raise ValueError(
            f"`n_dims` ({n_dims}) exceeds the dimensionality of '{orig_reduction}' ({emb.shape[1]})"
        )

    batches = pd.Categorical(adata.obs[batch_key].astype(str))
    names = list(batches.categories)
    positions = [np.flatnonzero(batches == name) for name in names]
    if len(positions) < 2:
        raise ValueError(f"`batch_key` '{batch_key}' holds a single batch, nothing to integrate")

    if features is None:
        features = _variable_features(adata, use_genes_column, "dataset")
    if reference is not None:
        missing = [r for r in reference if r not in names]
        if missing:
            raise ValueError(f"`reference` batches {missing} not found in adata.obs['{batch_key}']")
        reference = [names.index(r) for r in reference]

    anchorset = find_integration_anchors(
        [adata[pos] for pos in positions],
        features=features,
        reduction=method,
        reference=reference,
        layer=layer,
        npcs=npcs,
        n_dims=n_dims,
        l2_norm=l2_norm,
        k_anchor=k_anchor,
        k_filter=k_filter,
        k_score=k_score,
        max_features=max_features,
        nn_method=nn_method,
        n_jobs=n_jobs,
        random_state=random_state,
    )

    integrated, order = _integrate_datasets(
        anchorset,
        [emb[pos] for pos in positions],
        n_dims=n_dims,
        k_weight=k_weight,
        sd_weight=sd_weight,
        nn_method=nn_method,
        n_jobs=n_jobs,
    )

    result = np.empty((adata.n_obs, emb.shape[1]))
    for pos, batch_emb in zip(positions, integrated):
        result[pos] = batch_emb

    adata.obsm[new_reduction] = result
    adata.uns[new_reduction] = {
        "method": method,
        "batch_key": batch_key,
        "merge_order": [names[i] for i in order],
        "n_anchors": anchorset.n_anchors,
    }


# ---------------------------------------------------------------------------
# sketching


def _sketch_features(adata: AnnData, features, use_genes_column: str | None) -> np.ndarray:
    if features is None:
        features = _variable_features(adata, use_genes_column, "dataset")
    idx = adata.var_names.get_indexer(pd.Index(features))
    if (idx < 0).any():
        raise ValueError(f"`features`: {(idx < 0).sum()} features not found in adata.var_names")
    if len(idx) == 0:
        raise ValueError("`features` is empty")
    return idx


def leverage_score(
    adata: AnnData,
    features: Iterable[str] | None = None,
    use_genes_column: str | None = "highly_variable",
    layer: str | None = None,
    n_sketch: int = 5000,
    n_dims: int | None = None,
    eps: float = 0.5,
    chunk_size: int = 10000,
    random_state: int = 123,
    key_added: str = "leverage_score",
    inplace: bool = True,
) -> np.ndarray | None:
    """
    Statistical leverage score of every cell over the selected features,
    i.e. how much the cell contributes to the dominant structure of the data.
    Rare cell states get high scores.

    Exact for small datasets (fewer than ``1.5 * n_sketch`` cells), otherwise
    approximated with a CountSketch of ``n_sketch`` rows and a random
    projection to ``n_dims`` dimensions. The expression matrix is streamed in
    chunks of ``chunk_size`` cells, so backed (on-disk) objects work and are
    only read.

    :param adata: log-normalized dataset, in memory or backed
    :type adata: AnnData
    :param features: features to use, defaults to ``adata.var[use_genes_column]``
    :type features: Iterable[str] | None, optional
    :param use_genes_column: boolean ``var`` column marking variable features, all features if None, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param layer: layer to use instead of ``X``, defaults to None
    :type layer: str | None, optional
    :param n_sketch: number of rows of the sketch, defaults to 5000
    :type n_sketch: int, optional
    :param n_dims: random projection dimensionality, defaults to ``ceil(log(n_cells) / eps ** 2)``
    :type n_dims: int | None, optional
    :param eps: random projection tolerance, defaults to 0.5
    :type eps: float, optional
    :param chunk_size: cells read at once, defaults to 10000
    :type chunk_size: int, optional
    :param random_state: random seed, defaults to 123
    :type random_state: int, optional
    :param key_added: ``adata.obs`` column for the scores, defaults to "leverage_score"
    :type key_added: str, optional
    :param inplace: write to ``adata.obs`` or return the scores, defaults to True
    :type inplace: bool, optional
    :return: the scores if ``inplace`` is False
    """
    _get_layer(adata, layer, "layer")
    idx = _sketch_features(adata, features, use_genes_column)
    n_cells = adata.n_obs

    def chunks():
        for X, start, end in _iter_chunks(adata, layer, chunk_size):
            yield X[:, idx], start, end

    if n_cells < 1.5 * n_sketch:
        logger.info("Computing exact leverage scores of %i cells", n_cells)
        X = np.empty((n_cells, len(idx)))
        for chunk, start, end in chunks():
            X[start:end] = _to_dense(chunk)
        scores = _leverage_exact(X)
    else:
        logger.info(
            "Approximating leverage scores of %i cells with a %i-row sketch", n_cells, n_sketch
        )
        scores = _leverage_sketched(
            chunks,
            n_cells=n_cells,
            n_features=len(idx),
            n_sketch=n_sketch,
            n_dims=n_dims,
            eps=eps,
            rng=np.random.default_rng(random_state),
        )

    if not inplace:
        return scores
    adata.obs[key_added] = scores
    return None


def sketch_data(
    adata: AnnData,
    n_cells: int = 5000,
    method: str = "LeverageScore",
    batch_key: str | None = None,
    features: Iterable[str] | None = None,
    use_genes_column: str | None = "highly_variable",
    layer: str | None = None,
    leverage_key: str = "leverage_score",
    n_sketch: int = 5000,
    chunk_size: int = 10000,
    random_state: int = 123,
) -> AnnData:
    """
    Draw a representative in-memory subsample of a (possibly backed) dataset.

    With "LeverageScore", cells are drawn without replacement with probability
    proportional to their leverage score (read from ``adata.obs[leverage_key]``
    when present, computed with :func:`leverage_score` otherwise), which keeps
    rare populations in the sketch. "Uniform" draws uniformly. With
    ``batch_key``, ``n_cells`` are drawn from every batch (all cells of smaller
    batches are kept).

    ``adata`` is not modified. The sketch keeps the original cell order and
    records the selected positions in ``uns["sketch"]["indices"]``, so results
    can be brought back to the full dataset with :func:`project_data`.

    :param adata: dataset, in memory or backed
    :type adata: AnnData
    :param n_cells: cells to draw (per batch with ``batch_key``), defaults to 5000
    :type n_cells: int, optional
    :param method: "LeverageScore" or "Uniform", defaults to "LeverageScore"
    :type method: str, optional
    :param batch_key: ``adata.obs`` column to sample within, defaults to None
    :type batch_key: str | None, optional
    :param features: features for leverage scores, defaults to ``adata.var[use_genes_column]``
    :type features: Iterable[str] | None, optional
    :param use_genes_column: boolean ``var`` column marking variable features, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param layer: layer to use instead of ``X``, defaults to None
    :type layer: str | None, optional
    :param leverage_key: ``obs`` column holding (or receiving in the sketch) leverage scores, defaults to "leverage_score"
    :type leverage_key: str, optional
    :param n_sketch: see :func:`leverage_score`, defaults to 5000
    :type n_sketch: int, optional
    :param chunk_size: cells read at once, defaults to 10000
    :type chunk_size: int, optional
    :param random_state: random seed, defaults to 123
    :type random_state: int, optional
    :return: the sketch
    :rtype: AnnData
    """
    if method not in SKETCH_METHODS:
        raise ValueError(f"`method` should be one of {SKETCH_METHODS}, got '{method}'")
    if n_cells < 1:
        raise ValueError("`n_cells` should be positive")
    if n_cells > adata.n_obs:
        raise ValueError(
            f"`n_cells` ({n_cells}) exceeds the number of cells in the dataset ({adata.n_obs})"
        )
    if batch_key is not None and batch_key not in adata.obs:
        raise KeyError(f"`batch_key`: '{batch_key}' not found in adata.obs")
    scores = None
    if method == "LeverageScore":
        if leverage_key in adata.obs:
            logger.info("Using precomputed leverage scores from adata.obs['%s']", leverage_key)
            scores = adata.obs[leverage_key].to_numpy(dtype=float)
        else:
            scores = leverage_score(
                adata,
                features=features,
                use_genes_column=use_genes_column,
                layer=layer,
                n_sketch=n_sketch,
                chunk_size=chunk_size,
                random_state=random_state,
                inplace=False,
            )

    if batch_key is None:
        groups = [np.arange(adata.n_obs)]
    else:
        batches = adata.obs[batch_key].astype(str).to_numpy()
        groups = [np.flatnonzero(batches == b) for b in np.unique(batches)]

    rng = np.random.default_rng(random_state)
    selected = []
    for group in groups:
        size = min(n_cells, len(group))
        if size == len(group):
            logger.debug("Keeping all %i cells of a batch", size)
            selected.append(group)
        elif scores is None:
            selected.append(np.sort(rng.choice(group, size=size, replace=False)))
        else:
            selected.append(_weighted_sample(group, scores[group], size, rng))
    indices = np.sort(np.concatenate(selected))
    logger.info("Sketched %i of %i cells", len(indices), adata.n_obs)

    sketch = adata[indices].to_memory() if adata.isbacked else adata[indices].copy()
    if scores is not None:
        sketch.obs[leverage_key] = scores[indices]
    sketch.uns["sketch"] = {"indices": indices, "method": method, "n_cells": n_cells}
    if batch_key is not None:
        sketch.uns["sketch"]["batch_key"] = batch_key
    return sketch


def project_data(
    adata_full: AnnData,
    adata_sketch: AnnData,
    sketch_reduction: str = "X_pca",
    sketch_loadings: str = "PCs",
    full_reduction: str = "X_pca_full",
    refdata=None,
    use_genes_column: str | None = "highly_variable",
    layer: str | None = None,
    max_value: float | None = 10.0,
    k_neighbors: int = 50,
    sd_weight: float = 1.0,
    chunk_size: int = 10000,
    nn_method: str = "auto",
    n_jobs: int | None = None,
) -> None:
    """
    Bring results computed on a sketch back to the full dataset.

    The full dataset is streamed in chunks, scaled with the sketch feature
    means/stds (``adata_sketch.var["mean"]``, ``["std"]``, see
    :func:`anchormap.pp.prepare_reference`) and projected through
    ``adata_sketch.varm[sketch_loadings]`` into ``adata_full.obsm[full_reduction]``.
    Then every ``refdata`` field of the sketch (labels, numeric ``obs`` columns,
    ``obsm`` embeddings) is transferred to all cells by their ``k_neighbors``
    nearest sketch cells, written as in :func:`transfer_data`.
    The full expression matrix is only read.

    :param adata_full: full dataset, in memory or backed
    :type adata_full: AnnData
    :param adata_sketch: sketch with PCA computed by :func:`anchormap.pp.prepare_reference`
    :type adata_sketch: AnnData
    :param sketch_reduction: sketch embedding, defaults to "X_pca"
    :type sketch_reduction: str, optional
    :param sketch_loadings: sketch loadings, defaults to "PCs"
    :type sketch_loadings: str, optional
    :param full_reduction: ``adata_full.obsm`` key for the projection, defaults to "X_pca_full"
    :type full_reduction: str, optional
    :param refdata: sketch ``obs``/``obsm`` fields to transfer, defaults to None
    :param use_genes_column: boolean ``adata_sketch.var`` column of the PCA features, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param layer: layer of ``adata_full`` to use instead of ``X``, defaults to None
    :type layer: str | None, optional
    :param max_value: scaled values are clipped to ``[-max_value, max_value]``, defaults to 10.0
    :type max_value: float | None, optional
    :param k_neighbors: sketch neighbors per cell, defaults to 50
    :type k_neighbors: int, optional
    :param sd_weight: bandwidth of the weight kernel, defaults to 1.0
    :type sd_weight: float, optional
    :param chunk_size: cells read at once, defaults to 10000
    :type chunk_size: int, optional
    :param nn_method: ``sklearn.neighbors.NearestNeighbors`` algorithm, defaults to "auto"
    :type nn_method: str, optional
    :param n_jobs: parallel jobs for neighbor search, defaults to None
    :type n_jobs: int | None, optional
    """
    for column in ("mean", "std"):
        if column not in adata_sketch.var:
            raise KeyError(
                f"Gene expression {column}s are expected to be saved in adata_sketch.var"
            )
    if sketch_reduction not in adata_sketch.obsm:
        raise KeyError(f"`sketch_reduction`: '{sketch_reduction}' not found in adata_sketch.obsm")
    if sketch_loadings not in adata_sketch.varm:
        raise KeyError(f"`sketch_loadings`: '{sketch_loadings}' not found in adata_sketch.varm")
    _check_nn_method(nn_method)
    _get_layer(adata_full, layer, "layer")

    features = _variable_features(adata_sketch, use_genes_column, "sketch")
    features = _shared_features(features, [adata_full])
    sketch_idx = adata_sketch.var_names.get_indexer(features)
    full_idx = adata_full.var_names.get_indexer(features)

    var = adata_sketch.var.iloc[sketch_idx]
    mean = var["mean"].to_numpy(dtype=float)
    std = var["std"].to_numpy(dtype=float)
    if np.isnan(mean).any() or np.isnan(std).any():
        raise ValueError(
            f"{(np.isnan(mean) | np.isnan(std)).sum()} of the selected features have no "
            f"saved mean/std in adata_sketch.var, they weren't used to compute "
            f"`sketch_reduction`; check `use_genes_column`"
        )
    _check_zero_variance(std, features, "sketch")
    loadings = np.asarray(adata_sketch.varm[sketch_loadings])[sketch_idx]

    logger.info("Projecting %i cells onto the sketch '%s'", adata_full.n_obs, sketch_reduction)
    full_emb = np.empty((adata_full.n_obs, loadings.shape[1]))
    for X, start, end in _iter_chunks(adata_full, layer, chunk_size):
        logger.debug("    cells %i-%i", start, end)
        X = np.asarray(_to_dense(X[:, full_idx]), dtype=np.float64)
        full_emb[start:end] = _scale(X, mean, std, max_value) @ loadings
    adata_full.obsm[full_reduction] = full_emb

    if refdata is None:
        return

    sketch_emb = np.asarray(adata_sketch.obsm[sketch_reduction])
    resolved = _resolve_refdata(
        refdata, adata_sketch, np.arange(adata_sketch.n_obs), adata_sketch.n_obs
    )
    nn = _nn_helper(sketch_emb, full_emb, k=k_neighbors, nn_method=nn_method, n_jobs=n_jobs)
    W = _kernel_normalize(_distance_weights(nn, adata_sketch.n_obs), sd_weight)
    results = _apply_transfer(W, resolved, np.arange(adata_sketch.n_obs), adata_full.obs_names)
    _write_results(adata_full, results)
