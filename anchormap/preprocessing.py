# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from harmonypy import run_harmony

from ._utils import (
    _check_zero_variance,
    _feature_matrix,
    _fit_pca,
    _l2_normalize,
    _mean_std,
    _scale,
)


logger = logging.getLogger("anchormap")


def prepare_reference(
    adata: AnnData,
    n_comps: int = 30,
    use_genes_column: str | None = "highly_variable",
    layer: str | None = None,
    max_value: float | None = 10.0,
    basis: str = "X_pca",
    loadings: str = "PCs",
    random_state: int = 0,
) -> None:
    """
    Scale the selected features of a log-normalized reference and run PCA on them,
    keeping everything a later query projection needs.
    ``adata.X`` itself is left untouched.

    Saves feature means and stds to ``adata.var["mean"]``, ``adata.var["std"]``
    (NaN for unused features), the embedding to ``adata.obsm[basis]``, the
    loadings to ``adata.varm[loadings]`` (zero rows for unused features) and
    PCA details to ``adata.uns["pca"]``.

    :param adata: log-normalized reference
    :type adata: AnnData
    :param n_comps: number of principal components, defaults to 30
    :type n_comps: int, optional
    :param use_genes_column: boolean ``adata.var`` column selecting features, all features if None, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param layer: ``adata.layers[layer]`` is used instead of ``adata.X`` if given, defaults to None
    :type layer: str | None, optional
    :param max_value: scaled values are clipped to ``[-max_value, max_value]``, defaults to 10.0
    :type max_value: float | None, optional
    :param basis: ``adata.obsm`` key for the embedding, defaults to "X_pca"
    :type basis: str, optional
    :param loadings: ``adata.varm`` key for the loadings, defaults to "PCs"
    :type loadings: str, optional
    :param random_state: random seed of the PCA solver, defaults to 0
    :type random_state: int, optional
    """
    if use_genes_column is None:
        mask = np.ones(adata.n_vars, dtype=bool)
    else:
        if use_genes_column not in adata.var:
            raise KeyError(
                f"`use_genes_column`: column '{use_genes_column}' not found in adata.var"
            )
        mask = adata.var[use_genes_column].to_numpy(dtype=bool)
    features = adata.var_names[mask]

    if n_comps >= min(adata.n_obs, len(features)):
        raise ValueError(
            f"`n_comps` ({n_comps}) should be smaller than both the number of cells "
            f"({adata.n_obs}) and of features ({len(features)})"
        )

    X = _feature_matrix(adata, features, layer)
    mean, std = _mean_std(X)
    _check_zero_variance(std, features, "reference")

    X_pca, PCs, stdev = _fit_pca(_scale(X, mean, std, max_value), n_comps, random_state)

    adata.var["mean"] = np.nan
    adata.var["std"] = np.nan
    adata.var.loc[mask, "mean"] = mean
    adata.var.loc[mask, "std"] = std

    full_loadings = np.zeros((adata.n_vars, n_comps))
    full_loadings[mask] = PCs

    adata.obsm[basis] = X_pca
    adata.varm[loadings] = full_loadings
    adata.uns["pca"] = {
        "variance": stdev**2,
        "stdev": stdev,
        "params": {
            "use_genes_column": use_genes_column or "",
            "max_value": max_value if max_value is not None else np.inf,
            "n_comps": n_comps,
        },
    }


def l2_normalize(
    adata: AnnData,
    basis: str = "X_pca",
    key_added: str | None = None,
) -> None:
    """
    L2-normalize every cell's coordinates of ``adata.obsm[basis]``
    and save them to ``adata.obsm[key_added]`` (``basis + ".l2"`` by default).

    :param adata: adata object
    :type adata: AnnData
    :param basis: embedding to normalize, defaults to "X_pca"
    :type basis: str, optional
    :param key_added: where to save the normalized embedding, defaults to None
    :type key_added: str | None, optional
    """
    if basis not in adata.obsm:
        raise KeyError(f"`basis`: '{basis}' not found in adata.obsm")
    adata.obsm[key_added or f"{basis}.l2"] = _l2_normalize(np.asarray(adata.obsm[basis]))


def select_integration_features(
    adatas: Sequence[AnnData],
    n_features: int = 2000,
    use_genes_column: str = "highly_variable",
) -> list[str]:
    """
    Rank features shared by all datasets by the number of datasets they are
    variable in, breaking ties by the median variability rank.

    The rank comes from ``var["highly_variable_rank"]`` (``seurat_v3`` flavor)
    or from descending ``var["dispersions_norm"]``.

    :param adatas: datasets with variable features computed
    :type adatas: Sequence[AnnData]
    :param n_features: how many features to return, defaults to 2000
    :type n_features: int, optional
    :param use_genes_column: boolean ``var`` column marking variable features, defaults to "highly_variable"
    :type use_genes_column: str, optional
    :return: selected feature names, best first
    :rtype: list[str]
    """
    common = adatas[0].var_names
    for adata in adatas[1:]:
        common = common[common.isin(adata.var_names)]

    counts = np.zeros(len(common))
    ranks = np.full((len(adatas), len(common)), np.nan)
    for i, adata in enumerate(adatas):
        if use_genes_column not in adata.var:
            raise KeyError(
                f"`use_genes_column`: column '{use_genes_column}' "
                f"not found in var of dataset {i}"
            )
        var = adata.var.loc[common]
        variable = var[use_genes_column].to_numpy(dtype=bool)
        counts += variable

        if "highly_variable_rank" in var:
            rank = var["highly_variable_rank"].to_numpy(dtype=float)
        elif "dispersions_norm" in var:
            rank = (
                (-var["dispersions_norm"]).rank(method="first", na_option="bottom").to_numpy()
            )
        else:
            rank = np.zeros(len(common))
        rank[~variable] = np.nan
        ranks[i] = rank

    with np.errstate(all="ignore"):
        median_rank = np.nanmedian(np.where(np.isnan(ranks).all(axis=0), np.inf, ranks), axis=0)

    order = pd.DataFrame({"count": -counts, "rank": median_rank}).sort_values(
        ["count", "rank"], kind="stable"
    )
    order = order[order["count"] < 0]
    selected = list(common[order.index[:n_features]])
    logger.info("Selected %i integration features", len(selected))
    return selected


def harmony_integrate(
    adata: AnnData,
    key: list[str] | str,
    ref_basis_source: str = "X_pca",
    ref_basis_adjusted: str = "X_pca_harmony",
    verbose: bool = False,
    random_seed: int = 1,
    **harmony_kwargs,
) -> None:
    """
    Run Harmony batch correction on ``adata.obsm[ref_basis_source]`` with harmonypy,
    save corrected output to ``adata.obsm[ref_basis_adjusted]`` and the run
    details to ``adata.uns["harmony"]``.

    :param adata: adata object with batch
    :type adata: AnnData
    :param key: which columns from ``adata.obs`` to use as batch keys (``vars_use`` parameter of Harmony)
    :type key: list[str] | str
    :param ref_basis_source: ``adata.obsm[ref_basis_source]`` will be used as input embedding to Harmony, defaults to "X_pca"
    :type ref_basis_source: str, optional
    :param ref_basis_adjusted: slot where to put corrected coordinates, defaults to "X_pca_harmony"
    :type ref_basis_adjusted: str, optional
    :param verbose: if to print logs of steps of integration, defaults to False
    :type verbose: bool, optional
    :param random_seed: random seed, defaults to 1
    :type random_seed: int, optional
    """
    if ref_basis_source not in adata.obsm:
        raise KeyError(f"`ref_basis_source`: '{ref_basis_source}' not found in adata.obsm")

    logger.info("Harmony integration with harmonypy is performing")
    ho = run_harmony(
        np.asarray(adata.obsm[ref_basis_source]),
        meta_data=adata.obs,
        vars_use=key,
        verbose=verbose,
        random_state=random_seed,
        **harmony_kwargs,
    )

    adata.obsm[ref_basis_adjusted] = np.asarray(ho.Z_corr).T

    converged = ho.check_convergence(1)

    adata.uns["harmony"] = {
        "K": ho.K,
        "sigma": np.asarray(ho.sigma),
        "ref_basis_source": ref_basis_source,
        "ref_basis_adjusted": ref_basis_adjusted,
        "vars_use": key,
        "converged": converged,
    }

    if not converged:
        logger.warning(
            "Harmony didn't converge. "
            "Consider increasing max_iter_harmony parameter value"
        )
