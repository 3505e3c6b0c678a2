# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Iterator, NamedTuple

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy import sparse
from scipy.linalg import solve_triangular
from scipy.sparse import issparse
from sklearn.neighbors import NearestNeighbors
from sklearn.utils.extmath import randomized_svd

logger = logging.getLogger("anchormap")

UNASSIGNED = "unassigned"
NORMALIZATION_METHODS = ("LogNormalize", "SCT")
NN_METHODS = ("auto", "kd_tree", "ball_tree", "brute")


class Neighbors(NamedTuple):
    """
    k-nearest-neighbor search result.

    Row ``i`` of ``indices`` holds positions (in the searched data) of the
    nearest points to query point ``i``, closest first; ``distances`` is aligned.
    """

    indices: np.ndarray
    distances: np.ndarray

    @property
    def n_neighbors(self) -> int:
        return self.indices.shape[1]


# ---------------------------------------------------------------------------
# matrix access


def _to_dense(X) -> np.ndarray:
    if issparse(X):
        return X.toarray()
    return np.asarray(X)


def _get_layer(adata: AnnData, layer: str | None, param: str = "layer"):
    if layer is None:
        return adata.X
    if layer not in adata.layers:
        raise KeyError(f"`{param}`: layer '{layer}' not found in adata.layers")
    return adata.layers[layer]


def _feature_matrix(
    adata: AnnData, features, layer: str | None = None, param: str = "layer"
) -> np.ndarray:
    """Dense [cells, features] float64 copy of the requested features."""
    X = _get_layer(adata, layer, param)
    idx = adata.var_names.get_indexer(features)
    return np.asarray(_to_dense(X[:, idx]), dtype=np.float64)


def _iter_chunks(
    adata: AnnData, layer: str | None = None, chunk_size: int = 10000
) -> Iterator[tuple[object, int, int]]:
    """
    Yields ``(rows, start, end)`` blocks of the expression matrix.
    Works the same for in-memory and backed objects, nothing is written.
    """
    if layer is None:
        yield from adata.chunked_X(chunk_size)
        return
    X = _get_layer(adata, layer)
    for start in range(0, adata.n_obs, chunk_size):
        end = min(start + chunk_size, adata.n_obs)
        yield X[start:end], start, end


def _normalization_of(adata: AnnData) -> str:
    if "pearson_residuals_normalization" in adata.uns:
        return "SCT"
    return "LogNormalize"


def _check_normalization(
    normalization_method: str, adata_ref: AnnData, adata_query: AnnData
) -> None:
    if normalization_method not in NORMALIZATION_METHODS:
        raise ValueError(
            f"`normalization_method` should be one of {NORMALIZATION_METHODS}, "
            f"got '{normalization_method}'"
        )
    ref_method = _normalization_of(adata_ref)
    query_method = _normalization_of(adata_query)
    if ref_method != query_method:
        raise ValueError(
            f"`normalization_method`: reference is {ref_method}-normalized "
            f"while query is {query_method}-normalized, they can't be mixed"
        )
    if ref_method != normalization_method:
        raise ValueError(
            f"`normalization_method` is '{normalization_method}', "
            f"but both datasets are {ref_method}-normalized"
        )


# ---------------------------------------------------------------------------
# scaling and projection


def _mean_std(X: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    mean = X.mean(axis=0)
    if X.shape[0] < 2:
        return mean, np.zeros(X.shape[1])
    return mean, X.std(axis=0, ddof=1)


def _check_zero_variance(std: np.ndarray, features, dataset: str) -> None:
    features = np.asarray(features)
    zero = features[std == 0]
    if len(zero) > 0:
        shown = ", ".join(map(str, zero[:10])) + ("..." if len(zero) > 10 else "")
        raise ValueError(
            f"{len(zero)} of `features` have zero variance in the {dataset} "
            f"and can't be scaled: {shown}"
        )


def _scale(
    X: np.ndarray,
    mean: np.ndarray,
    std: np.ndarray,
    max_value: float | None = 10.0,
) -> np.ndarray:
    std = np.where(std == 0, 1.0, std)
    X = (X - mean[np.newaxis]) / std[np.newaxis]
    if max_value is not None:
        X = np.clip(X, -max_value, max_value)
    return X


def _fit_pca(
    X_scaled: np.ndarray, n_comps: int, random_state: int = 0
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    # [n_comps, features]
    _, components, _, variance = sc.pp.pca(
        X_scaled,
        n_comps=n_comps,
        zero_center=True,
        svd_solver="arpack",
        random_state=random_state,
        return_info=True,
    )
    # loadings are [features, n_comps]
    loadings = np.asarray(components).T
    # not re-centered, so that projected cells land in the same coordinates
    return X_scaled @ loadings, loadings, np.sqrt(variance)


def _l2_normalize(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, ord=2, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def _standardize_cells(X: np.ndarray) -> np.ndarray:
    X = X - X.mean(axis=1, keepdims=True)
    sd = X.std(axis=1, ddof=1, keepdims=True)
    sd[sd == 0] = 1.0
    return X / sd


def _run_cca(
    X1: np.ndarray, X2: np.ndarray, num_cc: int, random_state: int = 0
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Canonical correlation vectors of two scaled [cells, features] matrices
    sharing the same features.
    """
    X1 = _standardize_cells(X1)
    X2 = _standardize_cells(X2)
    # [cells1, cells2]
    mat = X1 @ X2.T
    u, d, vt = randomized_svd(mat, n_components=num_cc, random_state=random_state)
    cca = np.vstack([u, vt.T])
    # fix the sign so that the first cell of every vector is non-negative
    signs = np.sign(cca[0])
    signs[signs == 0] = 1.0
    cca *= signs[np.newaxis]
    return cca[: X1.shape[0]], cca[X1.shape[0] :], d


def _top_dim_features(loadings: np.ndarray, max_features: int = 200) -> np.ndarray:
    """
    Positions of up to ``max_features`` features with the largest absolute
    loadings, taken rank by rank across all dimensions.
    """
    # [features, dims]
    order = np.argsort(-np.abs(loadings), axis=0, kind="stable")
    selected: list[int] = []
    seen = set()
    for rank in range(order.shape[0]):
        for dim in range(order.shape[1]):
            feature = int(order[rank, dim])
            if feature in seen:
                continue
            seen.add(feature)
            selected.append(feature)
            if len(selected) >= max_features:
                return np.array(selected)
    return np.array(selected, dtype=int)


# ---------------------------------------------------------------------------
# neighbors


def _nn_helper(
    data: np.ndarray,
    query: np.ndarray | None = None,
    k: int = 10,
    nn_method: str = "auto",
    n_jobs: int | None = None,
) -> Neighbors:
    if query is None:
        query = data
    k = min(k, data.shape[0])
    nn = NearestNeighbors(n_neighbors=k, algorithm=nn_method, n_jobs=n_jobs)
    nn.fit(data)
    distances, indices = nn.kneighbors(query)
    return Neighbors(indices, distances)


def _neighbors_from_adata(adata: AnnData, key: str = "neighbors") -> Neighbors:
    """
    Converts a scanpy neighbors entry (``adata.uns[key]`` pointing to
    ``adata.obsp``) into a :class:`Neighbors` whose first column is the cell itself.
    """
    if key not in adata.uns:
        raise KeyError(f"`reference_neighbors`: '{key}' not found in adata_ref.uns")
    distances_key = adata.uns[key].get("distances_key", "distances")
    if distances_key not in adata.obsp:
        raise KeyError(
            f"`reference_neighbors`: '{distances_key}' not found in adata_ref.obsp"
        )
    D = sparse.csr_matrix(adata.obsp[distances_key])
    n = D.shape[0]

    rows = []
    for i in range(n):
        start, end = D.indptr[i], D.indptr[i + 1]
        cols, dists = D.indices[start:end], D.data[start:end]
        # some scanpy versions store the cell itself with distance 0
        others = cols != i
        order = np.argsort(dists[others], kind="stable")
        rows.append((cols[others][order], dists[others][order]))
    width = min(len(cols) for cols, _ in rows) if n > 0 else 0

    indices = np.empty((n, width + 1), dtype=int)
    distances = np.zeros((n, width + 1))
    for i, (cols, dists) in enumerate(rows):
        indices[i, 0] = i
        indices[i, 1:] = cols[:width]
        distances[i, 1:] = dists[:width]

    return Neighbors(indices, distances)


def _find_nn(
    emb_a: np.ndarray,
    emb_b: np.ndarray,
    k_anchor: int,
    k_score: int,
    emb_a2: np.ndarray | None = None,
    emb_b2: np.ndarray | None = None,
    nn_aa: Neighbors | None = None,
    nn_method: str = "auto",
    n_jobs: int | None = None,
) -> dict[str, Neighbors]:
    """
    Within- and across-dataset neighborhoods. Searches among a cells happen in
    the (emb_a, emb_b) space, searches among b cells in (emb_a2, emb_b2).
    """
    emb_a2 = emb_a if emb_a2 is None else emb_a2
    emb_b2 = emb_b if emb_b2 is None else emb_b2
    k = max(k_anchor, k_score)

    if nn_aa is None:
        nn_aa = _nn_helper(emb_a, k=k_score + 1, nn_method=nn_method, n_jobs=n_jobs)
    else:
        nn_aa = Neighbors(nn_aa.indices[:, : k_score + 1], nn_aa.distances[:, : k_score + 1])

    return {
        "aa": nn_aa,
        # a cells among b cells
        "ab": _nn_helper(emb_b2, emb_a2, k=k, nn_method=nn_method, n_jobs=n_jobs),
        # b cells among a cells
        "ba": _nn_helper(emb_a, emb_b, k=k, nn_method=nn_method, n_jobs=n_jobs),
        "bb": _nn_helper(emb_b2, k=k_score + 1, nn_method=nn_method, n_jobs=n_jobs),
    }


# ---------------------------------------------------------------------------
# anchors


def _empty_anchors() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "cell1": np.array([], dtype=int),
            "cell2": np.array([], dtype=int),
            "score": np.array([], dtype=float),
        }
    )


def _find_anchor_pairs(
    nn_ab: Neighbors, nn_ba: Neighbors, k_anchor: int
) -> pd.DataFrame:
    """Mutual nearest neighbor pairs, ordered by cell1 then cell2."""
    n_a = nn_ab.indices.shape[0]
    n_b = nn_ba.indices.shape[0]
    if n_a == 0 or n_b == 0:
        return _empty_anchors()

    # [N_a, N_b]: b is among the k_anchor nearest of a
    m1 = sparse.csr_matrix(
        (
            np.ones(n_a * k_anchor),
            (np.repeat(np.arange(n_a), k_anchor), nn_ab.indices[:, :k_anchor].ravel()),
        ),
        shape=(n_a, n_b),
    )
    # [N_a, N_b]: a is among the k_anchor nearest of b
    m2 = sparse.csr_matrix(
        (
            np.ones(n_b * k_anchor),
            (nn_ba.indices[:, :k_anchor].ravel(), np.repeat(np.arange(n_b), k_anchor)),
        ),
        shape=(n_a, n_b),
    )
    mutual = m1.multiply(m2).tocoo()

    cell1 = mutual.row.astype(int)
    cell2 = mutual.col.astype(int)
    order = np.lexsort((cell2, cell1))

    return pd.DataFrame(
        {"cell1": cell1[order], "cell2": cell2[order], "score": np.zeros(len(order))}
    )


def _filter_anchors(
    anchors: pd.DataFrame,
    data_a: np.ndarray,
    data_b: np.ndarray,
    k_filter: int,
    nn_method: str = "auto",
    n_jobs: int | None = None,
) -> pd.DataFrame:
    """
    Keeps an anchor if, in the L2-normalized feature space, its b cell is among
    the k_filter nearest b cells of its a cell, or the other way around.
    """
    cn_a = _l2_normalize(data_a)
    cn_b = _l2_normalize(data_b)

    # for each a cell, its nearest b cells and vice versa
    nn1 = _nn_helper(cn_b, cn_a, k=k_filter, nn_method=nn_method, n_jobs=n_jobs)
    nn2 = _nn_helper(cn_a, cn_b, k=k_filter, nn_method=nn_method, n_jobs=n_jobs)

    cell1 = anchors["cell1"].to_numpy()
    cell2 = anchors["cell2"].to_numpy()
    keep1 = (nn1.indices[cell1] == cell2[:, np.newaxis]).any(axis=1)
    keep2 = (nn2.indices[cell2] == cell1[:, np.newaxis]).any(axis=1)

    return anchors[keep1 | keep2].reset_index(drop=True)


def _score_anchors(
    anchors: pd.DataFrame, nn: dict[str, Neighbors], k_score: int
) -> pd.DataFrame:
    """
    Shared-neighbor overlap of the two anchor endpoints, rescaled to [0, 1]
    between the 1% and 90% quantiles.
    """
    anchors = anchors.copy()
    n_anchors = anchors.shape[0]
    if n_anchors == 0:
        anchors["score"] = np.zeros(0)
        return anchors

    n_a = nn["aa"].indices.shape[0]
    n_b = nn["bb"].indices.shape[0]
    cell1 = anchors["cell1"].to_numpy()
    cell2 = anchors["cell2"].to_numpy()

    # neighbor sets in the stacked [a, b] cell index, [N_anchors, 2 * k_score]
    set_a = np.hstack([nn["aa"].indices[cell1, :k_score], nn["ab"].indices[cell1, :k_score] + n_a])
    set_b = np.hstack([nn["ba"].indices[cell2, :k_score], nn["bb"].indices[cell2, :k_score] + n_a])

    rows = np.repeat(np.arange(n_anchors), set_a.shape[1])
    A = sparse.csr_matrix(
        (np.ones(set_a.size), (rows, set_a.ravel())), shape=(n_anchors, n_a + n_b)
    )
    rows = np.repeat(np.arange(n_anchors), set_b.shape[1])
    B = sparse.csr_matrix(
        (np.ones(set_b.size), (rows, set_b.ravel())), shape=(n_anchors, n_a + n_b)
    )
    shared = np.asarray(A.multiply(B).sum(axis=1)).ravel()

    max_score = np.quantile(shared, 0.9)
    min_score = np.quantile(shared, 0.01)
    if max_score > min_score:
        score = np.clip((shared - min_score) / (max_score - min_score), 0.0, 1.0)
    else:
        score = (shared > 0).astype(float)

    anchors["score"] = score
    return anchors


def _find_anchors(
    emb_a: np.ndarray,
    emb_b: np.ndarray,
    data_a: np.ndarray,
    data_b: np.ndarray,
    loadings: np.ndarray,
    k_anchor: int = 5,
    k_filter: int | None = 200,
    k_score: int = 30,
    max_features: int = 200,
    emb_a2: np.ndarray | None = None,
    emb_b2: np.ndarray | None = None,
    nn_aa: Neighbors | None = None,
    nn_method: str = "auto",
    n_jobs: int | None = None,
) -> pd.DataFrame:
    logger.info("Finding neighborhoods")
    nn = _find_nn(
        emb_a,
        emb_b,
        k_anchor=k_anchor,
        k_score=k_score,
        emb_a2=emb_a2,
        emb_b2=emb_b2,
        nn_aa=nn_aa,
        nn_method=nn_method,
        n_jobs=n_jobs,
    )

    logger.info("Finding anchors")
    anchors = _find_anchor_pairs(nn["ab"], nn["ba"], k_anchor)
    logger.info("    Found %i anchors", anchors.shape[0])

    if k_filter is not None and anchors.shape[0] > 0:
        logger.info("Filtering anchors")
        top = _top_dim_features(loadings, max_features=max_features)
        anchors = _filter_anchors(
            anchors,
            data_a[:, top],
            data_b[:, top],
            k_filter=k_filter,
            nn_method=nn_method,
            n_jobs=n_jobs,
        )
        logger.info("    Retained %i anchors", anchors.shape[0])

    logger.info("Scoring anchors")
    return _score_anchors(anchors, nn, k_score)


# ---------------------------------------------------------------------------
# weights and transfer


def _distance_weights(nn: Neighbors, n_targets: int) -> sparse.csr_matrix:
    """[N_query, N_targets] of 1 - d / d_k, the k-th neighbor getting zero."""
    n_query, k = nn.indices.shape
    d_max = nn.distances[:, -1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        dist_weights = 1.0 - nn.distances / d_max
    # all neighbors at the same spot as the cell
    dist_weights[d_max[:, 0] == 0] = 1.0

    W = sparse.csr_matrix(
        (dist_weights.ravel(), (np.repeat(np.arange(n_query), k), nn.indices.ravel())),
        shape=(n_query, n_targets),
    )
    W.eliminate_zeros()
    return W


def _kernel_normalize(W: sparse.spmatrix, sd_weight: float = 1.0) -> sparse.csr_matrix:
    """Gaussian-like kernel on the raw weights, then each row sums to 1 (or stays 0)."""
    W = sparse.csr_matrix(W, dtype=np.float64)
    W.data = 1.0 - np.exp(-W.data / (2.0 / sd_weight) ** 2)
    W.eliminate_zeros()

    totals = np.asarray(W.sum(axis=1)).ravel()
    scale = np.divide(1.0, totals, out=np.zeros_like(totals), where=totals > 0)
    return sparse.csr_matrix(sparse.diags(scale) @ W)


def _find_weights(
    anchors: pd.DataFrame,
    emb: np.ndarray,
    k_weight: int,
    sd_weight: float = 1.0,
    nn_method: str = "auto",
    n_jobs: int | None = None,
) -> sparse.csr_matrix:
    """
    Anchor weights for every cell of ``emb`` (the side holding the ``cell2``
    endpoints), [N_cells, N_anchors], rows summing to 1 or 0.
    """
    cell2 = anchors["cell2"].to_numpy()
    anchor_cells, anchor_pos = np.unique(cell2, return_inverse=True)
    if k_weight > len(anchor_cells):
        raise ValueError(
            f"`k_weight` ({k_weight}) should not exceed the number of "
            f"distinct anchor cells ({len(anchor_cells)})"
        )

    logger.info("Finding anchor weights")
    nn = _nn_helper(emb[anchor_cells], emb, k=k_weight, nn_method=nn_method, n_jobs=n_jobs)
    # [N_cells, N_anchor_cells]
    dist_weights = _distance_weights(nn, len(anchor_cells))
    # [N_anchor_cells, N_anchors], every anchor belongs to exactly one anchor cell
    n_anchors = anchors.shape[0]
    M = sparse.csr_matrix(
        (anchors["score"].to_numpy(dtype=float), (anchor_pos, np.arange(n_anchors))),
        shape=(len(anchor_cells), n_anchors),
    )
    return _kernel_normalize(dist_weights @ M, sd_weight)


def _transfer_labels(
    W: sparse.spmatrix, labels, name: str, index: pd.Index
) -> pd.DataFrame:
    """
    Weighted vote of ``labels`` (aligned with the columns of ``W``).
    Cells without any weight get the UNASSIGNED label and score 0.
    """
    cat = pd.Categorical(labels)
    classes = np.asarray(cat.categories.astype(str))
    if len(classes) == 0:
        raise ValueError(f"`refdata` '{name}' holds no labels to transfer")

    codes = cat.codes
    valid = codes >= 0
    onehot = sparse.csr_matrix(
        (np.ones(valid.sum()), (np.flatnonzero(valid), codes[valid])),
        shape=(len(codes), len(classes)),
    )
    # [N_query, N_classes]
    votes = np.asarray((W @ onehot).todense())
    total = votes.sum(axis=1)
    scores = np.divide(
        votes, total[:, np.newaxis], out=np.zeros_like(votes), where=total[:, np.newaxis] > 0
    )

    predicted = classes[votes.argmax(axis=1)].astype(object)
    predicted[total <= 0] = UNASSIGNED
    n_unassigned = int((total <= 0).sum())
    if n_unassigned:
        logger.info("%i cells left %s for '%s'", n_unassigned, UNASSIGNED, name)

    result = pd.DataFrame(
        {
            f"predicted_{name}": pd.Categorical(predicted),
            f"predicted_{name}_score": scores.max(axis=1),
        },
        index=index,
    )
    per_class = pd.DataFrame(scores, index=index, columns=[f"{name}_score_{c}" for c in classes])
    return pd.concat([result, per_class], axis=1)


def _transfer_continuous(W: sparse.spmatrix, values: np.ndarray, name: str) -> np.ndarray:
    values = np.asarray(values, dtype=np.float64)
    squeeze = values.ndim == 1
    if squeeze:
        values = values[:, np.newaxis]
    result = np.asarray(W @ values)

    total = np.asarray(W.sum(axis=1)).ravel()
    no_weight = total <= 0
    if no_weight.any():
        warnings.warn(
            f"{no_weight.sum()} cells have no anchor weight, "
            f"their transferred '{name}' values are set to NaN"
        )
        result[no_weight] = np.nan
    return result[:, 0] if squeeze else result


# ---------------------------------------------------------------------------
# leverage scores


def _leverage_exact(X: np.ndarray) -> np.ndarray:
    u, s, _ = np.linalg.svd(X, full_matrices=False)
    if len(s) == 0:
        return np.zeros(X.shape[0])
    tol = s.max() * max(X.shape) * np.finfo(np.float64).eps
    u = u[:, s > tol]
    return (u**2).sum(axis=1)


def _leverage_sketched(
    chunks,
    n_cells: int,
    n_features: int,
    n_sketch: int,
    n_dims: int | None,
    eps: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Approximate leverage scores via a CountSketch of the rows followed by a
    Johnson-Lindenstrauss projection. ``chunks`` is a callable returning a
    fresh iterator over ``(rows, start, end)`` blocks; it is scanned twice.
    """
    # every cell is hashed into one sketch row with a random sign
    sketch_rows = rng.integers(0, n_sketch, size=n_cells)
    sketch_signs = rng.choice(np.array([-1.0, 1.0]), size=n_cells)

    # [n_sketch, features]
    SA = np.zeros((n_sketch, n_features))
    for X, start, end in chunks():
        S = sparse.csr_matrix(
            (sketch_signs[start:end], (sketch_rows[start:end], np.arange(end - start))),
            shape=(n_sketch, end - start),
        )
        SA += _to_dense(S @ X)

    R = np.linalg.qr(SA, mode="r")
    if R.shape[0] != R.shape[1] or np.any(np.isclose(np.diag(R), 0)):
        warnings.warn(
            "The sketched matrix is rank deficient, leverage scores are approximated "
            "with a pseudo-inverse"
        )
        R_inv = np.linalg.pinv(R)
    else:
        R_inv = solve_triangular(R, np.eye(R.shape[0]))

    if n_dims is None:
        n_dims = int(np.ceil(np.log(n_cells) / eps**2))
    if n_dims < n_features:
        JL = rng.normal(size=(n_features, n_dims)) / np.sqrt(n_dims)
        proj = R_inv @ JL
    else:
        proj = R_inv

    scores = np.empty(n_cells)
    for X, start, end in chunks():
        Z = _to_dense(X @ proj)
        scores[start:end] = (Z**2).sum(axis=1)
    return scores


def _weighted_sample(
    idx: np.ndarray, weights: np.ndarray, size: int, rng: np.random.Generator
) -> np.ndarray:
    """Weighted sampling without replacement (exponential keys); zero weights come last."""
    u = rng.random(len(idx))
    with np.errstate(divide="ignore"):
        keys = np.log(u) / weights
    order = np.argsort(-keys, kind="stable")
    return np.sort(idx[order[:size]])
