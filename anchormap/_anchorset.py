# pylint: disable=C0103, C0114
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from anndata import AnnData


def _check_anchor_table(anchors: pd.DataFrame, n_cells1: int, n_cells2: int) -> None:
    missing = {"cell1", "cell2", "score"} - set(anchors.columns)
    if missing:
        raise ValueError(f"Anchor table is missing columns: {sorted(missing)}")
    if anchors.shape[0] == 0:
        return
    cell1 = anchors["cell1"].to_numpy()
    cell2 = anchors["cell2"].to_numpy()
    score = anchors["score"].to_numpy()
    if cell1.min() < 0 or cell1.max() >= n_cells1:
        raise ValueError("Anchor `cell1` indices are out of the first dataset's range")
    if cell2.min() < 0 or cell2.max() >= n_cells2:
        raise ValueError("Anchor `cell2` indices are out of the second dataset's range")
    if np.any(score < 0) or np.any(score > 1):
        raise ValueError("Anchor scores should lie within [0, 1]")


@dataclass(frozen=True)
class TransferAnchorSet:
    """
    Anchors between a reference and a query dataset.

    Produced by :func:`anchormap.tl.find_transfer_anchors` and consumed read-only
    by the transfer functions; build a new one instead of changing it.

    Attributes:
        combined: reference + query cells restricted to the anchor features.
            ``obs_names`` carry ``_reference`` / ``_query`` suffixes, ``obs["dataset"]``
            tells them apart, ``obsm`` holds the matching embeddings
            (``reduction`` and ``reduction + ".l2"``), ``varm`` their projected loadings.
        anchors: ``cell1`` (reference position), ``cell2`` (query position), ``score``.
        anchor_features: ordered feature names used for projection.
        reference_cells / query_cells: original cell names, in order.
        reduction: name of the matching embedding in ``combined.obsm``.
        neighbors: precomputed neighbor structures that were used, if any.
        params: parameters of the call that produced the set.
    """

    combined: AnnData
    anchors: pd.DataFrame
    anchor_features: list
    reference_cells: pd.Index
    query_cells: pd.Index
    reduction: str
    neighbors: dict = field(default_factory=dict)
    params: dict = field(default_factory=dict)

    def __post_init__(self):
        _check_anchor_table(self.anchors, len(self.reference_cells), len(self.query_cells))
        if self.combined.n_obs != len(self.reference_cells) + len(self.query_cells):
            raise ValueError("Combined object doesn't hold all reference and query cells")

    @property
    def n_anchors(self) -> int:
        return self.anchors.shape[0]

    @property
    def anchor_matrix(self) -> np.ndarray:
        """[N_anchors, 3] array of (cell1, cell2, score)."""
        return self.anchors[["cell1", "cell2", "score"]].to_numpy()

    def embedding(self, name: str, dataset: str = "query") -> np.ndarray:
        """Rows of ``combined.obsm[name]`` belonging to ``dataset`` ("reference" or "query")."""
        if name not in self.combined.obsm:
            raise KeyError(
                f"'{name}' not found among the anchor set embeddings "
                f"{list(self.combined.obsm.keys())}"
            )
        if dataset not in ("reference", "query"):
            raise ValueError("`dataset` should be 'reference' or 'query'")
        emb = np.asarray(self.combined.obsm[name])
        n_ref = len(self.reference_cells)
        return emb[:n_ref] if dataset == "reference" else emb[n_ref:]

    def __repr__(self) -> str:
        return (
            f"TransferAnchorSet with {self.n_anchors} anchors between "
            f"{len(self.reference_cells)} reference and {len(self.query_cells)} query cells, "
            f"{len(self.anchor_features)} anchor features, reduction '{self.reduction}'"
        )


@dataclass(frozen=True)
class IntegrationAnchorSet:
    """
    Pairwise anchors between several datasets.

    Produced by :func:`anchormap.tl.find_integration_anchors`. ``anchors`` has the
    ``cell1``/``cell2``/``score`` columns plus ``dataset1``/``dataset2``, the
    positions in ``object_list`` the two cells come from (``dataset1 < dataset2``).
    """

    object_list: list
    anchors: pd.DataFrame
    anchor_features: list
    reference: tuple | None = None
    params: dict = field(default_factory=dict)

    def __post_init__(self):
        missing = {"dataset1", "dataset2"} - set(self.anchors.columns)
        if missing:
            raise ValueError(f"Anchor table is missing columns: {sorted(missing)}")
        sizes = [adata.n_obs for adata in self.object_list]
        for (i, j), pair in self.anchors.groupby(["dataset1", "dataset2"]):
            _check_anchor_table(pair, sizes[i], sizes[j])

    @property
    def n_anchors(self) -> int:
        return self.anchors.shape[0]

    def pair(self, i: int, j: int) -> pd.DataFrame:
        """Anchors between datasets ``i`` and ``j``, with ``cell1`` in ``i``."""
        if i == j:
            raise ValueError("A dataset has no anchors with itself")
        first, second = min(i, j), max(i, j)
        mask = (self.anchors["dataset1"] == first) & (self.anchors["dataset2"] == second)
        pair = self.anchors.loc[mask, ["cell1", "cell2", "score"]].reset_index(drop=True)
        if i > j:
            pair = pair.rename(columns={"cell1": "cell2", "cell2": "cell1"})[
                ["cell1", "cell2", "score"]
            ]
        return pair

    def __repr__(self) -> str:
        return (
            f"IntegrationAnchorSet with {self.n_anchors} anchors across "
            f"{len(self.object_list)} datasets, {len(self.anchor_features)} anchor features"
        )
