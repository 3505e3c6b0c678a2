"""
Anchor-based reference mapping and integration:

1. Reference building:
    - log(CP10K + 1) library size normalization of the cells
    - subset by the top variable genes
    - scaling of the genes to have mean 0 and variance 1 (saving μ and σ for each gene)
    - PCA (by default, d=30), saving the gene loadings

2. Anchors between reference and query
    - shared space: query scaled with the reference μ and σ and projected
        onto the reference loadings (pcaproject), or CCA of both datasets
    - L2 normalization of the cell embeddings
    - anchors are mutual nearest neighbors across the datasets (k_anchor)
    - filtering: an anchor is kept if its cells are close in the space
        of the top loading genes (k_filter)
    - scoring: shared neighbors of the two anchor cells (k_score), rescaled to [0, 1]

3. Transfer
    - every query cell is weighted against its k_weight nearest anchors,
        weights are scaled by anchor scores and normalized
    - labels: weighted vote with a prediction score
    - continuous data and embeddings: weighted average
    - reference embedding / UMAP of the query: anchor corrections

4. Integration of several datasets (CCA / reciprocal PCA anchors, or Harmony)

5. Sketching of large datasets
    - leverage scores (exact or CountSketch + random projection)
    - weighted subsampling that keeps rare cells
    - projecting the sketch results back to every cell
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
from ._anchorset import IntegrationAnchorSet, TransferAnchorSet
from ._utils import Neighbors
