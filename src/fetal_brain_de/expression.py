"""Expression container, log transformation and PCA."""

import logging
from typing import Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, model_validator
from sklearn.decomposition import PCA


logger = logging.getLogger(__name__)


class ExpressionDataset(BaseModel):
    """
    Counts with their gene and sample annotations.

    ``counts`` is genes x samples, ``genes`` has one row per count row
    (gene_id, gene_name, coordinates) and ``samples`` one row per count column.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    counts: pd.DataFrame
    genes: pd.DataFrame
    samples: pd.DataFrame

    @model_validator(mode="after")
    def _align(self):
        genes = self.genes.drop_duplicates(subset="gene_id").set_index("gene_id")
        missing = self.counts.index.difference(genes.index)
        if len(missing):
            raise ValueError(f"{len(missing)} genes in counts are missing from the gene table")
        missing = self.counts.columns.difference(self.samples.index)
        if len(missing):
            raise ValueError(f"Samples missing from the sample table: {', '.join(missing)}")
        self.genes = genes.loc[self.counts.index].rename_axis("gene_id").reset_index()
        self.samples = self.samples.loc[self.counts.columns]
        return self

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def library_sizes(self) -> pd.Series:
        return self.counts.sum(axis=0)

    def log_expression(self, pseudocount: float = 1.0) -> pd.DataFrame:
        """log2(count + pseudocount)."""
        return np.log2(self.counts + pseudocount)

    def cpm(self) -> pd.DataFrame:
        """Counts per million mapped reads."""
        return self.counts / self.library_sizes * 1e6

    def gene_names(self) -> pd.Series:
        return self.genes.set_index("gene_id")["gene_name"]


def build_dataset(counts: pd.DataFrame, genes: pd.DataFrame, samples: pd.DataFrame) -> ExpressionDataset:
    dataset = ExpressionDataset(counts=counts, genes=genes, samples=samples)
    logger.info(f"Built expression dataset with {dataset.n_genes} genes and {dataset.n_samples} samples")
    return dataset


def run_pca(log_expr: pd.DataFrame, n_components: int = 5) -> Tuple[pd.DataFrame, np.ndarray]:
    """
    Project samples onto principal components of the log expression.

    Args:
        log_expr: Log expression (genes x samples)
        n_components: Maximum number of components

    Returns:
        Tuple of (sample coordinates PC1..PCn, explained variance ratio)
    """
    # Transpose (samples as rows)
    data = log_expr.T

    # Remove genes with zero variance
    data = data.loc[:, data.var() > 0]

    n = min(n_components, data.shape[0], data.shape[1])
    pca = PCA(n_components=n)
    coords = pca.fit_transform(data.values)

    coords_df = pd.DataFrame(
        coords,
        index=data.index,
        columns=[f"PC{i + 1}" for i in range(n)]
    )
    logger.debug(f"PCA explained variance: {pca.explained_variance_ratio_.round(3).tolist()}")
    return coords_df, pca.explained_variance_ratio_
