"""Per-gene linear models with empirically moderated t-statistics."""

import logging
import warnings
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

try:
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.packages import importr
    from rpy2.robjects.conversion import localconverter
    RPY2_AVAILABLE = True
except ImportError:
    RPY2_AVAILABLE = False

from fetal_brain_de.expression import ExpressionDataset


logger = logging.getLogger(__name__)


class DifferentialExpressionError(Exception):
    """Exception for differential expression errors."""
    pass


class LimmaError(DifferentialExpressionError):
    """Exception for limma-related errors."""
    pass


class LinearModelFit(BaseModel):
    """Least-squares fit of every gene against the same design."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    coefficients: pd.DataFrame     # genes x design columns
    sigma2: np.ndarray             # residual variance per gene
    df_residual: int
    stdev_unscaled: pd.Series      # per design column
    amean: np.ndarray              # average log expression per gene


def design_matrix(
    samples: pd.DataFrame,
    group_col: str,
    reference: str,
    covariates: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Build the design matrix ``~ group + covariates``.

    Columns are an intercept, an indicator for the non-reference group level
    (named ``<group_col><level>``), numeric covariates as-is and categorical
    covariates as drop-first dummy columns.
    """
    if group_col not in samples.columns:
        raise DifferentialExpressionError(f"Group column '{group_col}' not found in sample table")

    group = samples[group_col]
    if group.isna().any():
        raise DifferentialExpressionError(f"Group column '{group_col}' contains missing values")

    levels = list(pd.unique(group.astype(str)))
    if len(levels) != 2:
        raise DifferentialExpressionError(
            f"Group column '{group_col}' must have exactly two levels, found {len(levels)}: {levels}"
        )
    if reference not in levels:
        raise DifferentialExpressionError(f"Reference level '{reference}' not found in '{group_col}': {levels}")
    other = levels[1] if levels[0] == reference else levels[0]

    design = pd.DataFrame({'Intercept': 1.0}, index=samples.index)
    design[f"{group_col}{other}"] = (group.astype(str) == other).astype(float)

    for covariate in covariates or []:
        if covariate not in samples.columns:
            raise DifferentialExpressionError(f"Covariate '{covariate}' not found in sample table")
        values = samples[covariate]
        if values.isna().any():
            raise DifferentialExpressionError(f"Covariate '{covariate}' contains missing values")
        if pd.api.types.is_numeric_dtype(values):
            design[covariate] = values.astype(float)
        else:
            dummies = pd.get_dummies(values.astype(str), prefix=covariate, prefix_sep="", drop_first=True, dtype=float)
            design = design.join(dummies)

    rank = np.linalg.matrix_rank(design.values)
    if rank < design.shape[1]:
        raise DifferentialExpressionError(
            "Design matrix is rank deficient. This usually means:\n"
            "  - Perfect correlation between the group and a covariate\n"
            "  - A covariate has the same value for all samples"
        )
    if design.shape[0] <= design.shape[1]:
        raise DifferentialExpressionError(
            f"Not enough samples ({design.shape[0]}) to estimate {design.shape[1]} coefficients with residual variance"
        )
    return design


def fit_linear_model(log_expr: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Ordinary least squares for every gene.

    Args:
        log_expr: Log expression (genes x samples)
        design: Design matrix (samples x coefficients)
    """
    design = design.loc[log_expr.columns]
    X = design.values
    Y = log_expr.values
    n, p = X.shape

    Q, R = np.linalg.qr(X)
    beta = np.linalg.solve(R, Q.T @ Y.T).T
    residuals = Y - beta @ X.T
    df_residual = n - p
    sigma2 = (residuals ** 2).sum(axis=1) / df_residual

    R_inv = np.linalg.inv(R)
    stdev_unscaled = np.sqrt((R_inv @ R_inv.T).diagonal())

    return LinearModelFit(
        coefficients=pd.DataFrame(beta, index=log_expr.index, columns=design.columns),
        sigma2=sigma2,
        df_residual=df_residual,
        stdev_unscaled=pd.Series(stdev_unscaled, index=design.columns),
        amean=Y.mean(axis=1)
    )


def trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = polygamma(1, y)
        dif = tri * (1 - tri / x) / polygamma(2, y)
        y += dif
        if -dif / y < 1e-8:
            break
    else:
        warnings.warn("trigamma_inverse: iteration limit exceeded")
    return float(y)


def fit_f_distribution(s2: np.ndarray, df: float) -> Tuple[float, float]:
    """
    Moment estimates of the scaled F prior on the residual variances.

    Returns:
        Tuple of (prior df, prior variance). The prior df is infinite when
        the variances are no more dispersed than sampling error explains.
    """
    x = np.asarray(s2, dtype=float)
    x = x[np.isfinite(x)]
    if len(x) < 2:
        return 0.0, float('nan')

    x = np.maximum(x, 0)
    m = np.median(x)
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) - digamma(df / 2) + np.log(df / 2)
    emean = e.mean()
    evar = ((e - emean) ** 2).sum() / (len(e) - 1) - polygamma(1, df / 2)

    if evar > 0:
        df_prior = 2 * trigamma_inverse(evar)
        s2_prior = float(np.exp(emean + digamma(df_prior / 2) - np.log(df_prior / 2)))
    else:
        df_prior = float('inf')
        s2_prior = float(np.exp(emean))
    return df_prior, s2_prior


def squeeze_variances(s2: np.ndarray, df: float) -> Tuple[np.ndarray, float, float]:
    """
    Shrink gene-wise residual variances towards a common prior.

    Returns:
        Tuple of (posterior variances, prior df, prior variance)
    """
    df_prior, s2_prior = fit_f_distribution(s2, df)
    if df_prior == 0:
        return np.asarray(s2, dtype=float), df_prior, s2_prior
    if np.isinf(df_prior):
        return np.full(len(s2), s2_prior), df_prior, s2_prior
    s2_post = (df * np.asarray(s2, dtype=float) + df_prior * s2_prior) / (df + df_prior)
    return s2_post, df_prior, s2_prior


def moderated_statistics(fit: LinearModelFit, coef: str) -> pd.DataFrame:
    """
    Moderated t-statistics for one coefficient.

    Returns:
        DataFrame indexed by gene id with log2FoldChange, AveExpr, t, pvalue, padj
    """
    s2_post, df_prior, s2_prior = squeeze_variances(fit.sigma2, fit.df_residual)
    n_genes = len(fit.sigma2)
    df_total = min(fit.df_residual + df_prior, fit.df_residual * n_genes)
    logger.info(f"Empirical Bayes prior: df={df_prior:.3g}, variance={s2_prior:.3g}")

    lfc = fit.coefficients[coef].values
    t = lfc / (fit.stdev_unscaled[coef] * np.sqrt(s2_post))
    pvalues = 2 * stats.t.sf(np.abs(t), df_total)
    _, padj, _, _ = multipletests(pvalues, method="fdr_bh")

    return pd.DataFrame({
        'log2FoldChange': lfc,
        'AveExpr': fit.amean,
        't': t,
        'pvalue': pvalues,
        'padj': padj
    }, index=fit.coefficients.index)


class LimmaWrapper:
    """Wrapper for limma linear models via rpy2."""

    def __init__(self):
        """Initialize limma wrapper and check R environment."""
        if not RPY2_AVAILABLE:
            raise LimmaError("rpy2 is not installed. Please install it with: pip install rpy2")

        self._check_r_packages()
        self._load_r_packages()

    def _check_r_packages(self):
        """Check if required R packages are installed."""
        utils = importr('utils')
        base = importr('base')

        installed = base.rownames(utils.installed_packages())
        if 'limma' not in installed:
            raise LimmaError(
                "Required R package not found: limma\n"
                "Please install it in R using:\n"
                "  if (!require('BiocManager', quietly = TRUE))\n"
                "      install.packages('BiocManager')\n"
                "  BiocManager::install('limma')"
            )

    def _load_r_packages(self):
        """Load required R packages."""
        try:
            self.limma = importr('limma')
            self.base = importr('base')
            logger.info("Successfully loaded limma")
        except Exception as e:
            raise LimmaError(f"Failed to load R packages: {str(e)}")

    def _convert_to_r_matrix(self, df: pd.DataFrame):
        """Convert pandas DataFrame to R matrix."""
        with localconverter(ro.default_converter + pandas2ri.converter):
            r_df = ro.conversion.py2rpy(df)

        r_matrix = self.base.as_matrix(r_df)
        r_matrix.rownames = ro.StrVector(df.index.astype(str))
        r_matrix.colnames = ro.StrVector(df.columns.astype(str))
        return r_matrix

    def _convert_from_r_dataframe(self, r_df) -> pd.DataFrame:
        """Convert R DataFrame to pandas DataFrame."""
        with localconverter(ro.default_converter + pandas2ri.converter):
            return ro.conversion.rpy2py(r_df)

    def fit(self, log_expr: pd.DataFrame, design: pd.DataFrame, coef: str) -> pd.DataFrame:
        """
        Run lmFit, eBayes and topTable for one coefficient.

        Returns:
            DataFrame indexed by gene id with log2FoldChange, AveExpr, t, pvalue, padj
        """
        design = design.loc[log_expr.columns]
        logger.info(f"Running limma on {log_expr.shape[0]} genes, coefficient '{coef}'")
        try:
            fit = self.limma.lmFit(self._convert_to_r_matrix(log_expr), self._convert_to_r_matrix(design))
            fit = self.limma.eBayes(fit)
            table = self.limma.topTable(
                fit,
                coef=list(design.columns).index(coef) + 1,
                number=float('inf'),
                sort_by="none"
            )
        except Exception as e:
            raise LimmaError(f"limma analysis failed: {str(e)}")

        res_df = self._convert_from_r_dataframe(table)
        with localconverter(ro.default_converter + pandas2ri.converter):
            res_df.index = list(self.base.rownames(table))
        res_df = res_df.rename(columns={
            'logFC': 'log2FoldChange',
            'P.Value': 'pvalue',
            'adj.P.Val': 'padj'
        })
        return res_df[['log2FoldChange', 'AveExpr', 't', 'pvalue', 'padj']]


def flag_significant(results: pd.DataFrame, fdr_threshold: float = 0.05, lfc_threshold: float = 0.0) -> pd.DataFrame:
    """Add 'significant' and 'direction' (up/down/not_sig) columns."""
    results = results.copy()
    sig = (results['padj'] < fdr_threshold) & (results['log2FoldChange'].abs() > lfc_threshold)
    results['significant'] = sig
    results['direction'] = 'not_sig'
    results.loc[sig & (results['log2FoldChange'] > 0), 'direction'] = 'up'
    results.loc[sig & (results['log2FoldChange'] < 0), 'direction'] = 'down'
    return results


def run_differential_expression(
    dataset: ExpressionDataset,
    group_col: str = "age_group",
    reference: str = "adult",
    covariates: Optional[List[str]] = None,
    engine: str = "python",
    fdr_threshold: float = 0.05,
    lfc_threshold: float = 0.0
) -> pd.DataFrame:
    """
    Test every gene for a difference between the two groups.

    Log2 fold changes are the non-reference group relative to ``reference``
    on the log2(count + 1) scale.

    Args:
        dataset: Expression dataset
        group_col: Two-level sample column to test
        reference: Reference level of ``group_col``
        covariates: Additional sample columns to adjust for
        engine: 'python' (built-in empirical Bayes) or 'limma' (R via rpy2)
        fdr_threshold: FDR threshold for the significance flag
        lfc_threshold: Minimum absolute log2 fold change for the significance flag

    Returns:
        DataFrame with one row per gene, sorted by p-value
    """
    design = design_matrix(dataset.samples, group_col, reference, covariates)
    coef = design.columns[1]
    log_expr = dataset.log_expression()
    logger.info(f"Fitting {design.shape[1]}-coefficient model for {dataset.n_genes} genes (engine={engine})")

    if engine == "python":
        stats_df = moderated_statistics(fit_linear_model(log_expr, design), coef)
    elif engine == "limma":
        stats_df = LimmaWrapper().fit(log_expr, design, coef)
    else:
        raise DifferentialExpressionError(f"Unknown engine: {engine}")

    results = stats_df.reindex(log_expr.index)
    results.insert(0, 'gene_name', dataset.gene_names().reindex(results.index).values)
    results.insert(0, 'gene_id', results.index)
    results = results.sort_values('pvalue', na_position='last', kind='mergesort').reset_index(drop=True)
    results = flag_significant(results, fdr_threshold, lfc_threshold)

    n_up = (results['direction'] == 'up').sum()
    n_down = (results['direction'] == 'down').sum()
    logger.info(f"Found {n_up} genes higher and {n_down} genes lower in '{coef[len(group_col):]}' vs '{reference}'")
    return results


def write_results(results: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Export the ranked result table as a tab-delimited file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    results.to_csv(path, sep='\t', index=False)
    logger.info(f"Wrote {len(results)} results to {path}")
    return path
