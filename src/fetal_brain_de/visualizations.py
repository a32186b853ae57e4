"""Visualization functions for the fetal vs. adult comparison."""

import logging
from pathlib import Path
from typing import Optional, List, Union

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import plotly.express as px


logger = logging.getLogger(__name__)

DIRECTION_COLORS = {
    'up': '#E74C3C',      # Red
    'down': '#3498DB',    # Blue
    'not_sig': '#95A5A6'  # Gray
}


def create_expression_boxplot(
    log_expr: pd.DataFrame,
    samples: pd.DataFrame,
    group_col: str = "age_group",
    title: str = "log2 Expression per Sample"
) -> go.Figure:
    """
    Create per-sample boxplots of log expression coloured by group.

    Args:
        log_expr: Log expression (genes x samples)
        samples: Sample metadata
        group_col: Column for colouring samples
        title: Plot title

    Returns:
        Plotly Figure object
    """
    long_df = log_expr.melt(var_name='sample', value_name='log2 expression')
    long_df[group_col] = samples[group_col].reindex(long_df['sample']).values

    fig = px.box(
        long_df,
        x='sample',
        y='log2 expression',
        color=group_col,
        title=title,
        category_orders={'sample': list(log_expr.columns)}
    )

    fig.update_layout(
        template='plotly_white',
        width=max(600, 40 * log_expr.shape[1]),
        height=500,
        xaxis=dict(tickangle=-45)
    )
    return fig


def create_pca_plot(
    coords: pd.DataFrame,
    samples: pd.DataFrame,
    group_col: str,
    explained: np.ndarray,
    title: str = "PCA Plot"
) -> go.Figure:
    """
    Create PCA scatterplot of samples.

    Args:
        coords: Sample coordinates with PC1 and PC2 columns
        samples: Sample metadata
        group_col: Column for colouring samples
        explained: Explained variance ratio per component
        title: Plot title

    Returns:
        Plotly Figure object
    """
    pca_df = coords[['PC1', 'PC2']].join(samples[[group_col]])

    var_exp = np.asarray(explained) * 100

    fig = px.scatter(
        pca_df,
        x='PC1',
        y='PC2',
        color=group_col,
        text=pca_df.index,
        title=title,
        labels={
            'PC1': f'PC1 ({var_exp[0]:.1f}%)',
            'PC2': f'PC2 ({var_exp[1]:.1f}%)'
        }
    )

    fig.update_traces(
        marker=dict(size=12, line=dict(width=1, color='white')),
        textposition='top center'
    )

    fig.update_layout(
        template='plotly_white',
        width=800,
        height=600,
        showlegend=True
    )

    return fig


def create_volcano_plot(
    results: pd.DataFrame,
    fdr_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
    top_n_labels: int = 10,
    highlight_genes: Optional[List[str]] = None,
    title: str = "Volcano Plot"
) -> go.Figure:
    """
    Create volcano plot (significance vs effect size).

    Args:
        results: DE results DataFrame
        fdr_threshold: FDR cutoff for significance
        lfc_threshold: Log2 fold change threshold
        top_n_labels: Number of top genes to label per direction
        highlight_genes: Gene names to always label
        title: Plot title

    Returns:
        Plotly Figure object
    """
    plot_data = results.dropna(subset=['pvalue', 'log2FoldChange']).copy()
    plot_data['-log10p'] = -np.log10(plot_data['pvalue'])

    # Replace infinite values
    max_log10p = plot_data['-log10p'].replace([np.inf, -np.inf], np.nan).max()
    plot_data['-log10p'] = plot_data['-log10p'].replace([np.inf], max_log10p * 1.1)

    sig = (plot_data['padj'] < fdr_threshold) & (plot_data['log2FoldChange'].abs() > lfc_threshold)
    plot_data['color'] = np.where(
        sig, np.where(plot_data['log2FoldChange'] > 0, 'up', 'down'), 'not_sig'
    )
    label = plot_data['gene_name'].fillna(plot_data['gene_id'])

    fig = go.Figure()

    for category, color in DIRECTION_COLORS.items():
        mask = plot_data['color'] == category
        data_subset = plot_data[mask]

        fig.add_trace(go.Scatter(
            x=data_subset['log2FoldChange'],
            y=data_subset['-log10p'],
            mode='markers',
            name=category.replace('_', ' ').title(),
            marker=dict(
                color=color,
                size=5,
                opacity=0.6 if category == 'not_sig' else 0.8,
                line=dict(width=0)
            ),
            text=label[mask],
            customdata=data_subset[['AveExpr', 'pvalue', 'padj']],
            hovertemplate=(
                '<b>%{text}</b><br>' +
                'log2FC: %{x:.2f}<br>' +
                '-log10(p): %{y:.2f}<br>' +
                'Padj: %{customdata[2]:.2e}<br>' +
                'AveExpr: %{customdata[0]:.2f}<br>' +
                '<extra></extra>'
            )
        ))

    # Lowest raw p-value still passing the FDR cutoff
    passing = plot_data.loc[plot_data['padj'] < fdr_threshold, '-log10p']
    if len(passing):
        fig.add_hline(
            y=passing.min(),
            line_dash="dash",
            line_color="gray",
            annotation_text=f"FDR = {fdr_threshold}",
            annotation_position="right"
        )

    if lfc_threshold > 0:
        fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
        fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    to_label = pd.Series(False, index=plot_data.index)
    if top_n_labels > 0:
        ranked = plot_data.sort_values('-log10p', ascending=False)
        for category in ('up', 'down'):
            to_label[ranked[ranked['color'] == category].head(top_n_labels).index] = True
    if highlight_genes:
        to_label |= label.isin(highlight_genes)

    for idx in plot_data.index[to_label]:
        gene = plot_data.loc[idx]
        fig.add_annotation(
            x=gene['log2FoldChange'],
            y=gene['-log10p'],
            text=label[idx],
            showarrow=True,
            arrowhead=2,
            arrowsize=1,
            arrowwidth=1,
            arrowcolor='black',
            ax=20 if gene['log2FoldChange'] > 0 else -20,
            ay=-20,
            font=dict(size=9),
            bgcolor='rgba(255, 255, 255, 0.8)',
            borderpad=2
        )

    fig.update_layout(
        title=title,
        xaxis_title="log<sub>2</sub> Fold Change",
        yaxis_title="-log<sub>10</sub> (p-value)",
        hovermode='closest',
        template='plotly_white',
        width=900,
        height=600,
        showlegend=True,
        legend=dict(
            x=0.02,
            y=0.98,
            bgcolor='rgba(255, 255, 255, 0.8)',
            bordercolor='black',
            borderwidth=1
        )
    )

    return fig


def create_overlap_barplot(overlap: pd.DataFrame, title: str = "Promoter Overlap with H3K4me3 Peaks") -> go.Figure:
    """Bar chart of promoter overlap fraction per peak category and gene set."""
    fig = px.bar(
        overlap,
        x='category',
        y='fraction',
        color='gene_set',
        barmode='group',
        text='n_overlapping',
        title=title,
        labels={'fraction': 'Fraction of promoters overlapping a peak', 'category': 'Peak set'}
    )
    fig.update_layout(
        template='plotly_white',
        width=800,
        height=500,
        yaxis=dict(range=[0, 1])
    )
    return fig


def save_figure(fig: go.Figure, path: Union[str, Path]) -> Path:
    """Write a figure as a standalone HTML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.write_html(str(path), include_plotlyjs="cdn")
    logger.info(f"Saved figure to {path}")
    return path
