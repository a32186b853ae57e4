"""End-to-end run: counting, assembly, exploration, testing, epigenomic cross-reference."""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
import requests
from pydantic import BaseModel, ConfigDict, Field

from fetal_brain_de.annotation import load_genes_from_gtf, read_chromsizes
from fetal_brain_de.assembly import (
    annotate_genes,
    attach_metadata,
    derive_age_group,
    filter_low_expression,
    merge_sample_counts,
    read_metadata,
    write_merged_counts
)
from fetal_brain_de.config import Config
from fetal_brain_de.counting import collect_alignment_summaries, count_samples
from fetal_brain_de.differential import run_differential_expression, write_results
from fetal_brain_de.epigenomics import cross_reference, fetch_peaks
from fetal_brain_de.expression import ExpressionDataset, build_dataset, run_pca
from fetal_brain_de.visualizations import (
    create_expression_boxplot,
    create_overlap_barplot,
    create_pca_plot,
    create_volcano_plot,
    save_figure
)


logger = logging.getLogger(__name__)

PathList = Optional[List[Union[str, Path]]]


class PipelineError(Exception):
    """Exception for missing pipeline inputs."""
    pass


class PipelineResult(BaseModel):
    """Tables produced by one run and the files written."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    dataset: ExpressionDataset
    results: pd.DataFrame
    overlap: Optional[pd.DataFrame] = None
    outputs: Dict[str, Path] = Field(default_factory=dict)


def _prepare_metadata(config: Config, alignment_summaries: PathList) -> pd.DataFrame:
    defaults = config.defaults
    metadata = read_metadata(config.paths.metadata)

    if alignment_summaries:
        mapping = collect_alignment_summaries(alignment_summaries)
        metadata = metadata.drop(columns=list(mapping.columns), errors='ignore').join(mapping)

    if defaults.group_column not in metadata.columns:
        if 'age' not in metadata.columns:
            raise PipelineError(
                f"Metadata has neither '{defaults.group_column}' nor 'age' to derive it from"
            )
        metadata[defaults.group_column] = derive_age_group(
            metadata['age'], defaults.fetal_max_age, defaults.adult_min_age
        )
    return metadata


def run_pipeline(
    config: Config,
    bam_paths: PathList = None,
    count_paths: PathList = None,
    alignment_summaries: PathList = None,
    engine: str = "python",
    session: Optional[requests.Session] = None
) -> PipelineResult:
    """
    Run the full analysis and write its tables and plots to ``config.paths.output_dir``.

    Read counting runs when ``bam_paths`` are given; otherwise per-sample count
    files are taken from ``count_paths`` or ``config.paths.counts_dir``.
    """
    paths = config.paths
    defaults = config.defaults
    if paths.gtf is None:
        raise PipelineError("A GTF annotation is required (paths.gtf)")
    if paths.metadata is None:
        raise PipelineError("A sample metadata file is required (paths.metadata)")

    out = Path(paths.output_dir)
    out.mkdir(parents=True, exist_ok=True)
    outputs: Dict[str, Path] = {}

    genes = load_genes_from_gtf(paths.gtf)

    # 1. Read counts
    if bam_paths:
        counting = config.counting
        count_paths = count_samples(
            bam_paths, paths.gtf, paths.counts_dir,
            engine=counting.engine,
            strand_specific=counting.strand_specific,
            min_mapq=counting.min_mapq,
            paired_end=counting.paired_end,
            threads=counting.threads
        )
    elif not count_paths:
        count_paths = sorted(Path(paths.counts_dir).glob("*.counts.tsv"))
        if not count_paths:
            raise PipelineError(f"No BAM files given and no count files found in {paths.counts_dir}")

    # 2. Assemble tables
    counts = merge_sample_counts(count_paths)
    counts, gene_rows = annotate_genes(counts, genes)
    outputs['merged_counts'] = write_merged_counts(counts, gene_rows, out / "merged_counts.tsv")
    metadata = _prepare_metadata(config, alignment_summaries)
    counts, metadata = attach_metadata(counts, metadata, defaults.group_column)
    # Expression filter over the samples that are compared
    counts = filter_low_expression(counts, defaults.min_mean_log2)

    # 3. Normalization and exploration
    dataset = build_dataset(counts, gene_rows, metadata)
    log_expr = dataset.log_expression()
    outputs['boxplot'] = save_figure(
        create_expression_boxplot(log_expr, dataset.samples, defaults.group_column),
        out / "expression_boxplot.html"
    )
    coords, explained = run_pca(log_expr, defaults.pca_components)
    outputs['pca'] = save_figure(
        create_pca_plot(coords, dataset.samples, defaults.group_column, explained),
        out / "pca.html"
    )

    # 4. Statistical testing
    results = run_differential_expression(
        dataset,
        group_col=defaults.group_column,
        reference=defaults.reference_group,
        covariates=defaults.covariates,
        engine=engine,
        fdr_threshold=defaults.fdr_threshold,
        lfc_threshold=defaults.log2fc_threshold
    )
    outputs['de_results'] = write_results(results, out / "de_results.tsv")
    outputs['volcano'] = save_figure(
        create_volcano_plot(results, defaults.fdr_threshold, defaults.log2fc_threshold),
        out / "volcano.html"
    )

    # 5. Epigenomic cross-reference
    overlap = None
    if config.skip_epigenomics:
        logger.info("Skipping epigenomic cross-reference")
    else:
        epi = config.epigenomics
        peaks = {
            category: fetch_peaks(
                category, paths.cache_dir,
                mark=epi.mark,
                categories=epi.categories,
                url_template=epi.url_template,
                session=session,
                timeout=epi.timeout
            )
            for category in epi.categories
        }
        chromsizes = read_chromsizes(paths.chromsizes) if paths.chromsizes else None
        overlap = cross_reference(
            results, dataset.genes, peaks,
            upstream=defaults.promoter_upstream,
            downstream=defaults.promoter_downstream,
            chromsizes=chromsizes
        )
        outputs['promoter_overlap'] = out / "promoter_overlap.tsv"
        overlap.to_csv(outputs['promoter_overlap'], sep='\t', index=False)
        outputs['overlap_plot'] = save_figure(create_overlap_barplot(overlap), out / "promoter_overlap.html")

    logger.info(f"Analysis '{config.analysis_name}' finished; outputs in {out}")
    return PipelineResult(dataset=dataset, results=results, overlap=overlap, outputs=outputs)
