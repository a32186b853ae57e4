"""Generate a synthetic fetal vs. adult brain dataset for trying out the pipeline."""

import gzip
from pathlib import Path

import numpy as np
import pandas as pd


CHROMS = ["chr1", "chr2", "chr3"]


def generate_example_data(
    n_genes: int = 2000,
    n_fetal: int = 6,
    n_adult: int = 6,
    n_de_genes: int = 200,
    fold_change_range: tuple = (2, 6),
    output_dir: str = "examples/data",
    seed: int = 42
):
    """
    Generate per-sample counts, a matching GTF and sample metadata.

    Args:
        n_genes: Total number of genes
        n_fetal: Number of fetal samples
        n_adult: Number of adult samples
        n_de_genes: Number of differentially expressed genes
        fold_change_range: (min, max) fold change for DE genes
        output_dir: Directory to save files
        seed: Random seed for reproducibility
    """
    rng = np.random.default_rng(seed)
    output_path = Path(output_dir)
    (output_path / "counts").mkdir(parents=True, exist_ok=True)

    n_samples = n_fetal + n_adult
    gene_ids = [f"ENSG{i:011d}" for i in range(n_genes)]
    gene_names = [f"GENE{i}" for i in range(n_genes)]
    # A few Ensembl ids without a symbol, dropped during annotation
    for i in rng.choice(n_genes, n_genes // 50, replace=False):
        gene_names[i] = None
    sample_names = [f"SRR{1554500 + i}" for i in range(n_samples)]

    # Genes laid out along three chromosomes, 20 kb apart
    chrom = np.array(CHROMS)[np.arange(n_genes) % len(CHROMS)]
    starts = (np.arange(n_genes) // len(CHROMS)) * 20000 + 10000
    lengths = rng.integers(2000, 15000, n_genes)
    strands = rng.choice(["+", "-"], n_genes)

    base_expression = rng.lognormal(mean=5, sigma=1.5, size=n_genes)
    de_indices = rng.choice(n_genes, n_de_genes, replace=False)
    n_up = n_de_genes // 2
    up_indices = de_indices[:n_up]
    down_indices = de_indices[n_up:]

    fetal_expression = base_expression.copy()
    fetal_expression[up_indices] *= rng.uniform(*fold_change_range, n_up)
    fetal_expression[down_indices] /= rng.uniform(*fold_change_range, len(down_indices))

    for i, sample in enumerate(sample_names):
        means = fetal_expression if i < n_fetal else base_expression
        dispersion = rng.uniform(0.05, 0.2, n_genes)
        counts = rng.negative_binomial(n=1 / dispersion, p=1 / (1 + means * dispersion))
        pd.Series(counts, index=pd.Index(gene_ids, name="gene_id"), name="count").to_csv(
            output_path / "counts" / f"{sample}.counts.tsv", sep="\t"
        )

    # GTF with one gene and one exon record per gene (1-based, closed)
    with gzip.open(output_path / "genes.gtf.gz", "wt") as f:
        for gid, name, c, s, length, strand in zip(gene_ids, gene_names, chrom, starts, lengths, strands):
            attrs = f'gene_id "{gid}";' + (f' gene_name "{name}";' if name else "")
            for feature in ("gene", "exon"):
                f.write("\t".join([c, "example", feature, str(s + 1), str(s + length),
                                   ".", strand, ".", attrs]) + "\n")

    ages = np.concatenate([
        -rng.uniform(0.3, 0.5, n_fetal),     # gestational weeks 14 to 24, in years before birth
        rng.uniform(20, 60, n_adult)
    ])
    metadata_df = pd.DataFrame({
        'age': ages.round(2),
        'sex': rng.choice(['M', 'F'], n_samples),
        'rin': rng.uniform(6.5, 9.5, n_samples).round(1),
        'race': rng.choice(['AA', 'CAUC'], n_samples)
    }, index=pd.Index(sample_names, name='sample_id'))
    metadata_df.to_csv(output_path / "sample_metadata.tsv", sep='\t')

    ground_truth = pd.DataFrame({'gene_id': gene_ids, 'is_de': False, 'direction': 'none'})
    ground_truth.loc[up_indices, ['is_de', 'direction']] = [True, 'up']
    ground_truth.loc[down_indices, ['is_de', 'direction']] = [True, 'down']
    ground_truth.to_csv(output_path / "ground_truth.tsv", sep='\t', index=False)

    print("Generated example data:")
    print(f"  - Genes: {n_genes}")
    print(f"  - Samples: {n_samples} ({n_fetal} fetal, {n_adult} adult)")
    print(f"  - DE genes: {n_de_genes} ({n_up} up in fetal, {len(down_indices)} down)")
    print(f"  - Files saved to: {output_path.absolute()}")
    print(f"Run: fetal-brain-de --counts {output_path}/counts/*.counts.tsv "
          f"--gtf {output_path}/genes.gtf.gz --metadata {output_path}/sample_metadata.tsv --skip-epigenomics")

    return metadata_df, ground_truth


def generate_minimal_dataset(output_dir: str = "examples/minimal"):
    """Generate a minimal dataset for quick testing."""
    return generate_example_data(
        n_genes=200,
        n_fetal=3,
        n_adult=3,
        n_de_genes=20,
        fold_change_range=(3, 5),
        output_dir=output_dir,
        seed=42
    )


if __name__ == "__main__":
    generate_example_data()
    generate_minimal_dataset()
