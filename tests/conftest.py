"""Shared synthetic data for the test suite."""

import gzip
import io

import numpy as np
import pandas as pd
import pytest
import requests


N_GENES = 300
N_UP = 10      # higher in fetal
N_DOWN = 10    # higher in adult
N_UNNAMED = 10
SAMPLES = [f"S{i}" for i in range(1, 9)]


@pytest.fixture
def gene_table():
    """Genes on chr1, alternating strands; the last genes have no symbol."""
    starts = np.arange(N_GENES) * 10000 + 5000
    names = [f"GENE{i}" for i in range(N_GENES)]
    names[-N_UNNAMED:] = [None] * N_UNNAMED
    return pd.DataFrame({
        'chrom': 'chr1',
        'start': starts,
        'end': starts + 3000,
        'strand': ['+' if i % 2 == 0 else '-' for i in range(N_GENES)],
        'gene_id': [f"G{i:04d}" for i in range(N_GENES)],
        'gene_name': names
    })


@pytest.fixture
def sample_table():
    """Four fetal and four adult samples."""
    return pd.DataFrame({
        'age': [-0.40, -0.38, -0.45, -0.35, 25.0, 40.0, 33.0, 51.0],
        'age_group': ['fetal'] * 4 + ['adult'] * 4,
        'sex': ['M', 'F', 'M', 'F', 'F', 'M', 'M', 'F'],
        'rin': [8.1, 7.9, 8.5, 8.8, 7.4, 7.0, 8.0, 7.7],
        'race': ['AA', 'CAUC', 'AA', 'CAUC', 'AA', 'CAUC', 'CAUC', 'AA'],
    }, index=SAMPLES)


@pytest.fixture
def simulated_counts(gene_table):
    """Negative binomial counts with the first genes differentially expressed."""
    rng = np.random.default_rng(42)
    base = rng.uniform(50, 500, N_GENES)
    means = np.tile(base[:, None], (1, len(SAMPLES)))
    means[:N_UP, :4] *= 8
    means[N_UP:N_UP + N_DOWN, 4:] *= 8

    dispersion = 0.05
    counts = rng.negative_binomial(1 / dispersion, 1 / (1 + means * dispersion))
    return pd.DataFrame(counts, index=gene_table['gene_id'].values, columns=SAMPLES)


@pytest.fixture
def up_genes(gene_table):
    return list(gene_table['gene_id'][:N_UP])


@pytest.fixture
def down_genes(gene_table):
    return list(gene_table['gene_id'][N_UP:N_UP + N_DOWN])


def gtf_lines(genes):
    """GTF records (gene and exon) for a gene table in 0-based coordinates."""
    lines = ["#!genome-build test"]
    for row in genes.itertuples():
        attrs = f'gene_id "{row.gene_id}";'
        if pd.notna(row.gene_name):
            attrs += f' gene_name "{row.gene_name}";'
        for feature in ('gene', 'exon'):
            extra = f' transcript_id "{row.gene_id}.1";' if feature == 'exon' else ''
            lines.append("\t".join([
                row.chrom, "test", feature, str(row.start + 1), str(row.end),
                ".", row.strand, ".", attrs + extra
            ]))
    return lines


@pytest.fixture
def gtf_file(tmp_path, gene_table):
    path = tmp_path / "genes.gtf"
    path.write_text("\n".join(gtf_lines(gene_table)) + "\n")
    return path


@pytest.fixture
def count_files(tmp_path, simulated_counts):
    """One <sample>.counts.tsv per sample."""
    out = tmp_path / "counts"
    out.mkdir()
    paths = []
    for sample in simulated_counts.columns:
        path = out / f"{sample}.counts.tsv"
        simulated_counts[sample].rename("count").rename_axis("gene_id").to_csv(path, sep="\t")
        paths.append(path)
    return paths


def narrowpeak_gz(peaks):
    """Gzipped narrowPeak bytes for (chrom, start, end) tuples."""
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb") as gz:
        for i, (chrom, start, end) in enumerate(peaks):
            line = f"{chrom}\t{start}\t{end}\tpeak{i}\t100\t.\t5.0\t10.0\t8.0\t{(end - start) // 2}\n"
            gz.write(line.encode())
    return buf.getvalue()


class FakeResponse:
    def __init__(self, content=b"", status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    """Stands in for requests.Session; serves bytes keyed by URL suffix."""

    def __init__(self, files):
        self.files = files
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        for suffix, content in self.files.items():
            if url.endswith(suffix):
                return FakeResponse(content)
        return FakeResponse(status_code=404)


@pytest.fixture
def tss_peaks(gene_table):
    """One peak on the TSS of every fetal-up gene."""
    peaks = []
    for row in gene_table.iloc[:N_UP].itertuples():
        tss = row.start if row.strand == '+' else row.end - 1
        peaks.append((row.chrom, tss - 100, tss + 100))
    return peaks


@pytest.fixture
def peak_session(tss_peaks):
    """Fetal brain peaks on up-gene promoters, no overlapping peaks elsewhere."""
    far_away = [("chr2", 1000, 2000), ("chr2", 50000, 51000)]
    return FakeSession({
        "E081-H3K4me3.narrowPeak.gz": narrowpeak_gz(tss_peaks),
        "E073-H3K4me3.narrowPeak.gz": narrowpeak_gz(far_away),
        "E066-H3K4me3.narrowPeak.gz": narrowpeak_gz(far_away),
    })


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def make_narrowpeak():
    return narrowpeak_gz
