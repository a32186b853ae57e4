"""Configuration management for the fetal vs. adult brain analysis."""

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class AnalysisDefaults(BaseModel):
    """Default analysis parameters."""

    group_column: str = "age_group"
    reference_group: str = "adult"
    covariates: List[str] = Field(default_factory=list)
    min_mean_log2: float = Field(default=1.0, ge=0.0)  # mean log2(count + 1) filter
    fdr_threshold: float = Field(default=0.05, ge=0.0, le=1.0)
    log2fc_threshold: float = Field(default=0.0, ge=0.0)
    fetal_max_age: float = 0.0  # ages are in years, prenatal samples are negative
    adult_min_age: float = 18.0
    promoter_upstream: int = Field(default=2000, ge=0)
    promoter_downstream: int = Field(default=200, ge=0)
    pca_components: int = Field(default=5, ge=2)


class CountingConfig(BaseModel):
    """Read counting settings."""

    engine: str = Field(default="pysam", pattern="^(pysam|rsubread)$")
    min_mapq: int = Field(default=10, ge=0)
    strand_specific: bool = False
    paired_end: bool = False
    threads: int = Field(default=1, ge=1)


class PathConfig(BaseModel):
    """Path configurations."""

    user_home: Path = Field(default_factory=lambda: Path.home() / ".fetal_brain_de")
    output_dir: Path = Field(default_factory=lambda: Path("results"))
    counts_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None
    gtf: Optional[Path] = None
    metadata: Optional[Path] = None
    chromsizes: Optional[Path] = None

    def __init__(self, **data):
        super().__init__(**data)
        # Set derived paths if not provided
        if self.counts_dir is None:
            self.counts_dir = self.output_dir / "counts"
        if self.cache_dir is None:
            self.cache_dir = self.user_home / "cache"

    def create_directories(self):
        """Create all necessary directories."""
        for path in [self.user_home, self.output_dir, self.counts_dir, self.cache_dir]:
            path.mkdir(parents=True, exist_ok=True)


class EpigenomicsConfig(BaseModel):
    """Roadmap Epigenomics peak sets used for the promoter cross-reference."""

    url_template: str = (
        "https://egg2.wustl.edu/roadmap/data/byFileType/peaks/consolidated/"
        "narrowPeak/{epigenome}-{mark}.narrowPeak.gz"
    )
    mark: str = "H3K4me3"
    categories: Dict[str, str] = Field(default_factory=lambda: {
        "fetal_brain": "E081",
        "adult_brain": "E073",
        "adult_liver": "E066",
    })
    timeout: float = Field(default=60.0, gt=0)


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(env_prefix="FBDE_", env_nested_delimiter="__")

    defaults: AnalysisDefaults = Field(default_factory=AnalysisDefaults)
    counting: CountingConfig = Field(default_factory=CountingConfig)
    paths: PathConfig = Field(default_factory=PathConfig)
    epigenomics: EpigenomicsConfig = Field(default_factory=EpigenomicsConfig)

    analysis_name: str = "Fetal vs adult brain"
    skip_epigenomics: bool = False
    debug: bool = False

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        """Save configuration to YAML file."""
        data = self.model_dump()
        # Convert Path objects to strings
        def convert_paths(obj):
            if isinstance(obj, dict):
                return {k: convert_paths(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [convert_paths(item) for item in obj]
            elif isinstance(obj, Path):
                return str(obj)
            return obj

        data = convert_paths(data)

        with open(path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def initialize(self):
        """Initialize the configuration (create directories)."""
        self.paths.create_directories()


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        # Try to load from default location
        default_config_path = Path.home() / ".fetal_brain_de" / "config.yaml"
        if default_config_path.exists():
            _config = Config.from_yaml(default_config_path)
        else:
            _config = Config()
    return _config


def set_config(config: Config):
    """Set the global configuration instance."""
    global _config
    _config = config


# Example config.yaml template
CONFIG_TEMPLATE = """
# Fetal vs adult brain analysis configuration

defaults:
  group_column: age_group
  reference_group: adult       # log2 fold changes are fetal relative to this level
  covariates: []               # e.g. [sex, rin]
  min_mean_log2: 1.0           # keep genes with mean log2(count + 1) above this
  fdr_threshold: 0.05
  log2fc_threshold: 0.0
  fetal_max_age: 0.0           # age (years) below which a sample is fetal
  adult_min_age: 18.0
  promoter_upstream: 2000
  promoter_downstream: 200
  pca_components: 5

counting:
  engine: pysam                # pysam or rsubread
  min_mapq: 10
  strand_specific: false
  paired_end: false
  threads: 1

paths:
  output_dir: results
  gtf: reference/genes.gtf.gz
  metadata: data/sample_metadata.tsv
  # counts_dir: results/counts
  # cache_dir: ~/.fetal_brain_de/cache

epigenomics:
  mark: H3K4me3
  categories:
    fetal_brain: E081
    adult_brain: E073
    adult_liver: E066

skip_epigenomics: false
"""


if __name__ == "__main__":
    # Example usage
    config = get_config()
    print(f"Output dir: {config.paths.output_dir}")
    print(f"FDR threshold: {config.defaults.fdr_threshold}")
    print(f"Peak categories: {config.epigenomics.categories}")
