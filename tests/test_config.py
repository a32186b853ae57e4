"""Unit tests for configuration."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError
from fetal_brain_de.config import CONFIG_TEMPLATE, Config, PathConfig, get_config, set_config


class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        """Test the fetal vs adult defaults."""
        config = Config()

        assert config.defaults.reference_group == "adult"
        assert config.defaults.fdr_threshold == 0.05
        assert config.defaults.promoter_upstream == 2000
        assert config.defaults.promoter_downstream == 200
        assert config.counting.engine == "pysam"
        assert config.epigenomics.categories["fetal_brain"] == "E081"

    def test_derived_paths(self, tmp_path):
        """Test counts and cache directories follow their parents."""
        paths = PathConfig(user_home=tmp_path / "home", output_dir=tmp_path / "out")

        assert paths.counts_dir == tmp_path / "out" / "counts"
        assert paths.cache_dir == tmp_path / "home" / "cache"

    def test_create_directories(self, tmp_path):
        """Test initialize creates output, counts and cache directories."""
        config = Config(paths={'user_home': tmp_path / "home", 'output_dir': tmp_path / "out"})

        config.initialize()

        assert (tmp_path / "out" / "counts").is_dir()
        assert (tmp_path / "home" / "cache").is_dir()

    def test_yaml_round_trip(self, tmp_path):
        """Test saving and loading preserves settings."""
        config = Config(
            defaults={'covariates': ['sex', 'rin'], 'fdr_threshold': 0.1},
            paths={'output_dir': tmp_path / "out", 'gtf': tmp_path / "genes.gtf"},
            skip_epigenomics=True
        )
        path = tmp_path / "config.yaml"

        config.to_yaml(path)
        loaded = Config.from_yaml(path)

        assert loaded.defaults.covariates == ['sex', 'rin']
        assert loaded.defaults.fdr_threshold == 0.1
        assert loaded.paths.gtf == tmp_path / "genes.gtf"
        assert loaded.skip_epigenomics

    def test_template_loads(self, tmp_path):
        """Test the documented template is a valid configuration."""
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_TEMPLATE)

        config = Config.from_yaml(path)

        assert config.paths.gtf == Path("reference/genes.gtf.gz")
        assert set(config.epigenomics.categories) == {"fetal_brain", "adult_brain", "adult_liver"}

    def test_empty_yaml(self, tmp_path):
        """Test an empty file gives the defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert Config.from_yaml(path).defaults.min_mean_log2 == 1.0

    def test_environment_override(self, monkeypatch):
        """Test nested settings can come from the environment."""
        monkeypatch.setenv("FBDE_DEFAULTS__FDR_THRESHOLD", "0.01")
        monkeypatch.setenv("FBDE_SKIP_EPIGENOMICS", "true")

        config = Config()

        assert config.defaults.fdr_threshold == 0.01
        assert config.skip_epigenomics

    def test_invalid_values(self):
        """Test out-of-range settings are rejected."""
        with pytest.raises(ValidationError):
            Config(counting={'engine': 'htseq'})
        with pytest.raises(ValidationError):
            Config(defaults={'fdr_threshold': 2.0})

    def test_set_config(self):
        """Test the global configuration can be replaced."""
        config = Config(analysis_name="test run")

        set_config(config)

        assert get_config() is config
