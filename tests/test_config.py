"""Tests for pipeline configuration loading and validation."""

import json

import pytest
import yaml

from voomde.config import NormalizationConfig, PipelineConfig, load_config
from voomde.core.errors import ConfigurationError


class TestPipelineConfig:

    def test_defaults(self, pipeline_config):
        config = PipelineConfig.from_dict(
            {"design": pipeline_config["design"], "contrasts": pipeline_config["contrasts"]}
        )
        assert config.expression_cutoff == 3.0
        assert config.normalization == NormalizationConfig()
        assert config.voom_span == 0.5
        assert config.fdr_method == "BH"
        assert config.significance_threshold == 0.05
        assert config.reorder_metadata is False

    def test_full_mapping(self, pipeline_config):
        config = PipelineConfig.from_dict(pipeline_config)
        assert config.contrasts["A_CvsD"] == "groupA.C - groupA.D"
        assert config.normalization.logratio_trim == 0.3
        builder = config.design_builder()
        assert list(builder.covariates) == ["group"]

    def test_key_aliases(self, pipeline_config):
        raw = dict(pipeline_config)
        raw["design_formula"] = raw.pop("design")
        raw["contrast_spec"] = raw.pop("contrasts")
        config = PipelineConfig.from_dict(raw)
        assert config.design == pipeline_config["design"]
        assert config.contrasts == pipeline_config["contrasts"]

    def test_normalization_by_name(self, pipeline_config):
        raw = dict(pipeline_config, normalization="upperquartile")
        assert PipelineConfig.from_dict(raw).normalization.method == "upperquartile"

    def test_to_dict_round_trip(self, pipeline_config):
        config = PipelineConfig.from_dict(pipeline_config)
        assert PipelineConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize(
        "key, value",
        [
            ("expression_cutoff", -1.0),
            ("expression_cutoff", "3"),
            ("voom_span", 0.0),
            ("voom_span", 1.5),
            ("fdr_method", "bonferroni"),
            ("significance_threshold", 0.0),
            ("eb_proportion", 1.0),
            ("contrasts", {}),
            ("design", {"interactions": []}),
            ("group_factors", []),
        ],
    )
    def test_invalid_values(self, pipeline_config, key, value):
        raw = dict(pipeline_config)
        raw[key] = value
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_dict(raw)

    def test_invalid_trim(self, pipeline_config):
        raw = dict(pipeline_config, normalization={"method": "TMM", "logratio_trim": 0.5})
        with pytest.raises(ConfigurationError, match="logratio_trim"):
            PipelineConfig.from_dict(raw)

    def test_unknown_normalization_method(self, pipeline_config):
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_dict(dict(pipeline_config, normalization="quantile"))

    def test_unknown_key(self, pipeline_config):
        with pytest.raises(ConfigurationError, match="Unknown configuration keys"):
            PipelineConfig.from_dict(dict(pipeline_config, cpm_cutoff=2.0))

    def test_bad_covariate_kind(self, pipeline_config):
        raw = dict(pipeline_config, design={"covariates": {"group": {"kind": "ordinal"}}})
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_dict(raw)


class TestLoadConfig:

    def test_yaml(self, tmp_path, pipeline_config):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump(pipeline_config))
        assert load_config(path) == PipelineConfig.from_dict(pipeline_config)

    def test_json(self, tmp_path, pipeline_config):
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps(pipeline_config))
        assert load_config(str(path)).contrasts == pipeline_config["contrasts"]

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "analysis.toml"
        path.write_text("expression_cutoff = 3\n")
        with pytest.raises(ConfigurationError, match="Unsupported config format"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "analysis.yml"
        path.write_text("design: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(path)

    def test_top_level_list(self, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_empty_file_missing_design(self, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text("")
        with pytest.raises(ConfigurationError, match="covariates"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")
