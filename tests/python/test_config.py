"""
Tests for Configuration
=======================

Validation of the config dataclasses and the job-parameter string parsers.
"""

from datetime import date

import pytest

import gamefit as gf
from gamefit.config import (
    DateRange,
    DaysRange,
    parse_shard_intercept_map,
    parse_shard_sections_map,
    resolve_range,
)


class TestOptimizerConfig:
    """Optimizer settings are validated on construction."""

    def test_defaults(self):
        config = gf.OptimizerConfig()
        assert config.optimizer_type == gf.OptimizerType.LBFGS
        assert config.regularization_type == gf.RegularizationType.L2
        assert config.l2_weight == config.regularization_weight
        assert config.l1_weight == 0.0

    def test_strings_are_accepted(self):
        config = gf.OptimizerConfig(optimizer_type="TRON", regularization_type="l2")
        assert config.optimizer_type == gf.OptimizerType.TRON

    def test_elastic_net_split(self):
        config = gf.OptimizerConfig(regularization_type="elastic_net", regularization_weight=2.0, elastic_net_alpha=0.25)
        assert config.l1_weight == pytest.approx(0.5)
        assert config.l2_weight == pytest.approx(1.5)

    @pytest.mark.parametrize("kwargs", [
        {"max_iterations": 0},
        {"tolerance": 0.0},
        {"regularization_weight": -1.0},
        {"optimizer_type": "newton"},
        {"regularization_type": "l3"},
        {"regularization_type": "elastic_net", "elastic_net_alpha": 1.0},
        {"optimizer_type": "tron", "regularization_type": "l1"},
        {"optimizer_type": "tron", "regularization_type": "elastic_net"},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(gf.ConfigurationError):
            gf.OptimizerConfig(**kwargs)


class TestCoordinateConfigs:
    """Fixed- and random-effect coordinate settings."""

    def test_variance_from_string(self):
        config = gf.FixedEffectCoordinateConfig(variance_computation="SIMPLE")
        assert config.variance_computation == gf.VarianceComputationType.SIMPLE

    def test_unknown_variance(self):
        with pytest.raises(gf.ConfigurationError):
            gf.FixedEffectCoordinateConfig(variance_computation="full")

    def test_entity_override(self):
        special = gf.OptimizerConfig(max_iterations=3)
        config = gf.RandomEffectCoordinateConfig("userId", entity_optimizers={"u1": special})
        assert config.optimizer_for("u1") is special
        assert config.optimizer_for("u2") is config.optimizer

    @pytest.mark.parametrize("kwargs", [
        {"random_effect_type": ""},
        {"random_effect_type": "userId", "active_data_upper_bound": 0},
    ])
    def test_invalid_random_effect(self, kwargs):
        with pytest.raises(gf.ConfigurationError):
            gf.RandomEffectCoordinateConfig(**kwargs)


class TestFeatureIndexingConfig:
    """Indexing job settings."""

    def test_requires_output_dir(self):
        with pytest.raises(gf.ConfigurationError, match="output_dir"):
            gf.FeatureIndexingConfig(output_dir="")

    def test_output_dir_must_not_be_a_file(self, tmp_path):
        path = tmp_path / "file"
        path.write_text("x")
        with pytest.raises(gf.ConfigurationError, match="not a directory"):
            gf.FeatureIndexingConfig(output_dir=str(path))

    def test_partition_num(self, tmp_path):
        with pytest.raises(gf.ConfigurationError):
            gf.FeatureIndexingConfig(output_dir=str(tmp_path), partition_num=0)

    def test_field_names_type_from_string(self, tmp_path):
        config = gf.FeatureIndexingConfig(output_dir=str(tmp_path), field_names_type="response_prediction")
        assert config.field_names.response == "response"

    def test_intercept_override(self, tmp_path):
        config = gf.FeatureIndexingConfig(output_dir=str(tmp_path), shard_intercepts={"item": False})
        assert config.intercept_for("user")
        assert not config.intercept_for("item")


class TestFieldNamesType:

    def test_training_example(self):
        assert gf.FieldNamesType.from_name("training_example").field_names.response == "label"

    def test_unknown(self):
        with pytest.raises(gf.ConfigurationError, match="field name type"):
            gf.FieldNamesType.from_name("avro")


class TestStringParsers:
    """Shard maps given as command-line strings."""

    def test_shard_sections(self):
        parsed = parse_shard_sections_map("userShard:features, userFeatures|itemShard:itemFeatures|bare")
        assert parsed == {
            "userShard": {"features", "userFeatures"},
            "itemShard": {"itemFeatures"},
            "bare": set(),
        }

    @pytest.mark.parametrize("text", ["", "a:b:c", ":features"])
    def test_shard_sections_malformed(self, text):
        with pytest.raises(gf.ConfigurationError):
            parse_shard_sections_map(text)

    def test_shard_intercepts(self):
        assert parse_shard_intercept_map("userShard:true|itemShard:False|bare") == {
            "userShard": True, "itemShard": False, "bare": True,
        }

    @pytest.mark.parametrize("text", ["", "a:yes", "a:true:false"])
    def test_shard_intercepts_malformed(self, text):
        with pytest.raises(gf.ConfigurationError):
            parse_shard_intercept_map(text)


class TestRanges:
    """Date and days-ago ranges."""

    def test_date_range(self):
        r = DateRange.from_string("20150501-20150531")
        assert r.start == date(2015, 5, 1)
        assert r.days == 31
        assert list(r.dates())[-1] == date(2015, 5, 31)

    @pytest.mark.parametrize("text", ["20150501", "2015-05-01-2015-05-31", "20150531-20150501", "2015050x-20150531"])
    def test_date_range_invalid(self, text):
        with pytest.raises(gf.ConfigurationError):
            DateRange.from_string(text)

    def test_days_range(self):
        r = DaysRange.from_string("90-1").to_date_range(today=date(2020, 3, 31))
        assert r.start == date(2020, 1, 1)
        assert r.end == date(2020, 3, 30)

    @pytest.mark.parametrize("text", ["1-90", "a-b", "90"])
    def test_days_range_invalid(self, text):
        with pytest.raises(gf.ConfigurationError):
            DaysRange.from_string(text)

    def test_resolve_range(self):
        days = DaysRange(2, 1)
        dates = DateRange(date(2020, 1, 1), date(2020, 1, 2))

        assert resolve_range(dates, None) is dates
        assert resolve_range(None, days, today=date(2020, 1, 3)) == dates
        assert resolve_range(None, None) is None
        with pytest.raises(gf.ConfigurationError, match="not both"):
            resolve_range(dates, days)
