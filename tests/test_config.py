"""Tests for option loading."""
import pytest

from tfxref.config import (
    DetectorOptions,
    LinkerOptions,
    detector_options_from_config,
    linker_options_from_config,
    load_config,
)


class TestDefaults:
    """Test option defaults."""

    def test_detector_defaults(self):
        options = DetectorOptions()
        assert options.min_confidence == 40
        assert options.max_flows == 100
        assert all(options.enabled_patterns.values())
        assert options.is_enabled("direct_output")

    def test_linker_defaults(self):
        options = LinkerOptions()
        assert options.min_confidence == 50
        assert options.max_edges_per_operation == 5

    def test_patterns_not_shared(self):
        a, b = DetectorOptions(), DetectorOptions()
        a.enabled_patterns["inferred"] = False
        assert b.is_enabled("inferred")


class TestLoadConfig:
    """Test reading tfxref.toml."""

    def test_missing_file(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_broken_file(self, tmp_path):
        (tmp_path / "tfxref.toml").write_text("[detector\nmin_confidence = ")
        with pytest.raises(ValueError):
            load_config(tmp_path)

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.toml"
        path.write_text("[detector]\nmax_flows = 7\n")
        assert load_config(config_path=path) == {"detector": {"max_flows": 7}}

    def test_sections_mapped(self, tmp_path):
        (tmp_path / "tfxref.toml").write_text(
            "[detector]\n"
            "min_confidence = 65\n"
            "debug = true\n"
            'disabled_patterns = ["artifact_transfer", "not_a_pattern"]\n'
            "colour = \"blue\"\n"
            "\n"
            "[linker]\n"
            "min_confidence = 70\n"
            "fuzzy_path_matching = false\n"
            "unknown = 1\n"
        )
        data = load_config(tmp_path)

        detector = detector_options_from_config(data)
        assert detector.min_confidence == 65
        assert detector.debug is True
        assert not detector.is_enabled("artifact_transfer")
        assert detector.is_enabled("direct_output")
        assert "not_a_pattern" not in detector.enabled_patterns

        linker = linker_options_from_config(data)
        assert linker.min_confidence == 70
        assert linker.fuzzy_path_matching is False
        assert linker.max_edges_per_operation == 5

    def test_enabled_patterns_table(self):
        data = {"detector": {"enabled_patterns": {"output_to_env": False}}}
        assert not detector_options_from_config(data).is_enabled("output_to_env")

    def test_non_table_section_ignored(self):
        assert detector_options_from_config({"detector": "nope"}) == DetectorOptions()
