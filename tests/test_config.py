"""
Configuration loading and validation.
"""

import pytest

from tapverif.config import ConfigError, Standard, build_config, load_config, override_section


def test_defaults():
    config = build_config()
    assert config.protocol.standard == Standard.IEEE_1149_1
    assert config.protocol.code_of("BYPASS") == 0xF
    assert config.protocol.code_of("idcode") == 0x1
    assert config.protocol.register_length("DEBUG") == 65
    assert config.timing.clock_period_ns == 100.0
    assert not config.injection.enabled


def test_yaml_profile(tmp_path):
    path = tmp_path / "profile.yaml"
    path.write_text(
        "protocol:\n"
        "  ir_width: 5\n"
        "  strictness: strict\n"
        "  instructions:\n"
        "    idcode: {code: 1, register: idcode}\n"
        "timing:\n"
        "  clock_period_ns: 40\n"
        "injection:\n"
        "  enabled: true\n"
        "  rate: 5\n"
        "  kinds: [bit_flip]\n"
    )
    config = load_config(path)
    assert config.protocol.ir_width == 5
    assert config.protocol.code_of("BYPASS") == 0x1F
    assert set(config.protocol.instructions) == {"IDCODE", "BYPASS"}
    assert config.timing.clock_period_ns == 40.0
    assert config.injection.enabled and config.injection.rate == 5.0


def test_environment_overrides_yaml(tmp_path, monkeypatch):
    path = tmp_path / "profile.yaml"
    path.write_text("timing:\n  clock_period_ns: 80\n  min_setup_ns: 12\n")
    monkeypatch.setenv("TAPVERIF_TIMING__CLOCK_PERIOD_NS", "50")

    config = load_config(path)
    assert config.timing.clock_period_ns == 50.0
    # Sibling keys from the profile survive the override
    assert config.timing.min_setup_ns == 12.0


def test_missing_file():
    with pytest.raises(ConfigError, match="not found"):
        load_config("/nonexistent/tapverif.yaml")


def test_bad_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("timing: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path)


def test_top_level_must_be_a_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(path)


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path).protocol.ir_width == 4


@pytest.mark.parametrize("raw", [
    {"protocol": {"ir_width": 40}},                                         # wider than max_ir_width
    {"protocol": {"instructions": {"WIDE": {"code": 0x1F, "register": "bypass"}}}},
    {"protocol": {"instructions": {"USER1": {"code": 0x6, "register": "user"}}}},  # no length
    {"protocol": {"end_state": "NOWHERE"}},
    {"protocol": {"pin_count": 7}},
    {"injection": {"rate": 150}},
    {"injection": {"enabled": True, "kinds": []}},
    {"injection": {"kinds": ["meltdown"]}},
    {"timing": {"max_clock_to_out_ns": 80, "max_propagation_ns": 60}},
    {"timing": {"clock_period_ns": 15}},                                    # setup + hold > period
    {"timing": {"clock_period_ns": 0}},
    {"scheduler": {"max_concurrent": 0}},
    {"surprise": 1},
])
def test_invalid_values_are_config_errors(raw):
    with pytest.raises(ConfigError):
        build_config(raw)


def test_section_override_is_validated():
    config = build_config({"injection": {"seed": 4}})
    updated = override_section(config, "injection", enabled=True, rate=30.0)
    assert updated.injection.enabled and updated.injection.rate == 30.0
    assert updated.injection.seed == 4
    assert not config.injection.enabled     # the original is untouched

    with pytest.raises(ConfigError):
        override_section(config, "injection", rate=150.0)
    with pytest.raises(ConfigError):
        override_section(config, "injection", rate=-1.0)
