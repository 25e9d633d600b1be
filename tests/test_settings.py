import json

from config.settings import (
    DEFAULT_MIRRORS,
    MIN_SPLIT_SECONDS,
    PipelineSettings,
    build_settings,
    load_settings,
    validate_config,
)


def test_defaults_match_published_limits():
    settings = PipelineSettings()

    assert settings.mirrors == DEFAULT_MIRRORS
    assert settings.min_split_seconds == MIN_SPLIT_SECONDS == 60
    assert settings.mirror_timeout_sec == 15.0
    assert settings.target_quality == "720p"
    assert settings.enable_mirror_fallback is True


def test_validate_config_accepts_partial_config():
    assert validate_config({"retention_hours": 12, "verify_part_count": True}) == []


def test_validate_config_reports_each_problem():
    errors = validate_config(
        {
            "mirrors": ["ftp://nope"],
            "min_split_seconds": 0,
            "enable_mirror_fallback": "yes",
            "container_ext": "",
            "min_source_bytes": -1,
        }
    )

    assert "mirrors[0] must be an http(s) URL" in errors
    assert "min_split_seconds must be a positive number" in errors
    assert "enable_mirror_fallback must be true or false" in errors
    assert "container_ext must be a non-empty string" in errors
    assert "min_source_bytes must be a non-negative integer" in errors


def test_validate_config_rejects_non_object():
    assert validate_config(["a"]) == ["config must be a JSON object"]


def test_build_settings_normalizes_values():
    settings = build_settings(
        {
            "mirrors": ["https://one.example/", "https://two.example"],
            "container_ext": ".MKV",
            "min_split_seconds": 90.0,
            "custom_flag": 1,
        }
    )

    assert settings.mirrors == ("https://one.example", "https://two.example")
    assert settings.container_ext == "mkv"
    assert settings.min_split_seconds == 90
    assert settings.extra == {"custom_flag": 1}


def test_load_settings_reads_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"retention_hours": 2, "target_quality": "1080p"}))

    settings = load_settings(str(path))

    assert settings.retention_hours == 2
    assert settings.target_quality == "1080p"


def test_load_settings_falls_back_on_missing_or_invalid(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"min_split_seconds": -5}))

    assert load_settings(str(tmp_path / "missing.json")) == PipelineSettings()
    assert load_settings(str(broken)) == PipelineSettings()
    assert load_settings(str(invalid)) == PipelineSettings()
    assert load_settings(None) == PipelineSettings()
