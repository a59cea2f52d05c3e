from __future__ import annotations

from pathlib import Path

import pytest

from services.assessment.profiles import BUILTIN_PROFILES, load_profile_file, load_profiles
from services.assessment.prompt_builder import build_report_review, render_output_format
from services.assessment.result_schema import RD_ASSESSMENT


def test_builtin_limits_match_cost_profiles() -> None:
    profiles = load_profiles(path="")
    assert profiles["rd_assessment"].max_requests == 3
    assert profiles["report_review"].max_requests == 5
    assert profiles["transcript_analysis"].max_requests == 5
    assert profiles["general"].max_requests == 10
    assert all(profile.window_ms == 60_000 for profile in profiles.values())


def test_env_overrides_per_type(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ASSESS_RD_ASSESSMENT_MAX_REQUESTS", "7")
    monkeypatch.setenv("ASSESS_RD_ASSESSMENT_WINDOW_MS", "30000")
    monkeypatch.setenv("ASSESS_RD_ASSESSMENT_MODEL", "gpt-4o")
    monkeypatch.setenv("ASSESS_RD_ASSESSMENT_TEMPERATURE", "0.1")
    monkeypatch.setenv("ASSESS_REPORT_REVIEW_MAX_TOKENS", "not-a-number")
    profiles = load_profiles(path="")
    rd = profiles["rd_assessment"]
    assert (rd.max_requests, rd.window_ms, rd.model, rd.temperature) == (7, 30_000, "gpt-4o", 0.1)
    assert profiles["report_review"].max_tokens == 1800


def test_yaml_overrides_and_new_types(tmp_path: Path) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text(
        "report_review:\n"
        "  temperature: 0.2\n"
        "  max_requests: 8\n"
        "  mystery: 1\n"
        "grant_check:\n"
        "  schema_name: rd_assessment\n"
        "  max_requests: 2\n",
        encoding="utf-8",
    )
    profiles = load_profiles(path=str(path))
    assert profiles["report_review"].temperature == 0.2
    assert profiles["report_review"].max_requests == 8
    grant = profiles["grant_check"]
    assert grant.schema_name == "rd_assessment"
    assert grant.required_fields == BUILTIN_PROFILES["rd_assessment"].required_fields
    assert grant.max_requests == 2
    assert grant.prompt_builder is not None


def test_env_wins_over_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text("general:\n  max_requests: 4\n", encoding="utf-8")
    monkeypatch.setenv("ASSESS_GENERAL_MAX_REQUESTS", "6")
    assert load_profiles(path=str(path))["general"].max_requests == 6


def test_invalid_profile_keeps_builtin(tmp_path: Path) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text("general:\n  max_requests: 0\nbroken:\n  schema_name: unknown_schema\n", encoding="utf-8")
    profiles = load_profiles(path=str(path))
    assert profiles["general"] == BUILTIN_PROFILES["general"]
    assert "broken" not in profiles


def test_missing_or_malformed_file_is_ignored(tmp_path: Path) -> None:
    assert load_profile_file(tmp_path / "absent.yaml") == {}
    bad = tmp_path / "bad.yaml"
    bad.write_text("key: [unclosed", encoding="utf-8")
    assert load_profile_file(bad) == {}


def test_missing_fields_and_subject() -> None:
    review = BUILTIN_PROFILES["report_review"]
    assert review.missing_fields({"reportContent": "x", "fileName": "a.pdf"}) == []
    assert review.missing_fields({"reportContent": "  "}) == ["reportContent", "reportTitle or fileName"]
    assert review.subject({"fileName": "a.pdf"}) == "a.pdf"
    assert review.subject({"reportTitle": "Claim", "fileName": "a.pdf"}) == "Claim"


def test_prompt_lists_schema_fields_and_input() -> None:
    prompt = build_report_review({"reportTitle": "FY24", "reportContent": "Body text", "reportType": "technical"})
    assert '"checklistFeedback"' in prompt.system
    assert "payeCap" in prompt.system
    assert "Report title: FY24" in prompt.user
    assert "Report type: technical" in prompt.user
    assert "Body text" in prompt.user


def test_output_format_mentions_every_field() -> None:
    text = render_output_format(RD_ASSESSMENT)
    for name in RD_ASSESSMENT.field_names():
        assert f'"{name}"' in text
