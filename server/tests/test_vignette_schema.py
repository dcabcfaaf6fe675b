import json
import logging

import pytest
from pydantic import ValidationError

from convsim.schemas.vignette import Difficulty, Vignette
from convsim.services import vignette_loader

from conftest import vignette_data


def test_bundled_vignette_is_valid(med001):
    assert med001.title == "Medication Error Disclosure"
    assert [p.id for p in med001.phases] == [
        "preparation",
        "opening",
        "disclosure",
        "emotional_processing",
        "clinical_questions",
        "next_steps",
    ]
    assert set(med001.character.difficulty_variations) == set(Difficulty)
    assert med001.assessment_hooks.weights == {"empathy": 0.4, "clarity": 0.3, "accountability": 0.3}
    assert med001.phases[2].critical


def test_objectives_accept_plain_strings(vignette):
    processing = vignette.phases[3]
    assert processing.objectives[0].text == "Acknowledge their feelings"
    assert processing.objectives[0].keywords == []


def test_vignette_is_frozen(vignette):
    with pytest.raises(ValidationError):
        vignette.title = "Changed"


def test_duplicate_phase_ids_rejected():
    data = vignette_data()
    data["phases"][2]["id"] = "opening"
    with pytest.raises(ValidationError, match="Duplicate phase id"):
        Vignette.model_validate(data)


def test_branch_to_unknown_phase_rejected():
    data = vignette_data()
    data["phases"][2]["branch_points"]["defensive"]["next"] = "debrief"
    with pytest.raises(ValidationError, match="unknown phase"):
        Vignette.model_validate(data)


def test_backward_branch_rejected():
    data = vignette_data()
    data["phases"][2]["branch_points"]["defensive"]["next"] = "opening"
    with pytest.raises(ValidationError, match="must move forward"):
        Vignette.model_validate(data)


def test_reveal_of_unknown_stage_rejected():
    data = vignette_data()
    data["phases"][2]["reveals"] = ["Prognosis"]
    with pytest.raises(ValidationError, match="unknown stage"):
        Vignette.model_validate(data)


@pytest.mark.parametrize("duration", ["a few minutes", "", "until they are ready"])
def test_duration_without_minutes_rejected(duration):
    data = vignette_data()
    data["phases"][1]["duration"] = duration
    with pytest.raises(ValidationError, match="no minute count"):
        Vignette.model_validate(data)


def test_passing_score_above_excellence_rejected():
    data = vignette_data()
    data["passing_score"] = 0.9
    data["excellence_score"] = 0.8
    with pytest.raises(ValidationError):
        Vignette.model_validate(data)


def test_missing_difficulty_variation_rejected():
    data = vignette_data()
    del data["character"]["difficulty_variations"]["advanced"]
    with pytest.raises(ValidationError, match="advanced"):
        Vignette.model_validate(data)


def test_missing_variation_allowed_when_difficulty_not_offered():
    data = vignette_data()
    del data["character"]["difficulty_variations"]["advanced"]
    data["difficulties"] = ["beginner", "intermediate"]
    assert Vignette.model_validate(data).difficulties == [Difficulty.BEGINNER, Difficulty.INTERMEDIATE]


@pytest.mark.parametrize(
    "scale",
    [
        {"min": 0.6, "max": 0.4},
        {"min": 0.0, "max": 1.5},
        {"thresholds": {}},
        {"thresholds": {"calm": 0.0, "livid": 1.2}},
    ],
)
def test_bad_emotional_scale_rejected(scale):
    data = vignette_data()
    data["emotional_tracking"] = {"scale": scale}
    with pytest.raises(ValidationError):
        Vignette.model_validate(data)


def test_misspelled_branch_condition_warns(caplog):
    data = vignette_data()
    branches = data["phases"][2]["branch_points"]
    branches["defensve"] = branches.pop("defensive")
    with caplog.at_level(logging.WARNING, logger="convsim.schemas.vignette"):
        Vignette.model_validate(data)
    assert "did you mean 'defensive'" in caplog.text


def test_custom_branch_condition_does_not_warn(caplog):
    with caplog.at_level(logging.WARNING, logger="convsim.schemas.vignette"):
        Vignette.model_validate(vignette_data())
    assert "did you mean" not in caplog.text


def test_loader_reads_directory(tmp_path):
    (tmp_path / "test.json").write_text(json.dumps(vignette_data()))
    vignette_loader.clear_cache()
    try:
        vignettes = vignette_loader.load_vignettes(tmp_path)
        assert list(vignettes) == ["TEST-001"]
        assert vignette_loader.get_vignette("TEST-001") is vignettes["TEST-001"]
        assert vignette_loader.get_vignette("MISSING") is None
    finally:
        vignette_loader.clear_cache()


def test_loader_rejects_duplicate_ids(tmp_path):
    (tmp_path / "a.json").write_text(json.dumps(vignette_data()))
    (tmp_path / "b.json").write_text(json.dumps(vignette_data()))
    vignette_loader.clear_cache()
    with pytest.raises(ValueError, match="Duplicate vignette id"):
        vignette_loader.load_vignettes(tmp_path)
    vignette_loader.clear_cache()


def test_loader_propagates_invalid_vignette(tmp_path):
    data = vignette_data()
    data["phases"] = []
    (tmp_path / "bad.json").write_text(json.dumps(data))
    vignette_loader.clear_cache()
    with pytest.raises(ValidationError):
        vignette_loader.load_vignettes(tmp_path)
    vignette_loader.clear_cache()


def test_loader_missing_directory(tmp_path):
    vignette_loader.clear_cache()
    assert vignette_loader.load_vignettes(tmp_path / "nowhere") == {}
    vignette_loader.clear_cache()
