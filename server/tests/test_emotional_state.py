import pytest

from convsim.schemas.vignette import Difficulty, Vignette
from convsim.services.emotional_state import (
    EmotionalStateTracker,
    Modifier,
    detects_clear_explanation,
    response_intensity,
)

from conftest import vignette_data


def _with_modifiers(modifiers: dict) -> Vignette:
    data = vignette_data()
    data["emotional_tracking"] = {"modifiers": modifiers}
    return Vignette.model_validate(data)


@pytest.mark.parametrize(
    "difficulty, expected",
    [
        (Difficulty.BEGINNER, 0.3),
        (Difficulty.INTERMEDIATE, 0.5),
        (Difficulty.ADVANCED, 0.7),
    ],
)
def test_initial_intensity_follows_difficulty(vignette, clock, difficulty, expected):
    tracker = EmotionalStateTracker(vignette, difficulty, clock=clock)
    assert tracker.value == expected
    assert len(tracker.history()) == 1
    assert tracker.history()[0].reason == "Initial state"


def test_threshold_label_matches_cut_points(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    assert tracker.threshold == "upset"
    assert tracker.threshold_for(0.1) == "concerned"
    assert tracker.threshold_for(0.7) == "angry"
    assert tracker.threshold_for(0.95) == "hostile"


def test_repeated_escalation_is_clamped_to_scale(clock):
    tracker = EmotionalStateTracker(
        _with_modifiers({"shouting": 0.5}), Difficulty.INTERMEDIATE, clock=clock
    )
    for _ in range(10):
        tracker.apply_modifier("shouting")
        assert 0.0 <= tracker.value <= 1.0
        assert tracker.threshold == tracker.threshold_for(tracker.value)
    assert tracker.value == 1.0
    assert tracker.threshold == "hostile"


def test_repeated_deescalation_is_clamped_at_zero(clock):
    tracker = EmotionalStateTracker(
        _with_modifiers({"comfort": -0.5}), Difficulty.INTERMEDIATE, clock=clock
    )
    for _ in range(5):
        tracker.apply_modifier("comfort")
    assert tracker.value == 0.0


def test_advanced_dampens_deescalation(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.ADVANCED, clock=clock)
    applied = tracker.apply_modifier(Modifier.HONEST_APOLOGY)
    assert applied.value == pytest.approx(-0.14)
    assert tracker.value == pytest.approx(0.56)


def test_beginner_dampens_escalation(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.BEGINNER, clock=clock)
    applied = tracker.apply_modifier(Modifier.DEFENSIVENESS)
    assert applied.value == pytest.approx(0.24)
    assert tracker.value == pytest.approx(0.54)


def test_unknown_modifier_applies_zero(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    applied = tracker.apply_modifier("notConfigured")
    assert applied.value == 0.0
    assert tracker.value == 0.5
    assert len(tracker.history()) == 2


def test_analyze_message_applies_every_detected_modifier(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    applied = tracker.analyze_message("I understand. I made a mistake with the adenosine.")
    names = [m.name for m in applied]
    assert names == ["empathyShown", "medicalJargon", "honestApology"]
    assert tracker.value == pytest.approx(0.5 - 0.1 + 0.15 - 0.2)
    assert [m.name for m in tracker.modifier_history()] == names


def test_defensive_message_escalates(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    tracker.analyze_message("It's not my fault, I was following protocol.")
    assert tracker.value == pytest.approx(0.8)
    assert tracker.has_crossed_threshold("angry")
    assert not tracker.has_crossed_threshold("hostile")


def test_clear_explanation_needs_structure_and_plain_language():
    plain = "first we gave him a medicine, then his heart rhythm changed and we treated it."
    assert detects_clear_explanation(plain)
    assert not detects_clear_explanation("first, the ventricular rhythm changed after the dose we gave him.")
    assert not detects_clear_explanation("first, then.")


def test_trajectory(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    assert tracker.get_emotional_trajectory() == "stable"
    for _ in range(4):
        tracker.apply_modifier(Modifier.DEFENSIVENESS)
    assert tracker.get_emotional_trajectory() == "worsening"

    tracker.reset(0.9)
    for _ in range(4):
        tracker.apply_modifier(Modifier.HONEST_APOLOGY)
    assert tracker.get_emotional_trajectory() == "improving"


def test_trajectory_with_short_window(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    tracker.apply_modifier(Modifier.DEFENSIVENESS)
    assert tracker.get_emotional_trajectory(window=1) == "stable"
    assert tracker.get_emotional_trajectory(window=2) == "worsening"


@pytest.mark.parametrize(
    "value, expected",
    [(0.0, "calm"), (0.39, "calm"), (0.4, "moderate"), (0.69, "moderate"), (0.7, "intense"), (1.0, "intense")],
)
def test_response_intensity(value, expected):
    assert response_intensity(value) == expected


def test_checkpoint_restore_round_trip(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    saved = tracker.checkpoint()
    tracker.apply_modifier(Modifier.DEFENSIVENESS)
    tracker.apply_delta(0.1, "branch:defensive")
    tracker.restore(saved)
    assert tracker.value == 0.5
    assert tracker.threshold == "upset"
    assert len(tracker.history()) == 1
    assert tracker.modifier_history() == []


def test_restore_state_from_snapshot(vignette, clock):
    source = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    source.apply_modifier(Modifier.MEDICAL_JARGON)
    target = EmotionalStateTracker(vignette, Difficulty.INTERMEDIATE, clock=clock)
    target.restore_state(source.state())
    assert target.value == source.value
    assert target.history() == source.history()


def test_reset_with_explicit_value(vignette, clock):
    tracker = EmotionalStateTracker(vignette, Difficulty.BEGINNER, clock=clock)
    tracker.apply_modifier(Modifier.DEFENSIVENESS)
    tracker.reset(0.65)
    assert tracker.value == 0.65
    assert tracker.threshold == "upset"
    assert tracker.history()[0].reason == "State reset"
