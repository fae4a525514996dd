"""Tests for the Track and Prompt value types"""
import dataclasses

import pytest

from models import MAX_PROMPTS, Prompt, Track


def test_identity_is_trimmed_and_case_sensitive():
    a = Track(title="Strobe ", artist=" deadmau5")
    b = Track(title="Strobe", artist="deadmau5", bpm=128)
    c = Track(title="strobe", artist="deadmau5")

    assert a.same_track(b)
    assert not a.same_track(c)
    assert not a.same_track(None)
    assert Track().identity == ("", "")


def test_with_prompts_keeps_first_ten():
    prompts = [Prompt(text=f"p{i}", number=i) for i in range(1, 13)]

    track = Track(title="Strobe").with_prompts(prompts)

    assert len(track.prompts) == MAX_PROMPTS
    assert track.prompts[0] == "p1"
    assert track.prompts[-1] == "p10"
    assert track.without_prompts().prompts == ()


def test_track_is_immutable():
    track = Track(title="Strobe")
    with pytest.raises(dataclasses.FrozenInstanceError):
        track.title = "Other"


def test_parameters_default_to_zero():
    assert Track(bpm=128, energy=0.5).parameters() == {"bpm": 128.0, "energy": 0.5, "danceability": 0.0}


def test_string_and_dict_forms():
    track = Track(title="Strobe", artist="deadmau5", source="audd").with_prompts(["a"])

    assert str(track) == "deadmau5 - Strobe"
    data = track.to_dict()
    assert data["title"] == "Strobe"
    assert data["prompts"] == ["a"]
    assert data["source"] == "audd"
