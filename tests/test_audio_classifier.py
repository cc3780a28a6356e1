"""Tests for track_import.audio.classifier."""

import pytest

from track_import.audio.classifier import file_extension, is_supported_audio, needs_transcode


class TestNeedsTranscode:
    @pytest.mark.parametrize("name", ["take1.wav", "Mix.WAV", "loop.aif", "Bounce.AIFF"])
    def test_uncompressed_formats_are_converted(self, name: str) -> None:
        assert needs_transcode(name) is True

    @pytest.mark.parametrize(
        "name", ["song.mp3", "demo.m4a", "a.aac", "b.flac", "c.ogg", "d.wma"]
    )
    def test_compressed_formats_stored_as_is(self, name: str) -> None:
        assert needs_transcode(name) is False

    def test_unknown_extension_not_converted(self) -> None:
        assert needs_transcode("notes.txt") is False
        assert needs_transcode("no_extension") is False

    def test_only_final_extension_counts(self) -> None:
        assert needs_transcode("song.wav.mp3") is False
        assert needs_transcode("song.mp3.wav") is True

    def test_deterministic(self) -> None:
        assert {needs_transcode("x.wav") for _ in range(5)} == {True}


class TestSupportedAudio:
    def test_extension_is_lowercased(self) -> None:
        assert file_extension("Track.MP3") == ".mp3"
        assert file_extension("README") == ""

    def test_supported(self) -> None:
        assert is_supported_audio("a.mp3")
        assert is_supported_audio("b.AIFF")
        assert not is_supported_audio("cover.jpg")
        assert not is_supported_audio("session.logicx")
