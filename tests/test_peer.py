"""
Tests for peer.py — command-line argument handling.
"""

import argparse

import pytest

from peermeet.config import MAX_FRAME_SIZE
from peermeet.peer import chunk_size_arg, main
from peermeet.protocol import max_chunk_size


class TestChunkSizeArg:
    def test_accepts_positive_sizes(self):
        assert chunk_size_arg("1") == 1
        assert chunk_size_arg("16384") == 16384

    def test_accepts_largest_frame_safe_size(self):
        largest = max_chunk_size(MAX_FRAME_SIZE)
        assert chunk_size_arg(str(largest)) == largest

    @pytest.mark.parametrize("value", ["0", "-5", "abc", "1.5"])
    def test_rejects_invalid(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            chunk_size_arg(value)

    def test_rejects_size_that_cannot_fit_a_frame(self):
        with pytest.raises(argparse.ArgumentTypeError):
            chunk_size_arg(str(max_chunk_size(MAX_FRAME_SIZE) + 1))


@pytest.mark.parametrize("value", ["0", "-1", "400000"])
def test_bad_chunk_size_is_a_usage_error(value, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--name", "Ada", "--cli", "--chunk-size", value])
    assert exc.value.code == 2
    assert "--chunk-size" in capsys.readouterr().err
