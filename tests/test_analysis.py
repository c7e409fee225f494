import math

from songforge.analysis import fades_out, parse_duration, parse_silences, rms_windows

STDERR = """
Input #0, mp3, from 'a.mp3':
  Duration: 00:02:10.50, start: 0.025057, bitrate: 128 kb/s
[silencedetect @ 0x1] silence_start: 61.2
[silencedetect @ 0x1] silence_end: 63.4 | silence_duration: 2.2
[silencedetect @ 0x1] silence_start: 128.9
"""


def test_parse_duration():
    assert parse_duration(STDERR) == 130.5
    assert parse_duration("nothing here") == 0.0


def test_parse_silences_with_open_trailing_silence():
    out = parse_silences(STDERR, 130.5)
    assert len(out) == 2
    assert (out[0].start, round(out[0].duration, 2), out[0].final) == (61.2, 2.2, False)
    assert out[1].start == 128.9
    assert out[1].final
    assert round(out[1].duration, 2) == 1.6


def test_silence_ending_at_the_end_is_final():
    text = "silence_start: 10\nsilence_end: 12 | silence_duration: 2\n"
    [s] = parse_silences(text, 12.02)
    assert s.final


def test_rms_windows():
    rate = 1000
    loud = [16384] * 100
    quiet = [0] * 100
    out = rms_windows(loud + quiet, rate, window=0.1)
    assert len(out) == 2
    assert math.isclose(out[0], 0.5)
    assert out[1] == 0.0


def test_fades_out():
    assert fades_out([0.5 - i * 0.04 for i in range(12)])
    assert not fades_out([0.1 + i * 0.04 for i in range(12)])
    assert not fades_out([0.3, 0.1, 0.3, 0.1, 0.3, 0.1, 0.3, 0.1, 0.3, 0.1])
    assert not fades_out([0.2])
