import numpy as np
import pytest
import soundfile as sf

from detect_pitch import (
    CLIP_PROFILE,
    ERROR_RESULT,
    FILE_PROFILE,
    LIVE_PROFILE,
    NOTE_POLICY_TABLE,
    NO_PITCH,
    AggregateResult,
    InputUnavailableError,
    PitchAggregator,
    ProgressReporter,
    SampleBuffer,
    analyze_audio,
    analyze_file,
    analyze_samples,
    compute_rms,
    count_frames,
    detect_pitch_autocorrelation,
    detect_pitch_yin,
    downmix,
    frame_audio,
    get_estimator,
    get_profile,
    hann_window,
    is_silent,
    parabolic_interp,
    read_audio,
)

SR = 44100


# ─── Framing, gate, window ──────────────────────────────────────────────────

@pytest.mark.parametrize("length,frame,hop,cap,expected", [
    (10000, 2048, 1024, None, 8),
    (10000, 2048, 4096, None, 2),
    (2048, 2048, 512, None, 1),
    (2047, 2048, 512, None, 0),
    (0, 2048, 512, None, 0),
    (44100, 2048, 1024, 10, 10),
    (44100, 2048, 1024, 0, 0),
])
def test_frame_count_matches_formula(length, frame, hop, cap, expected):
    samples = np.zeros(length, dtype=np.float32)
    frames = list(frame_audio(samples, frame, hop, cap))
    assert len(frames) == expected == count_frames(length, frame, hop, cap)
    assert all(len(f.samples) == frame for f in frames)
    assert [f.offset for f in frames] == [i * hop for i in range(expected)]


def test_frames_are_views_of_the_buffer():
    samples = np.arange(100, dtype=np.float32)
    first = next(frame_audio(samples, 10, 5))
    assert np.shares_memory(first.samples, samples)


def test_degenerate_framing_yields_nothing():
    samples = np.ones(100, dtype=np.float32)
    assert list(frame_audio(samples, 10, 0)) == []
    assert list(frame_audio(samples, 0, 10)) == []


def test_rms_and_silence_gate():
    assert compute_rms(np.array([1.0, -1.0, 1.0, -1.0])) == pytest.approx(1.0)
    assert compute_rms(np.array([])) == 0.0
    assert is_silent(np.full(64, 0.001, dtype=np.float32), 0.005)
    assert not is_silent(np.full(64, 0.01, dtype=np.float32), 0.005)


def test_hann_window_coefficients():
    np.testing.assert_allclose(hann_window(np.ones(5)), [0.0, 0.5, 1.0, 0.5, 0.0], atol=1e-12)
    n = 8
    i = np.arange(n)
    expected = 0.5 * (1 - np.cos(2 * np.pi * i / (n - 1)))
    np.testing.assert_allclose(hann_window(np.ones(n)), expected, atol=1e-12)


def test_hann_window_short_frames_are_identity():
    assert hann_window(np.array([0.7])).tolist() == pytest.approx([0.7])
    assert len(hann_window(np.array([]))) == 0


# ─── Estimators ─────────────────────────────────────────────────────────────

@pytest.mark.parametrize("freq", [220.0, 330.0, 440.0])
def test_autocorrelation_sine_within_one_percent(sine, freq):
    frame = hann_window(sine(freq, seconds=0.1)[:2048])
    pitch = detect_pitch_autocorrelation(frame, SR)
    assert pitch == pytest.approx(freq, rel=0.01)


@pytest.mark.parametrize("freq", [82.41, 220.0, 440.0, 880.0, 1400.0])
def test_yin_sine_within_one_percent(sine, freq):
    frame = sine(freq, seconds=0.1)[:2048]
    pitch = detect_pitch_yin(frame, SR)
    assert pitch == pytest.approx(freq, rel=0.01)


def test_autocorrelation_rejects_frames_shorter_than_lowest_period(sine):
    # 50 Hz needs 882 lags at 44.1 kHz
    assert detect_pitch_autocorrelation(sine(220.0)[:800], SR) is None


def test_autocorrelation_rejects_without_positive_peak():
    assert detect_pitch_autocorrelation(np.zeros(2048), SR) is None
    assert detect_pitch_autocorrelation(np.zeros(1), SR) is None


def test_yin_rejects_aperiodic_and_tiny_frames():
    rng = np.random.default_rng(7)
    assert detect_pitch_yin(rng.standard_normal(2048), SR) is None
    assert detect_pitch_yin(np.array([0.1, 0.2, 0.3]), SR) is None


def test_parabolic_interp():
    assert parabolic_interp([1.0, 0.0, 1.0], 1) == pytest.approx(1.0)
    assert parabolic_interp([2.0, 0.0, 1.0], 1) == pytest.approx(7.0 / 6.0)
    # boundaries and flat curves are returned unrefined
    assert parabolic_interp([0.0, 1.0, 2.0], 0) == 0.0
    assert parabolic_interp([0.0, 1.0, 2.0], 2) == 2.0
    assert parabolic_interp([1.0, 1.0, 1.0], 1) == 1.0


def test_estimator_registry():
    assert get_estimator("yin") is detect_pitch_yin
    assert get_estimator("autocorrelation") is detect_pitch_autocorrelation
    with pytest.raises(ValueError):
        get_estimator("fft")
    with pytest.raises(ValueError):
        get_profile("studio")


# ─── Aggregation ────────────────────────────────────────────────────────────

def test_aggregator_filters_band_and_averages():
    agg = PitchAggregator(80.0, 1500.0)
    for f in (None, 40.0, 200.0, 220.0, 2000.0, 240.0):
        agg.add(f)
    assert agg.pitches == [200.0, 220.0, 240.0]
    assert agg.result() == pytest.approx(220.0)


def test_aggregator_cap_and_empty_result():
    agg = PitchAggregator(50.0, 1000.0, max_estimates=2)
    assert agg.result() == NO_PITCH
    assert agg.add(100.0) and agg.add(200.0)
    assert agg.full
    assert not agg.add(300.0)
    assert agg.result() == pytest.approx(150.0)


# ─── Buffers and input ──────────────────────────────────────────────────────

def test_sample_buffer_is_immutable_and_validated():
    buf = SampleBuffer([0.0, 0.5, -0.5], 8000)
    assert buf.samples.dtype == np.float32
    assert len(buf) == 3
    assert buf.duration == pytest.approx(3 / 8000)
    with pytest.raises(ValueError):
        buf.samples[0] = 1.0
    with pytest.raises(InputUnavailableError):
        SampleBuffer([0.0, np.nan], 8000)
    with pytest.raises(InputUnavailableError):
        SampleBuffer([0.0], 0)


def test_downmix_planar_and_interleaved():
    np.testing.assert_allclose(downmix([[1.0, 1.0], [3.0, 3.0]], 2), [2.0, 2.0])
    np.testing.assert_allclose(downmix([1.0, 3.0, 1.0, 3.0], 2, interleaved=True), [2.0, 2.0])
    np.testing.assert_allclose(downmix([0.1, 0.2]), [0.1, 0.2])
    with pytest.raises(InputUnavailableError):
        downmix([1.0, 2.0], 0)
    with pytest.raises(InputUnavailableError):
        downmix([1.0, 2.0, 3.0], 2, interleaved=True)


def test_read_audio_downmixes_stereo(tmp_path, sine):
    tone = sine(220.0, seconds=0.5)
    path = tmp_path / "stereo.wav"
    sf.write(path, np.stack([tone, tone], axis=1), SR)
    buf = read_audio(str(path))
    assert buf.sample_rate == SR
    assert len(buf) == len(tone)
    np.testing.assert_allclose(buf.samples, tone, atol=1e-3)


# ─── Full pipeline ──────────────────────────────────────────────────────────

def test_end_to_end_220hz_is_a(sine):
    buf = SampleBuffer(sine(220.0, seconds=3.0), SR)
    result = analyze_audio(buf)
    assert result.frequency == pytest.approx(220.0, abs=2.0)
    assert result.note == "A"


def test_live_and_clip_profiles(sine):
    buf = SampleBuffer(sine(330.0, seconds=3.0), SR)
    live = analyze_audio(buf, LIVE_PROFILE)
    assert live.frequency == pytest.approx(330.0, rel=0.01)
    assert live.note == "E"
    clip = analyze_audio(buf, CLIP_PROFILE, note_policy=NOTE_POLICY_TABLE)
    assert clip.frequency == pytest.approx(330.0, rel=0.01)
    assert clip.note == "E"


def test_clip_profile_needs_audio_past_the_skip(sine):
    buf = SampleBuffer(sine(330.0, seconds=1.5), SR)
    assert analyze_audio(buf, CLIP_PROFILE, note_policy=NOTE_POLICY_TABLE) == AggregateResult(0.0, "Too low")


@pytest.mark.parametrize("profile", [FILE_PROFILE, LIVE_PROFILE])
def test_silent_buffers_have_no_pitch(profile):
    rng = np.random.default_rng(1)
    quiet = (0.0005 * rng.standard_normal(SR * 2)).astype(np.float32)
    for samples in (np.zeros(SR * 2, dtype=np.float32), quiet):
        result = analyze_audio(SampleBuffer(samples, SR), profile)
        assert result.frequency == 0.0
        assert result.note == "Too Low"


def test_out_of_band_tone_is_rejected(sine):
    # 60 Hz is below the file profile's 80 Hz floor
    result = analyze_audio(SampleBuffer(sine(60.0, seconds=2.0), SR))
    assert result == AggregateResult(0.0, "Too Low")


def test_analysis_is_idempotent(sine):
    buf = SampleBuffer(sine(196.0, seconds=2.0) + 0.1 * sine(392.0, seconds=2.0), SR)
    assert analyze_audio(buf) == analyze_audio(buf)
    assert analyze_audio(buf, LIVE_PROFILE) == analyze_audio(buf, LIVE_PROFILE)


def test_stereo_samples_are_downmixed(sine):
    tone = sine(440.0, seconds=2.0)
    result = analyze_samples(np.stack([tone, tone]), SR, channel_count=2)
    assert result.note == "A"
    assert result.frequency == pytest.approx(440.0, rel=0.01)


def test_unavailable_input_gives_error_sentinel(tmp_path):
    seen = []
    assert analyze_samples([0.1, 0.2], SR, channel_count=0, progress=seen.append) == ERROR_RESULT
    assert seen == [100]
    assert analyze_file(str(tmp_path / "missing.wav")) == ERROR_RESULT
    assert ERROR_RESULT.to_dict() == {"note": "Error", "frequency": 0.0}


@pytest.mark.parametrize("rate", [float("nan"), float("inf"), -float("inf"), None])
def test_non_finite_sample_rate_gives_error_sentinel(sine, rate):
    with pytest.raises(InputUnavailableError):
        SampleBuffer([0.0, 0.1], rate)
    assert analyze_samples(sine(440.0), rate) == ERROR_RESULT


# ─── Progress ───────────────────────────────────────────────────────────────

def test_progress_is_monotonic_and_completes(sine):
    seen = []
    analyze_audio(SampleBuffer(sine(220.0, seconds=1.0), SR), LIVE_PROFILE, progress=seen.append)
    assert seen[0] == 0
    assert seen[-1] == 100
    assert seen == sorted(seen)


def test_progress_completes_on_early_exit_and_empty_input(sine):
    seen = []
    # 30 estimates are reached well before the end of 15 s
    analyze_audio(SampleBuffer(sine(220.0, seconds=15.0), SR), progress=seen.append)
    assert seen[-1] == 100
    assert seen == sorted(seen)

    seen.clear()
    analyze_audio(SampleBuffer([], SR), progress=seen.append)
    assert seen == [0, 100]


def test_progress_reporter_clamps_and_dispatches():
    delivered = []
    dispatched = []

    def dispatch(sink, value):
        dispatched.append(value)
        sink(value)

    reporter = ProgressReporter(delivered.append, dispatch=dispatch)
    for value in (-5, 40, 30, 150):
        reporter.report(value)
    assert delivered == dispatched == [0, 40, 40, 100]
    assert reporter.last == 100
