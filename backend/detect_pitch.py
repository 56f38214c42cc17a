import argparse
import logging
import math
import threading
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Callable, Iterator, NamedTuple, Optional

import numpy as np
import soundfile as sf
from numba import njit
from scipy.signal import get_window

logger = logging.getLogger(__name__)

#* ─── Constants ────────────────────────────────────────────────────────────────
WINDOW_TYPE = 'hann'

AUTOCORR_MIN_FREQUENCY = 50.0    # longest period searched
AUTOCORR_MAX_FREQUENCY = 500.0   # shortest period searched

YIN_THRESHOLD = 0.15
YIN_EPSILON   = 1e-6

A4_FREQUENCY = 440.0
NOTE_NAMES = ['C', 'C#', 'D', 'D#', 'E', 'F',
              'F#', 'G', 'G#', 'A', 'A#', 'B']

# One octave, C4..B4
REFERENCE_NOTE_FREQUENCIES = {
    'C': 261.63, 'C#': 277.18, 'D': 293.66, 'D#': 311.13, 'E': 329.63,
    'F': 349.23, 'F#': 369.99, 'G': 392.00, 'G#': 415.30, 'A': 440.00,
    'A#': 466.16, 'B': 493.88,
}
TABLE_MIN_FREQUENCY = 20.0

NOTE_POLICY_LOG   = 'log'
NOTE_POLICY_TABLE = 'table'

NOTE_TOO_LOW       = 'Too Low'
NOTE_TOO_LOW_TABLE = 'Too low'
NOTE_ERROR         = 'Error'
NOTE_NO_AUDIO      = 'No audio'

NO_PITCH = 0.0


#* ─── Errors ──────────────────────────────────────────────────────────────────
class PitchError(Exception):
    """Base class for pitch pipeline failures."""


class InputUnavailableError(PitchError, ValueError):
    """Decoded or captured audio could not be turned into a usable buffer."""


#* ─── Data Model ──────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class AnalysisProfile:
    name: str
    algorithm: str
    frame_size: int = 2048
    hop_size: int = 1024
    silence_threshold: float = 0.01
    apply_window: bool = True
    min_frequency: float = 80.0
    max_frequency: float = 1500.0
    max_frames: Optional[int] = None
    max_estimates: Optional[int] = None
    max_duration: Optional[float] = None
    skip_seconds: float = 0.0


# Recorded files: sparse frames, YIN, stop after 30 usable estimates
FILE_PROFILE = AnalysisProfile(
    name='file',
    algorithm='yin',
    frame_size=2048,
    hop_size=4096,
    silence_threshold=0.01,
    apply_window=False,
    min_frequency=80.0,
    max_frequency=1500.0,
    max_estimates=30,
    max_duration=15.0,
)

# Microphone captures: overlapping frames from the head of the buffer
LIVE_PROFILE = AnalysisProfile(
    name='live',
    algorithm='autocorrelation',
    frame_size=2048,
    hop_size=1024,
    silence_threshold=0.005,
    apply_window=True,
    min_frequency=50.0,
    max_frequency=1000.0,
    max_frames=10,
)

# Short clips with a count-in: ignore the first two seconds
CLIP_PROFILE = AnalysisProfile(
    name='clip',
    algorithm='autocorrelation',
    frame_size=2048,
    hop_size=1024,
    silence_threshold=0.001,
    apply_window=True,
    min_frequency=50.0,
    max_frequency=1500.0,
    max_frames=5,
    skip_seconds=2.0,
)

PROFILES = {p.name: p for p in (FILE_PROFILE, LIVE_PROFILE, CLIP_PROFILE)}


def get_profile(name: str) -> AnalysisProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown analysis profile {name!r}; expected one of {sorted(PROFILES)}") from None


@dataclass(frozen=True, eq=False)
class SampleBuffer:
    """Mono float32 samples plus their rate. The array is made read-only."""
    samples: np.ndarray
    sample_rate: float

    def __post_init__(self):
        if self.sample_rate is None or not np.isfinite(self.sample_rate) or self.sample_rate <= 0:
            raise InputUnavailableError(f"Invalid sample rate: {self.sample_rate}")
        samples = np.array(self.samples, dtype=np.float32).reshape(-1)
        if not np.all(np.isfinite(samples)):
            raise InputUnavailableError("Audio contains non-finite samples")
        samples.setflags(write=False)
        object.__setattr__(self, 'samples', samples)
        object.__setattr__(self, 'sample_rate', float(self.sample_rate))

    def __len__(self):
        return len(self.samples)

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate


class Frame(NamedTuple):
    offset: int
    samples: np.ndarray


@dataclass(frozen=True)
class AggregateResult:
    frequency: float
    note: str

    def to_dict(self):
        return {"note": self.note, "frequency": float(self.frequency)}


ERROR_RESULT = AggregateResult(NO_PITCH, NOTE_ERROR)
NO_AUDIO_RESULT = AggregateResult(NO_PITCH, NOTE_NO_AUDIO)


#* ─── Read + Down-mix ─────────────────────────────────────────────────────────
def downmix(samples, channel_count=1, interleaved=False):
    """
    Average all channels into one.

    Planar input is shaped (channels, frames); interleaved input is a flat
    sequence of frames with channel_count values each.
    """
    if channel_count < 1:
        raise InputUnavailableError(f"Invalid channel count: {channel_count}")
    data = np.asarray(samples, dtype=np.float32)
    if channel_count == 1:
        if data.ndim > 1 and data.shape[0] != 1:
            raise InputUnavailableError(f"Expected one channel, got shape {data.shape}")
        return data.reshape(-1)
    if interleaved:
        if data.ndim != 1 or data.size % channel_count:
            raise InputUnavailableError(
                f"{data.size} interleaved samples do not divide into {channel_count} channels")
        return data.reshape(-1, channel_count).mean(axis=1, dtype=np.float32)
    if data.ndim != 2 or data.shape[0] != channel_count:
        raise InputUnavailableError(f"Expected {channel_count} planar channels, got shape {data.shape}")
    return data.mean(axis=0, dtype=np.float32)


def read_audio(path):
    try:
        audio, sr = sf.read(path, dtype='float32', always_2d=True)
    except (RuntimeError, OSError) as exc:
        raise InputUnavailableError(f"Failed to read audio {path!r}: {exc}") from exc
    # soundfile gives (frames, channels)
    return SampleBuffer(downmix(audio.T, audio.shape[1]), sr)


#* ─── Frame Audio ───────────────────────────────────────────────────────────
def count_frames(length, frame_size, hop_size, max_frames=None):
    if frame_size < 1 or hop_size < 1 or length < frame_size:
        return 0
    n = (length - frame_size) // hop_size + 1
    if max_frames is not None:
        n = min(n, max(0, max_frames))
    return n


def frame_audio(samples, frame_size, hop_size, max_frames=None) -> Iterator[Frame]:
    """Yield views of `samples`, frame i starting at i * hop_size."""
    if frame_size < 1 or hop_size < 1:
        logger.warning("Degenerate framing (frame=%s, hop=%s); no frames produced", frame_size, hop_size)
        return
    for i in range(count_frames(len(samples), frame_size, hop_size, max_frames)):
        start = i * hop_size
        yield Frame(start, samples[start:start + frame_size])


#* ─── Silence Gate ────────────────────────────────────────────────────────────
def compute_rms(frame):
    if len(frame) == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(frame, dtype=np.float64))))


def is_silent(frame, threshold):
    return compute_rms(frame) < threshold


#* ─── Window ──────────────────────────────────────────────────────────────────
@lru_cache(maxsize=8)
def _hann(n):
    # symmetric: 0.5 * (1 - cos(2*pi*i / (n-1)))
    win = get_window(WINDOW_TYPE, n, fftbins=False)
    win.setflags(write=False)
    return win


def hann_window(frame):
    frame = np.asarray(frame, dtype=np.float64)
    if len(frame) <= 1:
        return frame.copy()
    return frame * _hann(len(frame))


#* ─── Autocorrelation Pitch Picker ────────────────────────────────────────────
def detect_pitch_autocorrelation(frame, sample_rate,
                                 min_freq=AUTOCORR_MIN_FREQUENCY,
                                 max_freq=AUTOCORR_MAX_FREQUENCY):
    """
    Unnormalised autocorrelation; the strongest positive lag between the
    periods of max_freq and min_freq wins (first one on ties).
    """
    frame = np.asarray(frame, dtype=np.float64)
    n = len(frame)
    if n < 2:
        return None

    autocorr = np.correlate(frame, frame, mode='full')[n - 1:]

    min_lag = max(1, int(round(sample_rate / max_freq)))
    max_lag = int(round(sample_rate / min_freq))
    if max_lag >= len(autocorr) or min_lag >= max_lag:
        logger.debug("Autocorrelation: lag range [%d, %d) does not fit a %d-sample frame",
                     min_lag, max_lag, n)
        return None

    search_range = autocorr[min_lag:max_lag]
    best = int(np.argmax(search_range))
    if search_range[best] <= 0:
        return None
    return sample_rate / (min_lag + best)


#* ─── YIN Pitch Picker ────────────────────────────────────────────────────────
# JIT-compiled difference function for YIN
@njit
def _yin_diff(frame, max_tau):
    N = frame.shape[0]
    diff_func = np.zeros(max_tau)
    for tau in range(1, max_tau):
        s = 0.0
        for j in range(N - tau):
            d = frame[j] - frame[j + tau]
            s += d * d
        diff_func[tau] = s
    return diff_func


# JIT-compiled cumulative mean normalized difference function
@njit
def _yin_cmnd(diff_func):
    N = diff_func.shape[0]
    cmnd = np.ones(N)
    running_sum = 0.0
    for tau in range(1, N):
        running_sum += diff_func[tau]
        cmnd[tau] = diff_func[tau] / (running_sum / tau + YIN_EPSILON)
    return cmnd


def parabolic_interp(values, k):
    """Vertex of the parabola through values[k-1], values[k], values[k+1]."""
    if k <= 0 or k >= len(values) - 1:
        return float(k)
    x0, x1, x2 = values[k - 1], values[k], values[k + 1]
    denom = 2 * (2 * x1 - x2 - x0)
    if abs(denom) < 1e-6:
        return float(k)
    return k + (x2 - x0) / denom


def detect_pitch_yin(frame, sample_rate, threshold=YIN_THRESHOLD):
    frame = np.ascontiguousarray(frame, dtype=np.float64)
    max_tau = len(frame) // 2
    if max_tau < 2:
        return None

    cmnd = _yin_cmnd(_yin_diff(frame, max_tau))

    below = np.flatnonzero(cmnd[1:] < threshold)
    if below.size == 0:
        return None
    tau = int(below[0]) + 1
    # follow the dip down to its bottom
    while tau + 1 < max_tau and cmnd[tau + 1] < cmnd[tau]:
        tau += 1

    period = parabolic_interp(cmnd, tau)
    if period <= 0:
        return None
    logger.debug("YIN: period=%.2f, freq=%.1fHz, cmnd=%.3f", period, sample_rate / period, cmnd[tau])
    return sample_rate / period


PITCH_ESTIMATORS = {
    'autocorrelation': detect_pitch_autocorrelation,
    'yin': detect_pitch_yin,
}


def get_estimator(algorithm: str) -> Callable[[np.ndarray, float], Optional[float]]:
    try:
        return PITCH_ESTIMATORS[algorithm]
    except KeyError:
        raise ValueError(f"Unknown pitch algorithm {algorithm!r}; expected one of {sorted(PITCH_ESTIMATORS)}") from None


#* ─── Aggregation ─────────────────────────────────────────────────────────────
class PitchAggregator:
    """Keeps in-band estimates and averages them."""

    def __init__(self, min_frequency, max_frequency, max_estimates=None):
        self.min_frequency = min_frequency
        self.max_frequency = max_frequency
        self.max_estimates = max_estimates
        self.pitches = []

    def add(self, frequency):
        if frequency is None or self.full:
            return False
        if not self.min_frequency <= frequency <= self.max_frequency:
            return False
        self.pitches.append(float(frequency))
        return True

    @property
    def full(self):
        return self.max_estimates is not None and len(self.pitches) >= self.max_estimates

    def result(self):
        if not self.pitches:
            return NO_PITCH
        return float(np.mean(self.pitches))


#* ─── Note Mapping ────────────────────────────────────────────────────────────
def round_half_away(x):
    """Round to the nearest integer, halves away from zero (-0.5 -> -1)."""
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


def note_from_log_distance(freq):
    if freq <= 0:
        return NOTE_TOO_LOW
    midi = 69 + 12 * math.log2(freq / A4_FREQUENCY)
    return NOTE_NAMES[round_half_away(midi) % 12]


def note_from_table(freq):
    if freq <= TABLE_MIN_FREQUENCY:
        return NOTE_TOO_LOW_TABLE
    return min(REFERENCE_NOTE_FREQUENCIES.items(), key=lambda item: abs(item[1] - freq))[0]


NOTE_POLICIES = {
    NOTE_POLICY_LOG: note_from_log_distance,
    NOTE_POLICY_TABLE: note_from_table,
}


def frequency_to_note(freq, policy=NOTE_POLICY_LOG):
    try:
        mapper = NOTE_POLICIES[policy]
    except KeyError:
        raise ValueError(f"Unknown note policy {policy!r}; expected one of {sorted(NOTE_POLICIES)}") from None
    return mapper(freq)


#* ─── Progress ────────────────────────────────────────────────────────────────
class ProgressReporter:
    """
    Delivers integer progress (0-100) to a sink, one value at a time and never
    lower than the previous value.

    `dispatch`, when given, is called as dispatch(sink, value) and is expected
    to run the sink in the host's delivery context, e.g.
    loop.call_soon_threadsafe.
    """

    def __init__(self, sink, dispatch=None):
        self._sink = sink
        self._dispatch = dispatch
        self._lock = threading.Lock()
        self.last = None

    def report(self, value):
        value = max(0, min(100, int(value)))
        with self._lock:
            if self.last is not None and value < self.last:
                value = self.last
            self.last = value
            if self._dispatch is None:
                self._sink(value)
            else:
                self._dispatch(self._sink, value)

    def finish(self):
        self.report(100)


def _as_reporter(progress):
    if progress is None or isinstance(progress, ProgressReporter):
        return progress
    return ProgressReporter(progress)


#* ─── Main Analysis Function ──────────────────────────────────────────────────
def analyze_audio(buffer: SampleBuffer, profile: AnalysisProfile = FILE_PROFILE,
                  note_policy: str = NOTE_POLICY_LOG, progress=None) -> AggregateResult:
    """
    Run one analysis pass over `buffer` and reduce it to a single pitch.

    `progress` may be a ProgressReporter or a plain callable taking an int.
    """
    estimator = get_estimator(profile.algorithm)
    reporter = _as_reporter(progress)
    if reporter:
        reporter.report(0)

    sr = buffer.sample_rate
    start = int(sr * profile.skip_seconds)
    stop = None
    if profile.max_duration is not None:
        stop = start + int(sr * profile.max_duration)
    samples = buffer.samples[start:stop]

    total = count_frames(len(samples), profile.frame_size, profile.hop_size, profile.max_frames)
    aggregator = PitchAggregator(profile.min_frequency, profile.max_frequency, profile.max_estimates)
    silent = 0
    for i, frame in enumerate(frame_audio(samples, profile.frame_size, profile.hop_size, profile.max_frames)):
        if is_silent(frame.samples, profile.silence_threshold):
            silent += 1
        else:
            data = hann_window(frame.samples) if profile.apply_window else frame.samples
            pitch = estimator(data, sr)
            accepted = aggregator.add(pitch)
            logger.debug("frame @%d: pitch=%s accepted=%s", frame.offset, pitch, accepted)
        if reporter:
            reporter.report((i + 1) * 100 // total)
        if aggregator.full:
            break

    if reporter:
        reporter.finish()

    frequency = aggregator.result()
    note = frequency_to_note(frequency, note_policy)
    if aggregator.pitches:
        logger.info("Average pitch over %d frames (%s/%s): %.2f Hz -> %s",
                    len(aggregator.pitches), profile.name, profile.algorithm, frequency, note)
    else:
        logger.info("No valid pitches found (%d frames, %d silent)", total, silent)
    return AggregateResult(frequency, note)


def analyze_samples(samples, sample_rate, channel_count=1, interleaved=False,
                    profile=FILE_PROFILE, note_policy=NOTE_POLICY_LOG, progress=None):
    """Down-mix decoded samples and analyse them; bad input yields ERROR_RESULT."""
    reporter = _as_reporter(progress)
    try:
        buffer = SampleBuffer(downmix(samples, channel_count, interleaved), sample_rate)
    except InputUnavailableError as exc:
        logger.warning("Input unavailable: %s", exc)
        if reporter:
            reporter.finish()
        return ERROR_RESULT
    return analyze_audio(buffer, profile, note_policy, reporter)


def analyze_file(path, profile=FILE_PROFILE, note_policy=NOTE_POLICY_LOG, progress=None):
    reporter = _as_reporter(progress)
    try:
        buffer = read_audio(path)
    except InputUnavailableError as exc:
        logger.warning("Input unavailable: %s", exc)
        if reporter:
            reporter.finish()
        return ERROR_RESULT
    return analyze_audio(buffer, profile, note_policy, reporter)


#* ─── Command-line Analysis Function ───────────────────────────────────────────
def analyze_audio_cmdline(path, profile=FILE_PROFILE, note_policy=NOTE_POLICY_LOG):
    def show_progress(value):
        print(f"\r🔍 Analyzing... {value:3d}%", end="", flush=True)

    try:
        buffer = read_audio(path)
    except InputUnavailableError as e:
        print(f"✗ {e}")
        return ERROR_RESULT
    print(f"✓ Loaded audio file: {path}")
    print(f"Audio duration: {buffer.duration:.2f}s @ {buffer.sample_rate:.0f} Hz")

    result = analyze_audio(buffer, profile, note_policy, progress=show_progress)
    print()
    if result.frequency > 0:
        print(f"🎵 DETECTED: {result.note} ({result.frequency:.2f} Hz, {profile.algorithm})")
    else:
        print(f"➤ No pitch detected ({result.note})")
    return result


#* ─── Main Pipeline ─────────────────────────────────────────────────────────
if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Estimate the pitch of an audio file")
    parser.add_argument("path")
    parser.add_argument("--profile", choices=sorted(PROFILES), default=FILE_PROFILE.name)
    parser.add_argument("--algorithm", choices=sorted(PITCH_ESTIMATORS),
                        help="override the profile's estimator")
    parser.add_argument("--policy", choices=sorted(NOTE_POLICIES), default=NOTE_POLICY_LOG)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")

    chosen = get_profile(args.profile)
    if args.algorithm:
        chosen = replace(chosen, algorithm=args.algorithm)

    print("🎹 Pitch Detection - Command Line")
    result = analyze_audio_cmdline(args.path, chosen, args.policy)
    raise SystemExit(0 if result.note != NOTE_ERROR else 1)
