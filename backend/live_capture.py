import argparse
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import numpy as np
import soundfile as sf

from detect_pitch import (
    ERROR_RESULT,
    LIVE_PROFILE,
    NO_AUDIO_RESULT,
    NOTE_POLICY_LOG,
    AggregateResult,
    AnalysisProfile,
    InputUnavailableError,
    PitchError,
    SampleBuffer,
    analyze_audio,
)

logger = logging.getLogger(__name__)

RECORDING_FILENAME = 'recorded_audio.wav'
DEFAULT_SAMPLE_RATE = 44100
DEFAULT_BLOCK_SIZE = 2048

PersistFn = Callable[[np.ndarray, float], Optional[str]]


class InvalidStateError(PitchError, RuntimeError):
    """A capture lifecycle method was called out of order."""


class CaptureState(Enum):
    IDLE = 'idle'
    CAPTURING = 'capturing'
    DRAINING = 'draining'


@dataclass
class CaptureSession:
    sample_rate: float
    chunks: List[np.ndarray] = field(default_factory=list)
    is_active: bool = True

    @property
    def sample_count(self):
        return sum(len(c) for c in self.chunks)


@dataclass(frozen=True)
class CaptureResult:
    result: AggregateResult
    file_path: Optional[str] = None

    def to_dict(self):
        return {**self.result.to_dict(), "file_path": self.file_path or ""}


#* ─── Persistence ─────────────────────────────────────────────────────────────
def save_recording(samples, sample_rate, directory=None, filename=RECORDING_FILENAME):
    """Write a mono float WAV, replacing the previous one. Returns the path or None."""
    path = os.path.join(directory or tempfile.gettempdir(), filename)
    try:
        sf.write(path, np.asarray(samples, dtype=np.float32), int(round(sample_rate)), subtype='FLOAT')
    except (RuntimeError, OSError) as e:
        logger.warning("Failed to write WAV file %s: %s", path, e)
        return None
    logger.info("WAV saved to: %s", path)
    return path


#* ─── Live Capture Buffer ─────────────────────────────────────────────────────
# one capture per process
_registry_lock = threading.Lock()
_active_capture = None


class LiveCaptureBuffer:
    """
    Start/accumulate/stop lifecycle for streaming input.

    A single producer appends chunks while CAPTURING. stop() takes the chunk
    list away from the session, so the analysis pass never shares it with the
    producer.
    """

    def __init__(self, profile: AnalysisProfile = LIVE_PROFILE,
                 note_policy: str = NOTE_POLICY_LOG,
                 persist: Optional[PersistFn] = save_recording):
        self.profile = profile
        self.note_policy = note_policy
        self.persist = persist
        self._lock = threading.Lock()
        self._state = CaptureState.IDLE
        self._session: Optional[CaptureSession] = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def is_capturing(self) -> bool:
        return self._state is CaptureState.CAPTURING

    def start(self, sample_rate=DEFAULT_SAMPLE_RATE):
        global _active_capture
        if sample_rate is None or not np.isfinite(sample_rate) or sample_rate <= 0:
            raise InputUnavailableError(f"Invalid input sample rate: {sample_rate}")
        with _registry_lock, self._lock:
            if self._state is not CaptureState.IDLE:
                raise InvalidStateError(f"Capture already active ({self._state.value})")
            if _active_capture is not None and _active_capture is not self:
                raise InvalidStateError("Another capture session is active in this process")
            _active_capture = self
            self._session = CaptureSession(float(sample_rate))
            self._state = CaptureState.CAPTURING
        logger.info("🎙️ Capture started at %.0f Hz", sample_rate)

    def on_samples_available(self, chunk) -> bool:
        """Append a chunk; returns False if it arrived outside a capture."""
        data = np.array(chunk, dtype=np.float32).reshape(-1)
        with self._lock:
            if self._state is not CaptureState.CAPTURING:
                logger.debug("Dropping %d samples received while %s", len(data), self._state.value)
                return False
            self._session.chunks.append(data)
        return True

    def stop(self) -> CaptureResult:
        with self._lock:
            if self._state is CaptureState.IDLE:
                raise InvalidStateError("No capture in progress")
            if self._state is CaptureState.DRAINING:
                raise InvalidStateError("Capture is already stopping")
            session, self._session = self._session, None
            session.is_active = False
            self._state = CaptureState.DRAINING
        logger.info("🛑 Capture stopped (%d samples)", session.sample_count)

        try:
            return self._drain(session)
        finally:
            self._release()

    def _drain(self, session):
        if not session.chunks:
            return CaptureResult(NO_AUDIO_RESULT)

        samples = np.concatenate(session.chunks)
        session.chunks = []
        if samples.size == 0:
            return CaptureResult(NO_AUDIO_RESULT)

        try:
            buffer = SampleBuffer(samples, session.sample_rate)
        except InputUnavailableError as exc:
            logger.warning("Captured audio unusable: %s", exc)
            return CaptureResult(ERROR_RESULT)
        result = analyze_audio(buffer, self.profile, self.note_policy)

        file_path = None
        if self.persist is not None:
            try:
                file_path = self.persist(buffer.samples, buffer.sample_rate)
            except Exception:
                logger.exception("Persisting the capture failed")
        return CaptureResult(result, file_path)

    def _release(self):
        global _active_capture
        with _registry_lock, self._lock:
            self._state = CaptureState.IDLE
            if _active_capture is self:
                _active_capture = None


#* ─── Microphone Source ───────────────────────────────────────────────────────
class MicrophoneSource:
    """Feeds a LiveCaptureBuffer from a sounddevice input stream."""

    def __init__(self, capture: LiveCaptureBuffer, sample_rate=DEFAULT_SAMPLE_RATE,
                 block_size=DEFAULT_BLOCK_SIZE, channels=1, device=None):
        self.capture = capture
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.channels = channels
        self.device = device
        self._stream = None

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.warning("Input stream status: %s", status)
        mono = indata[:, 0] if indata.shape[1] == 1 else indata.mean(axis=1)
        self.capture.on_samples_available(mono)

    def start(self):
        import sounddevice as sd

        stream = sd.InputStream(samplerate=self.sample_rate, blocksize=self.block_size,
                                channels=self.channels, dtype='float32',
                                device=self.device, callback=self._callback)
        try:
            self.capture.start(stream.samplerate)
        except Exception:
            stream.close()
            raise
        try:
            stream.start()
        except Exception:
            stream.close()
            self.capture.stop()
            raise
        self._stream = stream

    def stop(self) -> CaptureResult:
        stream, self._stream = self._stream, None
        try:
            if stream is not None:
                try:
                    stream.stop()
                finally:
                    stream.close()
        finally:
            result = self.capture.stop()
        return result


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Record from the microphone and estimate the pitch")
    parser.add_argument("--seconds", type=float, default=3.0)
    parser.add_argument("--device", default=None)
    parser.add_argument("--sample-rate", type=int, default=DEFAULT_SAMPLE_RATE)
    parser.add_argument("--no-save", action="store_true", help="do not write the recording to disk")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    device = int(args.device) if args.device and args.device.isdigit() else args.device
    capture = LiveCaptureBuffer(persist=None if args.no_save else save_recording)
    mic = MicrophoneSource(capture, sample_rate=args.sample_rate, device=device)

    print(f"🎙️ Listening for {args.seconds:.1f}s... play a single note.")
    mic.start()
    try:
        time.sleep(args.seconds)
    finally:
        outcome = mic.stop()
    print(f"🎵 {outcome.result.note} ({outcome.result.frequency:.2f} Hz)")
    if outcome.file_path:
        print(f"🎧 Recording: {outcome.file_path}")
