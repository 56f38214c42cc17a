from dataclasses import replace
from functools import partial
from io import BytesIO
import asyncio
import logging
import os
from typing import Optional

from fastapi.concurrency import run_in_threadpool
import numpy as np
import uvicorn
import librosa
from detect_pitch import (
    ERROR_RESULT,
    FILE_PROFILE,
    NOTE_POLICIES,
    NOTE_POLICY_LOG,
    InputUnavailableError,
    ProgressReporter,
    analyze_samples,
    get_estimator,
    get_profile,
)
from live_capture import InvalidStateError, LiveCaptureBuffer, save_recording
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

SERVICE_NAME = "Pitch Detector API"
SERVICE_VERSION = "1.0.0"

NOTE_POLICY = os.environ.get("NOTE_POLICY", NOTE_POLICY_LOG)
if NOTE_POLICY not in NOTE_POLICIES:
    raise ValueError(f"NOTE_POLICY must be one of {sorted(NOTE_POLICIES)}, got {NOTE_POLICY!r}")
RECORDINGS_DIR = os.environ.get("RECORDINGS_DIR") or None
MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", 100*1024*1024))

ALLOWED_TYPES = ['audio/wav', 'audio/wave', 'audio/x-wav', 'audio/aac', 'audio/mpeg', 'audio/mp3',
                 'audio/flac', 'audio/x-flac', 'audio/ogg']

# Create FastAPI instance
app = FastAPI(
    title=SERVICE_NAME,
    description="Single-note pitch estimation for recorded files and live captures",
    version=SERVICE_VERSION
)

# Add CORS middleware to allow the mobile frontend to connect
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify your frontend domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

live_capture = LiveCaptureBuffer(note_policy=NOTE_POLICY,
                                 persist=partial(save_recording, directory=RECORDINGS_DIR))


def _resolve_profile(profile: str, algorithm: Optional[str]):
    try:
        chosen = get_profile(profile)
        if algorithm:
            get_estimator(algorithm)
            chosen = replace(chosen, algorithm=algorithm)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return chosen


def _progress_logger(name):
    """Progress values are marshalled back onto the event loop before logging."""
    loop = asyncio.get_running_loop()

    def sink(value):
        logger.debug("%s: %d%%", name, value)

    return ProgressReporter(sink, dispatch=loop.call_soon_threadsafe)


def _decode_and_analyze(data, profile, progress):
    try:
        audio, sr = librosa.load(BytesIO(data), sr=None, mono=False)
    except Exception as e:
        logger.warning("Failed to decode upload: %s", e)
        progress.finish()
        return ERROR_RESULT, None
    channels = 1 if audio.ndim == 1 else audio.shape[0]
    result = analyze_samples(audio, sr, channel_count=channels, profile=profile,
                             note_policy=NOTE_POLICY, progress=progress)
    return result, {"sample_rate": sr, "channels": channels, "samples": int(audio.shape[-1])}


@app.get("/")
async def root():
    """Health check endpoint"""
    return {"message": f"{SERVICE_NAME} is running"}

@app.get("/health")
async def health_check():
    """Detailed health check"""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "note_policy": NOTE_POLICY,
        "capture_state": live_capture.state.value,
    }

@app.post("/analyze")
async def analyze_audio_file(
    file: UploadFile = File(...),
    profile: str = FILE_PROFILE.name,
    algorithm: Optional[str] = None,
    debug: bool = False
):
    """
    Estimate the pitch of an uploaded audio file.

    Args:
        file: Audio file (WAV, MP3, etc.)
        profile: Analysis profile name ("file", "live" or "clip")
        algorithm: Optional estimator override ("yin" or "autocorrelation")
        debug: Whether to include the analysis summary in the response

    Returns:
        JSON with the note name and mean frequency in Hz
    """

    # Validate file type
    if file.content_type not in ALLOWED_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type: {file.content_type}. Supported types: {ALLOWED_TYPES}"
        )
    chosen = _resolve_profile(profile, algorithm)

    data = await file.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(413, "File too large")
    logger.info("upload filename=%r, content_type=%r, size=%d bytes", file.filename, file.content_type, len(data))

    result, decoded = await run_in_threadpool(
        _decode_and_analyze, data, chosen, _progress_logger(file.filename))

    response = result.to_dict()
    response["file_info"] = {
        "filename": file.filename,
        "content_type": file.content_type,
        **(decoded or {}),
    }
    if debug:
        response["analysis_summary"] = {
            "profile": chosen.name,
            "algorithm": chosen.algorithm,
            "note_policy": NOTE_POLICY,
            "duration_seconds": decoded["samples"] / decoded["sample_rate"] if decoded else 0.0,
        }
    return JSONResponse(content=response)

@app.post("/analyze-raw")
async def analyze_raw_audio(
    sample_rate: int = 44100,
    channels: int = 1,
    profile: str = FILE_PROFILE.name,
    algorithm: Optional[str] = None,
    audio_data: UploadFile = File(...)
):
    """
    Analyze raw audio data (for recorded audio from the mobile app).

    Args:
        audio_data: Raw 16-bit little-endian PCM, channels interleaved
        sample_rate: Sample rate of the audio data
        channels: Number of interleaved channels

    Returns:
        JSON with the note name and mean frequency in Hz
    """
    chosen = _resolve_profile(profile, algorithm)

    content = await audio_data.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(413, "File too large")
    if len(content) % 2:
        raise HTTPException(400, "16-bit PCM payload has an odd number of bytes")

    # Convert bytes to numpy array and normalize to [-1, 1]
    audio = np.frombuffer(content, dtype='<i2').astype(np.float32) / 32768.0

    result = await run_in_threadpool(
        analyze_samples, audio, sample_rate, channels, True, chosen, NOTE_POLICY,
        _progress_logger("analyze-raw"))
    return JSONResponse(content=result.to_dict())

@app.post("/listen/start")
async def start_listening(sample_rate: int = 44100):
    """Begin a live capture; chunks are pushed to /listen/chunk."""
    try:
        live_capture.start(sample_rate)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InputUnavailableError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": live_capture.state.value, "sample_rate": sample_rate}

@app.post("/listen/chunk")
async def push_samples(audio_data: UploadFile = File(...)):
    """Append float32 little-endian mono samples to the active capture."""
    content = await audio_data.read()
    if len(content) % 4:
        raise HTTPException(400, "float32 payload length must be a multiple of 4 bytes")
    samples = np.frombuffer(content, dtype='<f4')
    if not live_capture.on_samples_available(samples):
        raise HTTPException(status_code=409, detail="No mic recording in progress")
    return {"accepted": int(samples.size)}

@app.post("/listen/stop")
async def stop_listening():
    """Stop the live capture and return its aggregate pitch."""
    try:
        outcome = await run_in_threadpool(live_capture.stop)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return JSONResponse(content=outcome.to_dict())

if __name__ == "__main__":
    # Get port from environment variable or default to 8000
    port = int(os.environ.get("PORT", 8000))

    # Run the server
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
