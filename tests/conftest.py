"""Shared pytest configuration and fixtures for the pitch backend."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Modules live flat under backend/
BACKEND_DIR = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))


def make_sine(freq, seconds=1.0, sample_rate=44100, amplitude=0.5):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


@pytest.fixture
def sine():
    return make_sine


@pytest.fixture(autouse=True)
def _release_live_captures():
    """Leave no capture registered between tests."""
    yield
    import live_capture

    active = live_capture._active_capture
    if active is not None and active.is_capturing:
        active.persist = None
        active.stop()
