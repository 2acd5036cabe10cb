"""Conversion of captured or uploaded audio into 16 kHz mono 16-bit WAV."""

import base64
import binascii
import io
import logging
import struct
from math import gcd
from typing import Tuple

import numpy as np
import soundfile as sf
from scipy.signal import resample_poly

from .errors import DecodeError
from .models import EncodedAudio, RawCapture

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
BITS_PER_SAMPLE = 16
WAV_HEADER_SIZE = 44

# Conversion factor for s16 to float32
INT16_TO_FLOAT32 = 1.0 / 32768.0

_WAV_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


def decode_container(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode an audio container (WAV, FLAC, OGG...) to float samples.

    Args:
        data: Complete container bytes.

    Returns:
        Tuple of (samples shaped (frames, channels) as float32, sample rate).

    Raises:
        DecodeError: If the container is unrecognized, truncated or empty.
    """
    try:
        samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except (sf.SoundFileError, RuntimeError, ValueError) as e:
        raise DecodeError(f"Unsupported or malformed audio: {e}") from e

    if samples.shape[1] == 0 or sample_rate <= 0:
        raise DecodeError("Audio has no channels or an invalid sample rate")
    return samples, int(sample_rate)


def decode_pcm(raw: RawCapture) -> np.ndarray:
    """Decode interleaved signed 16-bit PCM from the capture device.

    Returns:
        Samples shaped (frames, channels) as float32.

    Raises:
        DecodeError: If the format is unsupported or the data ends mid-frame.
    """
    if raw.sample_format != "s16":
        raise DecodeError(f"Unsupported capture format: {raw.sample_format}")
    if raw.channels < 1:
        raise DecodeError("Capture has no channels")

    frame_bytes = 2 * raw.channels
    if len(raw.data) % frame_bytes:
        raise DecodeError(
            f"Truncated capture: {len(raw.data)} bytes is not a multiple of "
            f"{frame_bytes}-byte frames"
        )

    pcm = np.frombuffer(raw.data, dtype="<i2").astype(np.float32) * INT16_TO_FLOAT32
    return pcm.reshape(-1, raw.channels)


def mixdown(samples: np.ndarray) -> np.ndarray:
    """Average all channels sample-for-sample into one mono channel."""
    if samples.ndim == 1:
        return samples.astype(np.float32, copy=False)
    if samples.shape[1] == 1:
        return samples[:, 0].astype(np.float32, copy=False)
    return samples.mean(axis=1, dtype=np.float64).astype(np.float32)


def resampled_length(num_samples: int, source_rate: int, target_rate: int) -> int:
    """Number of output frames: ceil(duration * target_rate)."""
    return -(-num_samples * target_rate // source_rate)


def resample(
    samples: np.ndarray, source_rate: int, target_rate: int = TARGET_SAMPLE_RATE
) -> np.ndarray:
    """Resample mono audio with a polyphase anti-aliasing filter.

    The output always holds exactly ceil(len(samples) * target_rate / source_rate)
    samples.
    """
    if source_rate <= 0 or target_rate <= 0:
        raise ValueError("Sample rates must be positive")

    if source_rate == target_rate or samples.size == 0:
        return samples.astype(np.float32, copy=True)

    out_len = resampled_length(len(samples), source_rate, target_rate)

    g = gcd(target_rate, source_rate)
    up = target_rate // g
    down = source_rate // g
    resampled = resample_poly(samples.astype(np.float64), up, down)

    if len(resampled) > out_len:
        resampled = resampled[:out_len]
    elif len(resampled) < out_len:
        resampled = np.pad(resampled, (0, out_len - len(resampled)))
    return resampled.astype(np.float32)


def quantize(samples: np.ndarray) -> bytes:
    """Convert float samples to signed 16-bit little-endian PCM.

    Samples are clamped to [-1, 1]; negatives scale by 32768, positives by 32767.
    """
    clipped = np.clip(samples.astype(np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype("<i2").tobytes()


def build_wav(pcm: bytes, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """Wrap mono 16-bit PCM in a minimal 44-byte RIFF/WAVE header."""
    block_align = TARGET_CHANNELS * BITS_PER_SAMPLE // 8
    header = _WAV_HEADER.pack(
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,
        TARGET_CHANNELS,
        sample_rate,
        sample_rate * block_align,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        len(pcm),
    )
    return header + pcm


def _encode_mono(mono: np.ndarray, sample_rate: int) -> EncodedAudio:
    audio = resample(mono, sample_rate)
    wav = build_wav(quantize(audio))
    logger.debug(
        f"Encoded {len(mono)} samples at {sample_rate} Hz into "
        f"{len(audio)} samples at {TARGET_SAMPLE_RATE} Hz ({len(wav)} bytes)"
    )
    return EncodedAudio(
        data=wav,
        base64=base64.b64encode(wav).decode("ascii"),
        num_samples=len(audio),
    )


def encode_capture(raw: RawCapture) -> EncodedAudio:
    """Encode a live recording.

    Raises:
        ValueError: If the capture is empty; callers must not submit those.
        DecodeError: If the capture bytes are malformed.
    """
    if not raw.data:
        raise ValueError("Cannot encode an empty capture")
    return _encode_mono(mixdown(decode_pcm(raw)), raw.sample_rate)


def encode_file(data: bytes) -> EncodedAudio:
    """Encode an uploaded audio file.

    Raises:
        ValueError: If the data is empty; callers must not submit those.
        DecodeError: If the file cannot be decoded.
    """
    if not data:
        raise ValueError("Cannot encode an empty file")
    samples, sample_rate = decode_container(data)
    return _encode_mono(mixdown(samples), sample_rate)


def decode_base64_audio(text: str) -> bytes:
    """Decode base64 audio, accepting an optional data-URL prefix.

    Raises:
        DecodeError: If the text is not valid base64.
    """
    _, sep, rest = text.partition(",")
    payload = rest if sep else text
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Base64 decode failed: {e}") from e
