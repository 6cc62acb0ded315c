"""Shared fixtures for the bagfile test suite.

Wave files are written independently of bagfile: PCM files with the standard
``wave`` module, everything else (IMA ADPCM, LIST chunks, odd fmt sizes) packed
by hand with ``struct``.
"""

import struct
import wave
from pathlib import Path
from typing import Iterable, Tuple

import numpy as np
import pytest


def build_wav_bytes(
    format_tag: int,
    channels: int,
    sample_rate: int,
    block_align: int,
    bits_per_sample: int,
    payload: bytes,
    extra_fmt: bytes = b'',
    chunks_before_data: Iterable[Tuple[bytes, bytes]] = (),
) -> bytes:
    """Pack a RIFF/WAVE file with a fmt chunk, optional extra chunks, and a data chunk."""
    fmt = struct.pack(
        '<HHIIHH', format_tag, channels, sample_rate, 0, block_align, bits_per_sample
    ) + extra_fmt
    body = [b'WAVE', b'fmt ', struct.pack('<I', len(fmt)), fmt]
    for chunk_id, chunk_data in chunks_before_data:
        body += [chunk_id, struct.pack('<I', len(chunk_data)), chunk_data]
    body += [b'data', struct.pack('<I', len(payload)), payload]
    body = b''.join(body)
    return b'RIFF' + struct.pack('<I', len(body)) + body


def adpcm_wav_bytes(payload: bytes, channels: int, sample_rate: int, block_size: int,
                    fact: bool = True, list_payload: bytes = None) -> bytes:
    samples_per_block = block_size * (2 // channels) - 7
    chunks = []
    if fact:
        chunks.append((b'fact', struct.pack('<I', (len(payload) // block_size) * samples_per_block)))
    if list_payload is not None:
        chunks.append((b'LIST', list_payload))
    return build_wav_bytes(
        17, channels, sample_rate, block_size, 4, payload,
        extra_fmt=struct.pack('<HH', 2, samples_per_block),
        chunks_before_data=chunks,
    )


@pytest.fixture
def voice_samples() -> np.ndarray:
    """1000 samples of a 16-bit mono tone."""
    t = np.arange(1000, dtype=np.float64) / 22050
    return (np.sin(2 * np.pi * 440.0 * t) * 12000).astype('<i2')


@pytest.fixture
def make_pcm_wav(tmp_path):
    """Factory writing a PCM .wav with the wave module; returns its path."""
    def _make(name: str, samples: bytes, channels: int = 1, sample_rate: int = 22050,
              bits_per_sample: int = 16, directory: Path = None) -> Path:
        path = (directory or tmp_path) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        with wave.open(str(path), 'wb') as w:
            w.setnchannels(channels)
            w.setsampwidth(bits_per_sample // 8)
            w.setframerate(sample_rate)
            w.writeframes(bytes(samples))
        return path
    return _make


@pytest.fixture
def make_adpcm_wav(tmp_path):
    """Factory writing an IMA ADPCM .wav (fmt + fact [+ LIST] + data); returns its path."""
    def _make(name: str, payload: bytes, channels: int = 1, sample_rate: int = 22050,
              block_size: int = 512, fact: bool = True, list_payload: bytes = None) -> Path:
        path = tmp_path / name
        path.write_bytes(adpcm_wav_bytes(payload, channels, sample_rate, block_size, fact, list_payload))
        return path
    return _make


@pytest.fixture
def bag_paths(tmp_path):
    """Output (.bag, .idx) paths inside a dedicated directory."""
    out_dir = tmp_path / 'out'
    out_dir.mkdir()
    return out_dir / 'audio.bag', out_dir / 'audio.idx'
