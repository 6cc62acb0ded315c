import struct

from bagfile.definitions import WAVE_FORMAT_IMA_ADPCM, WAVE_FORMAT_PCM
from bagfile.errors import FormatError

PCM_FMT_CHUNK_SIZE = 16
ADPCM_FMT_CHUNK_SIZE = 20
# RIFF size = payload + everything after the 8 byte RIFF chunk header except the payload
PCM_RIFF_OVERHEAD = 36
ADPCM_RIFF_OVERHEAD = 52


def _pack(fmt: str, *values) -> bytes:
    try:
        return struct.pack(fmt, *values)
    except struct.error as e:
        raise FormatError(f"Wave header field out of range: {e}") from None


def _check_channels(channels: int):
    if channels not in (1, 2):
        raise FormatError(f"Unsupported channel count: {channels}. Expected 1 or 2")


def _adpcm_samples_per_block(block_size: int, channels: int) -> int:
    """
    Number of samples decoded from one IMA ADPCM block.

    Args:
        block_size: Block alignment in bytes
        channels: 1 or 2

    Returns:
        block_size * (2 / channels) - 7 with integer division
    """
    _check_channels(channels)
    samples_per_block = block_size * (2 // channels) - 7
    if samples_per_block <= 0:
        raise FormatError(f"IMA ADPCM block size {block_size} is too small")
    return samples_per_block


def _adpcm_byte_rate(sample_rate: int, channels: int, block_size: int) -> int:
    samples_per_block = _adpcm_samples_per_block(block_size, channels)
    return (sample_rate * channels * block_size) // samples_per_block // channels


def _adpcm_fact_samples(data_size: int, channels: int, block_size: int) -> int:
    """Sample count stored in the fact chunk of an IMA ADPCM file."""
    samples_per_block = _adpcm_samples_per_block(block_size, channels)
    return (data_size // block_size) * samples_per_block


def _build_pcm_wav_header(
    data_size: int,
    channels: int,
    sample_rate: int,
    bits_per_sample: int
) -> bytes:
    """
    Build RIFF, fmt and data chunk headers for PCM audio.

    Args:
        data_size: Length of the sample payload in bytes
        channels: Number of channels
        sample_rate: Sample rate in Hz
        bits_per_sample: 8 or 16

    Returns:
        44 header bytes; the payload follows directly
    """
    _check_channels(channels)
    bytes_per_sample = bits_per_sample // 8
    byte_rate = sample_rate * channels * bytes_per_sample
    block_align = channels * bytes_per_sample

    return b''.join([
        _pack('<4sI4s', b'RIFF', data_size + PCM_RIFF_OVERHEAD, b'WAVE'),
        _pack(
            '<4sIHHIIHH',
            b'fmt ', PCM_FMT_CHUNK_SIZE,
            WAVE_FORMAT_PCM, channels, sample_rate, byte_rate, block_align, bits_per_sample
        ),
        _pack('<4sI', b'data', data_size),
    ])


def _build_adpcm_wav_header(
    data_size: int,
    channels: int,
    sample_rate: int,
    bits_per_sample: int,
    block_size: int
) -> bytes:
    """
    Build RIFF, extended fmt, fact and data chunk headers for IMA ADPCM audio.

    Returns:
        60 header bytes; the payload follows directly
    """
    _check_channels(channels)
    samples_per_block = _adpcm_samples_per_block(block_size, channels)
    byte_rate = _adpcm_byte_rate(sample_rate, channels, block_size)
    fact_samples = _adpcm_fact_samples(data_size, channels, block_size)

    return b''.join([
        _pack('<4sI4s', b'RIFF', data_size + ADPCM_RIFF_OVERHEAD, b'WAVE'),
        _pack(
            '<4sIHHIIHHHH',
            b'fmt ', ADPCM_FMT_CHUNK_SIZE,
            WAVE_FORMAT_IMA_ADPCM, channels, sample_rate, byte_rate, block_size, bits_per_sample,
            # extension length, then samples per block
            2, samples_per_block
        ),
        _pack('<4sII', b'fact', 4, fact_samples),
        _pack('<4sI', b'data', data_size),
    ])
