import struct
from pathlib import Path
from typing import BinaryIO, Optional, Union

from bagfile.audio.write_utils import (
    _build_adpcm_wav_header,
    _build_pcm_wav_header,
    _check_channels,
)
from bagfile.audio_read import generic_audio_read
from bagfile.definitions import (
    WAVE_FORMAT_IMA_ADPCM,
    WAVE_FORMAT_PCM,
    AudioRead,
    Encoding,
    LegacyFormat,
)
from bagfile.errors import FormatError, StateError
from bagfile.utils import record_name

_WAVE_FORMAT_TAGS = {
    WAVE_FORMAT_PCM: Encoding.PCM,
    WAVE_FORMAT_IMA_ADPCM: Encoding.IMA_ADPCM,
}

# RIFF header (12) + 'fmt ' id and size (8)
_FMT_BODY_OFFSET = 20
_FACT_CHUNK_SPAN = 12


def _read_exact(f: BinaryIO, size: int, what: str) -> bytes:
    data = f.read(size)
    if len(data) != size:
        raise FormatError(f"Unexpected end of file while reading {what}")
    return data


class AudioContainer:
    """
    PCM / IMA ADPCM wave audio held in memory.

    A container is either created from a .wav file on disk, in which case only the
    header is read by :meth:`load_header` and the samples follow on :meth:`load_data`,
    or built directly from raw samples with :meth:`from_params` /
    :meth:`from_format_code`.
    """

    def __init__(self, filename: Optional[Union[str, Path]] = None):
        self.filename = str(filename) if filename is not None else None
        self.encoding = Encoding.INVALID
        self.channels = 0
        self.sample_rate = 0
        self.bits_per_sample = 0
        self.block_size = 0
        self.data_size = 0

        self._header_loaded = False
        self._data_position = 0
        self._samples: Optional[bytes] = None

    def __repr__(self):
        return (
            f"AudioContainer(name={self.name!r}, encoding={self.encoding.value}, "
            f"channels={self.channels}, sample_rate={self.sample_rate}, "
            f"bits_per_sample={self.bits_per_sample}, block_size={self.block_size}, "
            f"data_size={self.data_size}, loaded={self.is_loaded})"
        )

    @property
    def name(self) -> Optional[str]:
        """Record name: the file name without directory and extension."""
        if self.filename is None:
            return None
        return record_name(self.filename)

    @property
    def is_valid(self) -> bool:
        return self.encoding is not Encoding.INVALID

    @property
    def is_loaded(self) -> bool:
        return self._samples is not None

    @property
    def header_loaded(self) -> bool:
        return self._header_loaded

    @classmethod
    def from_params(
        cls,
        name: str,
        sample_rate: int,
        channels: int,
        encoding: Encoding,
        bits_per_sample: int,
        samples: bytes,
        block_size: int = 0
    ) -> 'AudioContainer':
        """
        Build a fully loaded container from explicit codec parameters.

        Empty ``samples`` leave the container with ``Encoding.INVALID``.
        """
        self = cls(name)
        if not samples:
            return self

        self.encoding = encoding
        self.channels = channels
        self.sample_rate = sample_rate
        self.bits_per_sample = bits_per_sample
        self.block_size = block_size
        self._samples = bytes(samples)
        self.data_size = len(self._samples)
        return self

    @classmethod
    def from_format_code(
        cls,
        name: str,
        sample_rate: int,
        format_code: int,
        samples: bytes,
        block_size: int = 0
    ) -> 'AudioContainer':
        """
        Build a fully loaded container from an index record's legacy format code.

        Unknown codes and empty ``samples`` leave the container with ``Encoding.INVALID``.
        """
        try:
            fmt = LegacyFormat.from_code(format_code)
        except FormatError:
            return cls(name)
        return cls.from_params(
            name, sample_rate, fmt.channels, fmt.encoding, fmt.bits_per_sample, samples, block_size
        )

    def format_code(self, index_version: int = 2) -> int:
        """Legacy format code for this container's codec, see LegacyFormat.to_code."""
        if not self.is_valid:
            raise StateError("Wave audio has not been initialized.")
        return LegacyFormat(self.channels, self.encoding, self.bits_per_sample).to_code(index_version)

    def load_header(self, filename: Optional[Union[str, Path]] = None) -> 'AudioContainer':
        """
        Read codec parameters and locate the sample data without reading it.

        Args:
            filename: Optional path overriding the container's file name

        Returns:
            self

        Raises:
            FileNotFoundError: If the file does not exist
            FormatError: On an unknown format tag or an unexpected chunk layout
        """
        self._header_loaded = False
        self._samples = None
        if filename is not None:
            self.filename = str(filename)
        if self.filename is None:
            raise StateError("Wave audio file name has not been set.")

        with open(self.filename, 'rb') as f:
            riff, _, wave = struct.unpack('<4sI4s', _read_exact(f, 12, 'RIFF header'))
            if riff != b'RIFF' or wave != b'WAVE':
                raise FormatError(f"Not a RIFF/WAVE file: {self.filename}")

            fmt_id, fmt_size = struct.unpack('<4sI', _read_exact(f, 8, 'fmt chunk header'))
            if fmt_id != b'fmt ':
                raise FormatError(f"Expected 'fmt ' chunk, found {fmt_id!r}")
            if fmt_size < 16:
                raise FormatError(f"fmt chunk too short: {fmt_size} bytes")

            (
                format_tag,
                channels,
                sample_rate,
                _,
                block_align,
                bits_per_sample
            ) = struct.unpack('<HHIIHH', _read_exact(f, 16, 'fmt chunk'))

            encoding = _WAVE_FORMAT_TAGS.get(format_tag)
            if encoding is None:
                raise FormatError(f"Unknown audio encoding (format tag {format_tag}).")

            # chunks following fmt: [fact] [LIST] data
            f.seek(_FMT_BODY_OFFSET + fmt_size)
            chunk_id = _read_exact(f, 4, 'chunk id')
            if encoding is Encoding.IMA_ADPCM and chunk_id.lower() == b'fact':
                f.seek(_FACT_CHUNK_SPAN - 4, 1)
                chunk_id = _read_exact(f, 4, 'chunk id')
            if chunk_id.lower() == b'list':
                list_size, = struct.unpack('<I', _read_exact(f, 4, 'LIST chunk size'))
                f.seek(list_size, 1)
                chunk_id = _read_exact(f, 4, 'chunk id')
            if chunk_id != b'data':
                raise FormatError(f"Expected 'data' chunk, found {chunk_id!r}")

            data_size, = struct.unpack('<I', _read_exact(f, 4, 'data chunk size'))
            self._data_position = f.tell()

        self.encoding = encoding
        self.channels = channels
        self.sample_rate = sample_rate
        self.bits_per_sample = bits_per_sample
        self.block_size = block_align if encoding is Encoding.IMA_ADPCM else 0
        self.data_size = data_size
        self._header_loaded = True
        return self

    def load_data(self, filename: Optional[Union[str, Path]] = None):
        """
        Read the sample data located by a prior :meth:`load_header`.

        Raises:
            StateError: If data is already loaded or the header has not been loaded
            FormatError: If the file holds fewer sample bytes than the header declares
        """
        if self.is_loaded:
            raise StateError("Wave audio file data has already been loaded.")
        if not self._header_loaded:
            raise StateError("Wave audio file header information has not been loaded.")
        if filename is not None:
            self.filename = str(filename)

        with open(self.filename, 'rb') as f:
            f.seek(self._data_position)
            self._samples = _read_exact(f, self.data_size, 'sample data')

    def ensure_data(self):
        """Load sample data unless it is already present."""
        if not self.is_loaded:
            self.load_data()

    def get_samples(self) -> bytes:
        if not self.is_loaded:
            raise StateError("Wave audio file data has not been loaded yet.")
        return bytes(self._samples)

    def to_bytes(self) -> bytes:
        """Serialize the container as a complete .wav file."""
        if not self.is_valid:
            raise StateError("Wave audio file not properly initialized.")
        if not self.is_loaded:
            raise StateError("Wave audio file data has not been loaded yet.")
        _check_channels(self.channels)

        if self.encoding is Encoding.PCM:
            header = _build_pcm_wav_header(
                len(self._samples), self.channels, self.sample_rate, self.bits_per_sample
            )
        else:
            header = _build_adpcm_wav_header(
                len(self._samples), self.channels, self.sample_rate, self.bits_per_sample, self.block_size
            )
        return header + self._samples

    def save(self, filename: Optional[Union[str, Path]] = None) -> str:
        """
        Write the container as a .wav file.

        Args:
            filename: Output path; defaults to the container's own file name

        Returns:
            The path written to
        """
        data = self.to_bytes()
        target = str(filename) if filename is not None else self.filename
        if target is None:
            raise StateError("Wave audio file name has not been set.")
        with open(target, 'wb') as f:
            f.write(data)
        return target

    def read(self, start_time: Optional[float] = None, end_time: Optional[float] = None) -> AudioRead:
        """Decode the samples into a numpy array, see generic_audio_read."""
        return generic_audio_read(self.to_bytes(), 'wav', start_time, end_time)
