from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np

from bagfile.errors import FormatError

INDEX_MAGIC = b'GABA'
MERGED_INDEX_VERSION = 4

# version -> (record width, name field width)
RECORD_LAYOUTS: Dict[int, Tuple[int, int]] = {
    2: (36, 16),
    4: (64, 32),
}

WAVE_FORMAT_PCM = 1
WAVE_FORMAT_IMA_ADPCM = 17


class Encoding(Enum):
    PCM = 'pcm'
    IMA_ADPCM = 'ima_adpcm'
    INVALID = 'invalid'


@dataclass(frozen=True)
class LegacyFormat:
    """
    Codec parameters packed into the single integer "format code" of an index record.

    The code is a closed set; anything outside ``_LEGACY_CODES`` is rejected.
    """
    channels: int
    encoding: Encoding
    bits_per_sample: int

    @classmethod
    def from_code(cls, code: int) -> 'LegacyFormat':
        try:
            return _LEGACY_CODES[code]
        except KeyError:
            raise FormatError(f"Unknown legacy format code: {code}") from None

    def to_code(self, index_version: int = 2) -> int:
        """
        Pack the parameters back into a legacy format code.

        Args:
            index_version: Version of the index the code is written to. IMA ADPCM
                uses 28 in version 4 indexes and 12 everywhere else.

        Returns:
            The legacy format code
        """
        if self.channels not in (1, 2):
            raise FormatError(f"Unsupported channel count: {self.channels}")

        code = 0
        if self.encoding is Encoding.PCM and self.bits_per_sample == 8:
            code = 2
        elif self.encoding is Encoding.PCM and self.bits_per_sample == 16:
            code = 6
        elif self.encoding is Encoding.IMA_ADPCM:
            code = 28 if index_version == MERGED_INDEX_VERSION else 12
        if self.channels == 2:
            code += 1

        if code in (0, 1):
            raise FormatError(
                f"No legacy format code for {self.bits_per_sample}-bit {self.encoding.value} audio"
            )
        return code


_LEGACY_CODES: Dict[int, LegacyFormat] = {
    2: LegacyFormat(1, Encoding.PCM, 8),
    3: LegacyFormat(2, Encoding.PCM, 8),
    6: LegacyFormat(1, Encoding.PCM, 16),
    7: LegacyFormat(2, Encoding.PCM, 16),
    12: LegacyFormat(1, Encoding.IMA_ADPCM, 4),
    13: LegacyFormat(2, Encoding.IMA_ADPCM, 4),
    28: LegacyFormat(1, Encoding.IMA_ADPCM, 4),
    29: LegacyFormat(2, Encoding.IMA_ADPCM, 4),
}

LEGACY_FORMAT_CODES = tuple(sorted(_LEGACY_CODES))


@dataclass
class AudioRead:
    file_type: str
    modality: str
    sample_rate: int
    array: np.ndarray

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.array.shape[0] / self.sample_rate


@dataclass
class RecordOutcome:
    """Result of one item of a batch add or extract."""
    source: str
    name: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
