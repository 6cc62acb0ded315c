from bagfile.archive import BagArchive
from bagfile.audio.container import AudioContainer
from bagfile.definitions import AudioRead, Encoding, LegacyFormat, RecordOutcome
from bagfile.errors import (
    BagFileError,
    DuplicateNameError,
    FormatError,
    RecordNotFoundError,
    StateError,
)
from bagfile.index import IndexRecord, IndexTable

__version__ = '0.1.0'
