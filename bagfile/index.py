"""
Index (.idx) file support.

An index is a small header followed by fixed-width records, one per audio asset:

    magic (4s) | version (i32) | count (i32) | [reserved (i32), version 4 only]
    count x record

Version 4 records are 64 bytes with a 32 byte name field, all other versions use
36 byte records with a 16 byte name field. The record order is the order the audio
payloads are laid out in the data file.
"""

import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from bagfile.definitions import INDEX_MAGIC, MERGED_INDEX_VERSION, RECORD_LAYOUTS
from bagfile.errors import FormatError, RecordNotFoundError

_HEADER = struct.Struct('<4sii')
_RESERVED = struct.Struct('<i')
_RECORD_FIELDS = struct.Struct('<5i')

UNPLACED_OFFSET = -1


def _record_layout(version: int) -> Tuple[int, int]:
    """Return (record width, name field width) for an index version."""
    return RECORD_LAYOUTS.get(version, RECORD_LAYOUTS[2])


def _encode_name(name: str, field_width: int) -> bytes:
    try:
        raw = name.encode('ascii')
    except UnicodeEncodeError:
        raise FormatError(f"Record name is not ASCII: {name!r}") from None
    if b'\x00' in raw:
        raise FormatError(f"Record name contains a null byte: {name!r}")
    if not raw:
        raise FormatError("Record name is empty")
    # one byte is kept for the terminating null
    if len(raw) > field_width - 1:
        raise FormatError(
            f"Record name '{name}' is {len(raw)} bytes, maximum is {field_width - 1}"
        )
    return raw.ljust(field_width, b'\x00')


def _decode_name(field: bytes) -> str:
    end = field.find(b'\x00')
    if end != -1:
        field = field[:end]
    # bytes outside ASCII read as "?"
    return bytes(b if b < 0x80 else 0x3F for b in field).decode('ascii')


def check_record_name(name: str, version: int):
    """Raise FormatError if ``name`` cannot be stored in an index of ``version``."""
    _encode_name(name, _record_layout(version)[1])


@dataclass
class IndexRecord:
    name: str
    data_offset: int = UNPLACED_OFFSET
    data_size: int = 0
    sample_rate: int = 0
    format_code: int = 0
    block_size: int = 0

    @property
    def placed(self) -> bool:
        return self.data_offset >= 0

    @classmethod
    def from_bytes(cls, data: bytes) -> 'IndexRecord':
        """
        Parse a single 36 or 64 byte record.

        Raises:
            FormatError: If the record width is not one of the known layouts
        """
        if len(data) == 36:
            name_width = 16
        elif len(data) == 64:
            name_width = 32
        else:
            raise FormatError(f"Index record length is not valid: {len(data)} bytes")

        name = _decode_name(data[:name_width])
        offset, size, sample_rate, format_code, block_size = _RECORD_FIELDS.unpack_from(data, name_width)
        return cls(name, offset, size, sample_rate, format_code, block_size)

    def to_bytes(self, version: int) -> bytes:
        record_width, name_width = _record_layout(version)

        try:
            fields = _RECORD_FIELDS.pack(
                self.data_offset,
                self.data_size,
                self.sample_rate,
                self.format_code,
                self.block_size
            )
        except struct.error as e:
            raise FormatError(f"Record '{self.name}' has a field out of range: {e}") from None

        data = _encode_name(self.name, name_width) + fields
        data = data.ljust(record_width, b'\x00')

        if len(data) != record_width:
            raise AssertionError(
                f"Encoded record '{self.name}' is {len(data)} bytes, expected {record_width}"
            )
        return data


class IndexTable:
    """Ordered collection of index records."""

    DEFAULT_FORMAT_ID = INDEX_MAGIC
    DEFAULT_VERSION = 2

    def __init__(self, version: int = DEFAULT_VERSION, format_id: bytes = DEFAULT_FORMAT_ID, reserved: int = 0):
        if len(format_id) != 4:
            raise FormatError(f"Index format id must be 4 bytes, got {format_id!r}")
        self.format_id = format_id
        self.version = version
        self.reserved = reserved
        self._records: List[IndexRecord] = []

    def __len__(self):
        return len(self._records)

    def __iter__(self) -> Iterator[IndexRecord]:
        return iter(self._records)

    def __contains__(self, name) -> bool:
        return self.find_by_name(name) is not None

    def __getitem__(self, name: str) -> IndexRecord:
        record = self.find_by_name(name)
        if record is None:
            raise RecordNotFoundError(f"No record named '{name}' in index")
        return record

    @property
    def records(self) -> Tuple[IndexRecord, ...]:
        return tuple(self._records)

    @property
    def record_size(self) -> int:
        return _record_layout(self.version)[0]

    @property
    def header_size(self) -> int:
        return _HEADER.size + (_RESERVED.size if self.version == MERGED_INDEX_VERSION else 0)

    @property
    def byte_size(self) -> int:
        """Length of the encoded index in bytes."""
        return self.header_size + len(self._records) * self.record_size

    def names(self) -> List[str]:
        return [record.name for record in self._records]

    @classmethod
    def from_bytes(cls, data: bytes) -> 'IndexTable':
        """
        Decode an index from its on-disk representation.

        Args:
            data: Raw index bytes. Trailing bytes past the last record are ignored, which
                allows decoding straight from the front of a merged data file.

        Returns:
            Decoded IndexTable

        Raises:
            FormatError: If the header or any record cannot be read
        """
        if len(data) < _HEADER.size:
            raise FormatError(f"Index header truncated: {len(data)} bytes")

        format_id, version, count = _HEADER.unpack_from(data, 0)
        if count < 0:
            raise FormatError(f"Index record count is negative: {count}")

        reserved = 0
        position = _HEADER.size
        if version == MERGED_INDEX_VERSION:
            if len(data) < position + _RESERVED.size:
                raise FormatError("Index header truncated: missing reserved field")
            reserved, = _RESERVED.unpack_from(data, position)
            position += _RESERVED.size

        table = cls(version=version, format_id=format_id, reserved=reserved)
        record_size = table.record_size

        for i in range(count):
            chunk = data[position:position + record_size]
            if len(chunk) != record_size:
                raise FormatError(
                    f"Index record {i} truncated: expected {record_size} bytes, got {len(chunk)}"
                )
            try:
                table._records.append(IndexRecord.from_bytes(chunk))
            except FormatError as e:
                raise FormatError(f"Index record {i} is invalid: {e}") from e
            position += record_size

        return table

    def to_bytes(self) -> bytes:
        parts = [_HEADER.pack(self.format_id, self.version, len(self._records))]
        if self.version == MERGED_INDEX_VERSION:
            parts.append(_RESERVED.pack(self.reserved))
        for record in self._records:
            parts.append(record.to_bytes(self.version))
        return b''.join(parts)

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'IndexTable':
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Index file not found: {path}")
        with open(path, 'rb') as f:
            data = f.read()
        try:
            return cls.from_bytes(data)
        except FormatError as e:
            raise FormatError(f"Index file loading failed ({path}): {e}") from e

    def save(self, path: Union[str, Path]):
        """Write the index to ``path``, replacing it atomically."""
        path = Path(path)
        data = self.to_bytes()
        tmp_path = path.with_name(f".{path.name}.tmp{os.getpid()}")
        try:
            with open(tmp_path, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def find_by_name(self, name: str) -> Optional[IndexRecord]:
        for record in self._records:
            if record.name == name:
                return record
        return None

    def add(self, record: IndexRecord):
        self._records.append(record)

    def remove_by_name(self, name: str) -> bool:
        for i, record in enumerate(self._records):
            if record.name == name:
                del self._records[i]
                return True
        return False
