#!/usr/bin/env python3
"""
Bag Archive Tool
Reads, edits and writes .bag audio data files together with their .idx index.
"""

import os
import tempfile
import warnings
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Union

import pandas as pd
from tqdm import tqdm

from bagfile.audio.container import AudioContainer
from bagfile.definitions import MERGED_INDEX_VERSION, LegacyFormat, RecordOutcome
from bagfile.errors import BagFileError, DuplicateNameError, FormatError, StateError
from bagfile.index import UNPLACED_OFFSET, IndexRecord, IndexTable, check_record_name
from bagfile.utils import check_merged_index_func, record_name

PathLike = Union[str, Path]


def _temp_sibling(path: Path) -> Path:
    """Create an empty temporary file next to ``path`` so os.replace stays on one filesystem."""
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    os.close(fd)
    return Path(tmp)


class BagArchive:
    """Read and modify a .bag data file and its index."""

    DEFAULT_INDEX_VERSION = 2
    COPY_CHUNK_SIZE = 1024 * 1024
    METADATA_COLUMNS = [
        'name', 'data_offset', 'data_size', 'sample_rate', 'format_code', 'block_size',
        'channels', 'encoding', 'bits_per_sample', 'pending'
    ]

    def __init__(
        self,
        output_data_path: PathLike,
        input_data_path: Optional[PathLike] = None,
        input_index_path: Optional[PathLike] = None,
        output_index_path: Optional[PathLike] = None,
        index_version: int = DEFAULT_INDEX_VERSION
    ):
        """
        Open an archive.

        Args:
            output_data_path: Where save() writes the data file
            input_data_path: Existing data file to read from. If None a new, empty
                archive is created.
            input_index_path: Index of the input data file. Defaults to the input data
                path with an .idx extension. Ignored when the data file carries a
                merged (version 4) index.
            output_index_path: Where save() writes the index. Defaults to the output
                data path with an .idx extension. Unused for version 4 archives.
            index_version: Index version of a newly created archive (2 or 4)

        Raises:
            ValueError: If output_data_path is empty
            FileNotFoundError: If the input data or index file does not exist
            FormatError: If the index cannot be decoded
        """
        if not output_data_path:
            raise ValueError("Bag file output filename is invalid.")

        self.output_data_path = Path(output_data_path)
        self.input_data_path = Path(input_data_path) if input_data_path else None

        if self.input_data_path is None:
            self.input_index_path = None
        elif input_index_path:
            self.input_index_path = Path(input_index_path)
        else:
            self.input_index_path = self.input_data_path.with_suffix('.idx')

        if output_index_path:
            self.output_index_path = Path(output_index_path)
        else:
            self.output_index_path = self.output_data_path.with_suffix('.idx')

        self.data_end_offset = 0
        self.index: Optional[IndexTable] = None
        self.merged_input = False

        self._input: Optional[BinaryIO] = None
        self._payload_offset = 0
        self._pending: Dict[str, AudioContainer] = {}
        self._modified = False

        self._initialize(index_version)

    def _initialize(self, index_version: int):
        if self.input_data_path is None:
            self.index = IndexTable(version=index_version)
            return

        if not self.input_data_path.exists():
            raise FileNotFoundError(f"Bag file '{self.input_data_path}' does not exist.")

        self._input = open(self.input_data_path, 'rb')
        try:
            self.data_end_offset = os.fstat(self._input.fileno()).st_size
            index_span = check_merged_index_func(self._input.read(12))
            self._input.seek(0)

            if index_span is not None:
                self.index = self._split_merged_index(index_span)
                self.merged_input = True
                self._payload_offset = index_span
            else:
                self.index = IndexTable.load(self.input_index_path)
        except BaseException:
            self._input.close()
            self._input = None
            raise

    def _split_merged_index(self, index_span: int) -> IndexTable:
        """Copy the index at the front of a merged data file to a temporary file and load it."""
        if index_span > self.data_end_offset:
            raise FormatError(
                f"Merged index ({index_span} bytes) extends past the end of "
                f"'{self.input_data_path}' ({self.data_end_offset} bytes)"
            )

        fd, tmp_path = tempfile.mkstemp(suffix='.idx')
        try:
            with os.fdopen(fd, 'wb') as tmp:
                self._input.seek(0)
                tmp.write(self._input.read(index_span))
            return IndexTable.load(tmp_path)
        finally:
            os.unlink(tmp_path)

    def __len__(self):
        if self.index is None:
            return 0
        return len(self.index)

    def __contains__(self, name) -> bool:
        return self.index is not None and record_name(name) in self.index

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def is_open(self) -> bool:
        return self.index is not None

    @property
    def is_modified(self) -> bool:
        return self._modified

    @property
    def pending_names(self) -> List[str]:
        return list(self._pending)

    def names(self) -> List[str]:
        self._check_open()
        return self.index.names()

    def close(self):
        """Release the input data stream. The archive cannot be used afterwards."""
        if self._input is not None:
            self._input.close()
            self._input = None
        self.index = None
        self._pending.clear()

    def _check_open(self):
        if self.index is None:
            raise StateError("Bag file has not been initialized.")

    def add_file(self, container: AudioContainer, overwrite: bool = True) -> IndexRecord:
        """
        Queue a wave audio file for inclusion on the next save.

        The container's samples are not read until they are needed. The record name is
        the container's file name without extension.

        Args:
            container: Container with at least its header loaded
            overwrite: Replace an existing record with the same name

        Returns:
            The new, not yet placed, index record

        Raises:
            StateError: If the archive is closed or the container has no valid codec
            FormatError: If the codec has no legacy format code or the name does not fit
            DuplicateNameError: If the name exists and overwrite is False
        """
        self._check_open()
        if container is None or not container.is_valid:
            raise StateError("Wave audio has not been initialized.")
        if not (container.header_loaded or container.is_loaded):
            raise StateError("Wave audio file header information has not been loaded.")

        format_code = container.format_code(self.index.version)
        name = container.name
        if not name:
            raise FormatError("Wave audio file has no name.")
        check_record_name(name, self.index.version)

        if self.index.find_by_name(name) is not None:
            if not overwrite:
                raise DuplicateNameError(f"A file named '{name}' already exists in the bag file.")
            self.index.remove_by_name(name)
            self._pending.pop(name, None)

        record = IndexRecord(
            name=name,
            data_offset=UNPLACED_OFFSET,
            data_size=container.data_size,
            sample_rate=container.sample_rate,
            format_code=format_code,
            block_size=container.block_size
        )
        self._pending[name] = container
        self.index.add(record)
        self._modified = True
        return record

    def add_files(
        self,
        paths: Iterable[PathLike],
        overwrite: bool = True,
        show_progress: bool = False
    ) -> List[RecordOutcome]:
        """
        Add several .wav files. A file that cannot be read or added is skipped.

        Args:
            paths: Wave audio file paths
            overwrite: Replace existing records with the same name
            show_progress: Whether to show progress messages

        Returns:
            One RecordOutcome per input path
        """
        paths = [str(p) for p in paths]
        outcomes = []
        items = tqdm(paths, desc="Adding audio files") if show_progress else paths

        for path in items:
            try:
                container = AudioContainer(path).load_header()
            except (OSError, BagFileError) as e:
                warnings.warn(f"Could not load file: {path}. Error message: {e}", UserWarning)
                outcomes.append(RecordOutcome(path, error=str(e)))
                continue
            try:
                record = self.add_file(container, overwrite=overwrite)
            except BagFileError as e:
                warnings.warn(f"Could not add file: {path}. Error message: {e}", UserWarning)
                outcomes.append(RecordOutcome(path, name=container.name, error=str(e)))
                continue
            outcomes.append(RecordOutcome(path, name=record.name))

        if show_progress:
            added = sum(1 for o in outcomes if o.ok)
            print(f"\nAdded {added} of {len(outcomes)} files to bag file.")
        return outcomes

    def _read_payload(self, record: IndexRecord) -> bytes:
        if self._input is None:
            raise StateError(f"No input data file to read '{record.name}' from.")
        if record.data_offset < 0:
            raise StateError(f"Record '{record.name}' has not been written to the data file.")

        self._input.seek(self._payload_offset + record.data_offset)
        data = self._input.read(record.data_size)
        if len(data) != record.data_size:
            raise FormatError(
                f"Record '{record.name}' is truncated: expected {record.data_size} bytes "
                f"at offset {record.data_offset}, got {len(data)}"
            )
        return data

    def _copy_payload(self, record: IndexRecord, out: BinaryIO):
        if self._input is None:
            raise StateError(f"No input data file to read '{record.name}' from.")
        if record.data_offset < 0:
            raise StateError(f"Record '{record.name}' has not been written to the data file.")

        self._input.seek(self._payload_offset + record.data_offset)
        remaining = record.data_size
        while remaining > 0:
            chunk = self._input.read(min(remaining, self.COPY_CHUNK_SIZE))
            if not chunk:
                raise FormatError(
                    f"Record '{record.name}' is truncated: {remaining} of {record.data_size} bytes missing"
                )
            out.write(chunk)
            remaining -= len(chunk)

    def get_file(self, filename: str) -> Optional[AudioContainer]:
        """
        Get a record as a fully loaded wave audio container.

        Args:
            filename: Record name; any directory and extension are ignored

        Returns:
            AudioContainer, or None if no such record exists or its format code is unknown

        Raises:
            OSError, FormatError: If the record's samples cannot be read
        """
        if self.index is None or not filename:
            return None

        record = self.index.find_by_name(record_name(filename))
        if record is None:
            return None

        container = self._pending.get(record.name)
        if container is not None:
            container.ensure_data()
        else:
            data = self._read_payload(record)
            container = AudioContainer.from_format_code(
                record.name + '.wav', record.sample_rate, record.format_code, data, record.block_size
            )

        if not container.is_valid:
            return None
        return container

    def get_all_files(self) -> List[AudioContainer]:
        """Get every record in index order. Records that cannot be read are skipped."""
        if self.index is None:
            return []

        containers = []
        for record in self.index:
            try:
                container = self.get_file(record.name)
            except (OSError, BagFileError) as e:
                warnings.warn(f"Could not read file: {record.name}. Error message: {e}", UserWarning)
                continue
            if container is not None:
                containers.append(container)
        return containers

    def extract_files(
        self,
        names: Optional[Iterable[str]],
        output_dir: PathLike,
        show_progress: bool = False
    ) -> List[RecordOutcome]:
        """
        Write records out as .wav files.

        Args:
            names: Record names to extract. None, an empty list or ['*'] extracts all.
            output_dir: Directory to write to; created if missing
            show_progress: Whether to show progress messages

        Returns:
            One RecordOutcome per requested record
        """
        self._check_open()
        names = [n.strip() for n in (names or []) if n and n.strip()]
        if not names or names == ['*']:
            names = self.index.names()

        output_dir = Path(output_dir)
        if not output_dir.exists():
            if show_progress:
                print(f"Output directory '{output_dir}' does not exist - creating.")
            output_dir.mkdir(parents=True, exist_ok=True)

        outcomes = []
        items = tqdm(names, desc="Extracting audio files") if show_progress else names
        for name in items:
            try:
                container = self.get_file(name)
                if container is None:
                    raise FormatError(f"No valid file named '{record_name(name)}' in bag file.")
                target = container.save(output_dir / Path(container.filename).name)
            except (OSError, BagFileError) as e:
                warnings.warn(f"Could not extract file: {name}. Error message: {e}", UserWarning)
                outcomes.append(RecordOutcome(name, name=record_name(name), error=str(e)))
                continue
            outcomes.append(RecordOutcome(target, name=container.name))

        if show_progress:
            extracted = sum(1 for o in outcomes if o.ok)
            print(f"\nExtracted {extracted} of {len(outcomes)} files to {output_dir}")
        return outcomes

    def remove_file(self, filename: str) -> bool:
        """
        Remove a record and any pending addition with its name.

        Returns:
            True if a record was removed
        """
        if self.index is None or not filename:
            return False

        name = record_name(filename)
        removed = self.index.remove_by_name(name)
        if removed:
            self._pending.pop(name, None)
            self._modified = True
        return removed

    def save(
        self,
        output_data_path: Optional[PathLike] = None,
        output_index_path: Optional[PathLike] = None
    ) -> bool:
        """
        Write the data file and index.

        Every payload is written in index order, pending additions from their source
        files and everything else copied from the input data file, and each record's
        offset is set to where its payload was written. Version 4 indexes are stored
        in front of the payload in the data file itself, other versions go to the
        separate index file. Output files are replaced atomically.

        Args:
            output_data_path: Override for the output data path
            output_index_path: Override for the output index path

        Returns:
            False if there was nothing to save, True otherwise
        """
        self._check_open()
        if not self._modified:
            return False

        data_path = Path(output_data_path) if output_data_path else self.output_data_path
        index_path = Path(output_index_path) if output_index_path else self.output_index_path
        merged = self.index.version == MERGED_INDEX_VERSION

        records = self.index.records
        old_offsets = [record.data_offset for record in records]
        temp_paths = []
        try:
            payload_path = _temp_sibling(data_path)
            temp_paths.append(payload_path)

            new_offsets = []
            with open(payload_path, 'wb') as out:
                for record in records:
                    new_offsets.append(out.tell())
                    container = self._pending.get(record.name)
                    if container is not None:
                        container.ensure_data()
                        out.write(container.get_samples())
                    else:
                        self._copy_payload(record, out)
                out.flush()
                os.fsync(out.fileno())

            for record, offset in zip(records, new_offsets):
                record.data_offset = offset
            index_data = self.index.to_bytes()

            if merged:
                merged_path = _temp_sibling(data_path)
                temp_paths.append(merged_path)
                with open(merged_path, 'wb') as out, open(payload_path, 'rb') as payload:
                    out.write(index_data)
                    while True:
                        chunk = payload.read(self.COPY_CHUNK_SIZE)
                        if not chunk:
                            break
                        out.write(chunk)
                    out.flush()
                    os.fsync(out.fileno())
                os.replace(merged_path, data_path)
            else:
                index_tmp = _temp_sibling(index_path)
                temp_paths.append(index_tmp)
                with open(index_tmp, 'wb') as out:
                    out.write(index_data)
                    out.flush()
                    os.fsync(out.fileno())
                self._replace_pair(payload_path, data_path, index_tmp, index_path, temp_paths)
        except BaseException:
            for record, offset in zip(records, old_offsets):
                record.data_offset = offset
            raise
        finally:
            for tmp in temp_paths:
                if tmp.exists():
                    tmp.unlink()

        for record in records:
            self._pending.pop(record.name, None)
        self._modified = False
        self._rebind_input(data_path, None if merged else index_path, len(index_data) if merged else 0)
        return True

    @staticmethod
    def _replace_pair(payload_path: Path, data_path: Path, index_tmp: Path, index_path: Path,
                      temp_paths: List[Path]):
        """
        Move a finished data file and index into place together.

        The previous data file is set aside first and restored if either replace
        fails, so the old pair stays consistent.
        """
        backup_path = None
        if data_path.exists():
            backup_path = _temp_sibling(data_path)
            temp_paths.append(backup_path)
            os.replace(data_path, backup_path)
        try:
            os.replace(payload_path, data_path)
            os.replace(index_tmp, index_path)
        except BaseException:
            if backup_path is not None:
                os.replace(backup_path, data_path)
            elif data_path.exists():
                data_path.unlink()
            raise

    def _rebind_input(self, data_path: Path, index_path: Optional[Path], payload_offset: int):
        """Read from the freshly written data file from now on; stored offsets refer to it."""
        if self._input is not None:
            self._input.close()
        self._input = open(data_path, 'rb')
        self.input_data_path = data_path
        self.input_index_path = index_path
        self.merged_input = index_path is None
        self._payload_offset = payload_offset
        self.data_end_offset = os.fstat(self._input.fileno()).st_size

    def get_metadata(self) -> pd.DataFrame:
        """
        Get the index as a DataFrame.

        Returns:
            Pandas DataFrame with one row per record, in index order
        """
        self._check_open()
        rows = []
        for record in self.index:
            try:
                fmt = LegacyFormat.from_code(record.format_code)
                channels, encoding, bits = fmt.channels, fmt.encoding.value, fmt.bits_per_sample
            except FormatError:
                channels, encoding, bits = None, 'invalid', None
            rows.append({
                'name': record.name,
                'data_offset': record.data_offset,
                'data_size': record.data_size,
                'sample_rate': record.sample_rate,
                'format_code': record.format_code,
                'block_size': record.block_size,
                'channels': channels,
                'encoding': encoding,
                'bits_per_sample': bits,
                'pending': record.name in self._pending,
            })
        return pd.DataFrame(rows, columns=self.METADATA_COLUMNS)

    def summary(self):
        """Print a formatted list of files in the archive."""
        source = self.input_data_path or self.output_data_path
        if self.index is None:
            print(f"\nBag file: {source}")
            print("Bag file is closed.")
            return

        df = self.get_metadata()
        print(f"\nBag file: {source}")
        print(f"Index version: {self.index.version}{' (merged)' if self.merged_input else ''}")
        print(f"Total files: {len(df)}")

        if len(df) == 0:
            return

        for encoding, count in df['encoding'].value_counts().items():
            print(f"  {encoding}: {count} files")
        print(f"Total size: {df['data_size'].sum() / (1024**2):.2f} MB")
        pending = int(df['pending'].sum())
        if pending:
            print(f"Pending additions: {pending}")

        print("\n" + "=" * 96)
        for idx, row in df.iterrows():
            channels = '?' if pd.isna(row['channels']) else int(row['channels'])
            offset = 'pending' if row['data_offset'] < 0 else f"{row['data_offset']:10d}"
            print(f"{idx:4d} | {row['name']:32s} | {row['encoding']:9s} | {row['sample_rate']:6d}Hz | "
                  f"{channels}ch | {offset:>10s} | {row['data_size'] / 1024:9.2f}KB")
