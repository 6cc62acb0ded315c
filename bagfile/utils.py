import os
import struct
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from bagfile.definitions import INDEX_MAGIC, MERGED_INDEX_VERSION

WAV_EXTENSIONS = ('.wav',)


def record_name(filename: Union[str, Path]) -> str:
    """Return the record name for a file name: base name without its extension."""
    return Path(str(filename).replace('\\', '/')).stem


def check_merged_index_func(header: bytes) -> Optional[int]:
    """
    Inspect the first bytes of a data file for a leading version 4 index.

    Args:
        header: At least the first 12 bytes of the data file

    Returns:
        Byte length of the leading index blob, or None if the file is plain audio payload
    """
    if len(header) < 12:
        return None
    magic, version, count = struct.unpack_from('<4sii', header, 0)
    if magic != INDEX_MAGIC or version != MERGED_INDEX_VERSION:
        return None
    if count < 0:
        return None
    # magic + version + count + reserved + records
    return 16 + count * 64


def collect_wav_files(specs: Union[str, Iterable[str]]) -> List[str]:
    """
    Expand files and directories into a list of wave audio files.

    Args:
        specs: Comma-separated string or iterable of file and directory paths.
            Directories are searched recursively.

    Returns:
        List of existing .wav file paths, in input order
    """
    if isinstance(specs, str):
        specs = specs.split(',')

    found = []
    for spec in specs:
        spec = spec.strip()
        if not spec:
            continue
        path = Path(spec)
        if path.is_file() and path.suffix.lower() in WAV_EXTENSIONS:
            found.append(str(path))
        elif path.is_dir():
            for root, _, files in sorted(os.walk(path)):
                for fname in sorted(files):
                    if Path(fname).suffix.lower() in WAV_EXTENSIONS:
                        found.append(os.path.join(root, fname))
    return found


def resolve_archive_paths(
    filename_input: Optional[str],
    filename_output: Optional[str],
    allow_create: bool
) -> Tuple[Optional[str], str, Optional[str], str]:
    """
    Work out the bag and index paths to read from and write to.

    Args:
        filename_input: Input archive path; its extension is ignored
        filename_output: Output archive path (or output directory when extracting)
        allow_create: If True a missing input starts a new, empty archive

    Returns:
        Tuple of (bag_input, bag_output, index_input, index_output). The input paths
        are None when a new archive is created.

    Raises:
        FileNotFoundError: If the input is required but does not exist
        ValueError: If no usable output path can be determined
    """
    input_exists = bool(filename_input) and os.path.isfile(filename_input)
    create_new = allow_create and not input_exists

    if not create_new and not input_exists:
        raise FileNotFoundError(f"Specified input file does not exist: {filename_input}")

    bag_input = index_input = None
    if not create_new:
        base = Path(filename_input).with_suffix('')
        bag_input = str(base.with_suffix('.bag'))
        index_input = str(base.with_suffix('.idx'))

    if not filename_output:
        if create_new:
            raise ValueError("Specified output file path is invalid.")
        return bag_input, bag_input, index_input, index_input

    base = Path(filename_output).with_suffix('')
    return bag_input, str(base.with_suffix('.bag')), index_input, str(base.with_suffix('.idx'))
