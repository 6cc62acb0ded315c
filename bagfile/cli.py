"""Command line front end: add .wav files to a bag file or extract them from one."""

import argparse
import sys
from typing import List, Optional

from bagfile.archive import BagArchive
from bagfile.errors import BagFileError
from bagfile.utils import collect_wav_files, resolve_archive_paths


def _split_names(value: str) -> List[str]:
    return [name.strip() for name in value.split(',') if name.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='bagfile',
        description='Add wave audio files to, or extract them from, .bag/.idx audio archives.'
    )
    parser.add_argument('-i', '--input-filename', help='input bag file (extension is ignored)')
    parser.add_argument(
        '-o', '--output-filename',
        help='output bag file when adding, output directory when extracting'
    )
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument(
        '-a', '--add-files',
        help='comma-separated list of .wav files and/or directories (searched recursively) to add'
    )
    action.add_argument(
        '-e', '--extract-files', nargs='?', const='',
        help='comma-separated list of names (without extension) to extract; empty or * extracts all'
    )
    parser.add_argument(
        '--index-version', type=int, choices=[2, 4], default=BagArchive.DEFAULT_INDEX_VERSION,
        help='index version used when a new bag file is created (default: %(default)s)'
    )
    parser.add_argument('--progress', action='store_true', help='show progress output')
    return parser.parse_args(argv)


def _add(args: argparse.Namespace) -> int:
    files = collect_wav_files(args.add_files)
    if not files:
        print("No .wav files found to add.", file=sys.stderr)
        return 1

    bag_in, bag_out, idx_in, idx_out = resolve_archive_paths(
        args.input_filename, args.output_filename, allow_create=True
    )
    with BagArchive(bag_out, bag_in, idx_in, idx_out, index_version=args.index_version) as archive:
        outcomes = archive.add_files(files, show_progress=args.progress)
        for outcome in outcomes:
            if outcome.ok:
                print(f"Added file: {outcome.source}")
        if not archive.save():
            print("No modifications have been made since last save.", file=sys.stderr)
            return 1

    print("Bag & index files successfully saved.")
    return 0


def _extract(args: argparse.Namespace) -> int:
    if not args.output_filename:
        print("An output directory is required when extracting.", file=sys.stderr)
        return 1

    bag_in, _, idx_in, _ = resolve_archive_paths(
        args.input_filename, None, allow_create=False
    )
    with BagArchive(bag_in, bag_in, idx_in) as archive:
        outcomes = archive.extract_files(
            _split_names(args.extract_files), args.output_filename, show_progress=args.progress
        )
    for outcome in outcomes:
        if outcome.ok:
            print(f"Extracted file: {outcome.source}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.add_files is not None:
            return _add(args)
        return _extract(args)
    except (OSError, ValueError, BagFileError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
