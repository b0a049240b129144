import argparse
import asyncio
import fnmatch
import logging
import os
import re
import sys
from typing import List, Optional

from .accessor import Accessor, open_accessor
from .archive import ZipArchive
from .errors import ArchiveFormatError, DziError, EntryNotFoundError
from .source import ByteRangeSource

_TILE_ARG = re.compile(r"^(\d+)/(\d+)_(\d+)$")


def format_size(size_in_bytes):
    units = ['B', 'KB', 'MB', 'GB', 'TB']
    size = float(size_in_bytes)
    unit_index = 0
    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1
    if unit_index == 0:
        return f"{int(size)} {units[unit_index]}"
    else:
        return f"{size:.2f} {units[unit_index]}"


def match_files(file_list: List[str], patterns: List[str], use_regex: bool = False) -> List[str]:
    """
    Match archive entry names using glob patterns or regex.

    Args:
        file_list: Entry names to match against
        patterns: Patterns to match
        use_regex: If True, treat patterns as regex; otherwise use glob patterns

    Returns:
        Sorted list of matching names
    """
    matched_files = set()

    for pattern in patterns:
        if use_regex:
            try:
                regex_pattern = re.compile(pattern)
            except re.error as e:
                print(f"Invalid regex pattern '{pattern}': {e}", file=sys.stderr)
                continue
            for file_path in file_list:
                if regex_pattern.search(file_path):
                    matched_files.add(file_path)
        else:
            for file_path in file_list:
                if fnmatch.fnmatch(file_path, pattern):
                    matched_files.add(file_path)

    return sorted(matched_files)


def print_zip_tree(files: List[str]):
    structure = {}
    folder_count = 0

    for file_path in files:
        parts = [part for part in file_path.split('/') if part]
        current_level = structure

        for i, part in enumerate(parts):
            if i < len(parts) - 1 and part not in current_level:
                folder_count += 1
            current_level = current_level.setdefault(part, {})

    def print_nested(d, prefix=""):
        keys = sorted(d.keys())
        for i, key in enumerate(keys):
            connector = "└── " if i == len(keys) - 1 else "├── "
            print(f"{prefix}{connector}{key}")
            print_nested(d[key], prefix + ("    " if connector == "└── " else "│   "))

    print_nested(structure)
    print(f"\nTotal files: {len(files)}")
    print(f"Total folders: {folder_count}")


def print_pyramid_info(accessor: Accessor):
    descriptor = accessor.descriptor
    print(f"Size: {descriptor.width}x{descriptor.height}")
    print(f"Tile size: {descriptor.tile_size} (overlap {descriptor.overlap})")
    print(f"Format: {descriptor.format}")
    print(f"Storage: {accessor.backing.kind}")
    print(f"Levels ({len(accessor.levels)}):")
    for level in accessor.levels:
        columns = level.columns(descriptor.tile_size)
        rows = level.rows(descriptor.tile_size)
        print(f"  {level.level_index:>3}: {level.width}x{level.height} ({columns}x{rows} tiles)")


def _output_path(output_dir: str, filename: str, flatten: bool) -> str:
    if flatten:
        output_path = os.path.join(output_dir, os.path.basename(filename))
        if os.path.exists(output_path):
            base, ext = os.path.splitext(os.path.basename(filename))
            counter = 1
            while os.path.exists(output_path):
                output_path = os.path.join(output_dir, f"{base}_{counter}{ext}")
                counter += 1
            print(f"Warning: File name conflict, renaming to '{os.path.basename(output_path)}'", file=sys.stderr)
    else:
        output_path = os.path.join(output_dir, filename)

    # Entry names are untrusted; never write outside the output directory.
    root = os.path.abspath(output_dir)
    target = os.path.abspath(output_path)
    if target == root or os.path.commonpath([root, target]) != root:
        raise ArchiveFormatError(f"Refusing to extract '{filename}' outside of '{output_dir}'")
    return output_path


class RemoteArchiveExtractor:
    """Lists and extracts stored entries of a remote ZIP archive."""

    def __init__(self, archive: ZipArchive):
        self.archive = archive

    @classmethod
    async def open(cls, url: str, **storage_options) -> "RemoteArchiveExtractor":
        source = await ByteRangeSource.open(url, **storage_options)
        try:
            archive = await ZipArchive.open(source)
        except DziError:
            await source.close()
            raise
        return cls(archive)

    async def close(self):
        await self.archive.source.close()

    def list_files(self) -> List[str]:
        return self.archive.namelist()

    def find_files(self, patterns: List[str], use_regex: bool = False) -> List[str]:
        return match_files(self.list_files(), patterns, use_regex)

    async def read_file(self, filename: str) -> bytes:
        return await self.archive.get(filename)

    async def extract_file(self, filename: str, output_path: str) -> str:
        """Extract one entry to `output_path`, creating parent directories."""
        data = await self.archive.get(filename)
        parent = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(parent, exist_ok=True)
        with open(output_path, 'wb') as target:
            target.write(data)
        print(f"Extracted '{filename}': {format_size(len(data))}", file=sys.stderr)
        return output_path

    async def extract_files_parallel(self, filenames: List[str], output_dir: str, max_workers: Optional[int] = None,
                                     flatten: bool = False) -> List[str]:
        """Extract several entries concurrently; failures are reported and skipped."""
        missing_files = [f for f in filenames if f not in self.archive]
        if missing_files:
            raise EntryNotFoundError(", ".join(missing_files))

        semaphore = asyncio.Semaphore(max_workers or 8)

        async def extract_file_wrapper(filename: str) -> str:
            async with semaphore:
                return await self.extract_file(filename, _output_path(output_dir, filename, flatten))

        results = await asyncio.gather(*(extract_file_wrapper(f) for f in filenames), return_exceptions=True)
        output_paths = []
        for filename, result in zip(filenames, results):
            if isinstance(result, DziError):
                print(f"Error extracting '{filename}': {result}", file=sys.stderr)
            elif isinstance(result, BaseException):
                raise result
            else:
                output_paths.append(result)
        return output_paths


def _is_pattern(patterns: List[str], use_regex: bool) -> bool:
    return use_regex or any('*' in p or '?' in p or '[' in p for p in patterns)


async def _run_archive_commands(args) -> int:
    extractor = await RemoteArchiveExtractor.open(args.url)
    try:
        if args.list or args.tree:
            files = extractor.list_files()
            if args.tree:
                print_zip_tree(files)
            else:
                print(f"Files in the ZIP archive ({len(files)}):", file=sys.stderr)
                for file in files:
                    size_str = format_size(extractor.archive.getinfo(file).size)
                    print(f"  {file} ({size_str})", file=sys.stderr)

        if args.find:
            patterns = [p.strip() for p in args.find.split(',')]
            matching_files = extractor.find_files(patterns, use_regex=args.regex)
            pattern_type = "regex" if args.regex else "glob"
            print(f"Files matching {pattern_type} patterns ({len(matching_files)}):", file=sys.stderr)
            for file in matching_files:
                size_str = format_size(extractor.archive.getinfo(file).size)
                print(f"  {file} ({size_str})", file=sys.stderr)

        if args.extract:
            input_patterns = [p.strip() for p in args.extract.split(',')]
            if _is_pattern(input_patterns, args.regex):
                files_to_extract = extractor.find_files(input_patterns, use_regex=args.regex)
                pattern_type = "regex" if args.regex else "glob"
                if not files_to_extract:
                    print(f"No files found matching {pattern_type} patterns: {', '.join(input_patterns)}",
                          file=sys.stderr)
                    return 1
                print(f"Found {len(files_to_extract)} files matching {pattern_type} patterns", file=sys.stderr)
            else:
                files_to_extract = input_patterns

            if args.output == '-':
                if len(files_to_extract) > 1:
                    print("Error: Cannot write multiple files to stdout", file=sys.stderr)
                    return 1
                sys.stdout.buffer.write(await extractor.read_file(files_to_extract[0]))
            else:
                output_dir = args.output if args.output else '.'
                os.makedirs(output_dir, exist_ok=True)
                if args.parallel and len(files_to_extract) > 1:
                    await extractor.extract_files_parallel(files_to_extract, output_dir, max_workers=args.workers,
                                                           flatten=args.flatten)
                else:
                    for filename in files_to_extract:
                        await extractor.extract_file(filename, _output_path(output_dir, filename, args.flatten))
    finally:
        await extractor.close()
    return 0


async def _run_pyramid_commands(args) -> int:
    accessor = await open_accessor(args.url)
    async with accessor:
        if args.info:
            print_pyramid_info(accessor)

        if args.tile:
            match = _TILE_ARG.match(args.tile)
            if match is None:
                print(f"Error: bad tile '{args.tile}', expected LEVEL/COLUMN_ROW", file=sys.stderr)
                return 1
            level, column, row = (int(g) for g in match.groups())
            data = await accessor.fetch_tile(level, column, row)
            if args.output in (None, '-'):
                sys.stdout.buffer.write(data)
            else:
                tile_name = accessor.resolve_tile_path(level, column, row).replace('/', '_')
                output_path = args.output
                if os.path.isdir(output_path):
                    output_path = os.path.join(output_path, tile_name)
                with open(output_path, 'wb') as target:
                    target.write(data)
                print(f"Saved tile {level}/{column}_{row} to '{output_path}' ({format_size(len(data))})",
                      file=sys.stderr)
    return 0


async def _run(args) -> int:
    status = 0
    if args.info or args.tile:
        status = await _run_pyramid_commands(args)
    if status == 0 and (args.list or args.tree or args.find or args.extract):
        status = await _run_archive_commands(args)
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Read Deep Zoom pyramids and stored ZIP archives over HTTP range requests')
    parser.add_argument('url', help='URL of a .dzi file, a .dzip archive, or any stored ZIP archive')
    parser.add_argument('-i', '--info', action='store_true', help='Show pyramid geometry')
    parser.add_argument('--tile', help='Fetch a single tile given as LEVEL/COLUMN_ROW')
    parser.add_argument('-l', '--list', action='store_true', help='List files in the ZIP archive')
    parser.add_argument('-t', '--tree', action='store_true', help='Display zip contents in tree format')
    parser.add_argument('-e', '--extract', help='Extract specific files from the ZIP archive (supports glob patterns)')
    parser.add_argument('-f', '--find', help='Find files matching patterns (supports glob patterns)')
    parser.add_argument('-r', '--regex', action='store_true', help='Use regex patterns instead of glob patterns')
    parser.add_argument('-o', '--output', help='Output directory (or file for --tile). Use "-" to write to stdout')
    parser.add_argument('-p', '--parallel', action='store_true', help='Extract files concurrently')
    parser.add_argument('-w', '--workers', type=int, default=None, help='Maximum number of concurrent extractions')
    parser.add_argument('--flatten', action='store_true', help='Extract files without preserving directory structure')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log every range request')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(levelname)s %(name)s: %(message)s')

    try:
        return asyncio.run(_run(args))
    except DziError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
