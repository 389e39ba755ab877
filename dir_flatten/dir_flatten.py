import os
import shutil
import argparse
import errno
import stat
import sys
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional, Tuple


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_PARTIAL = 3


# ----------------- Logging setup -----------------

def setup_logging(verbose: bool = False, debug: bool = False):
    """Setup logging configuration with formatted output."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)

    class ColoredFormatter(logging.Formatter):
        COLORS = {
            'DEBUG': '\033[36m',    # Cyan
            'INFO': '\033[32m',     # Green
            'WARNING': '\033[33m',  # Yellow
            'ERROR': '\033[31m',    # Red
            'CRITICAL': '\033[35m', # Magenta
        }
        RESET = '\033[0m'

        def format(self, record):
            record.timestamp = datetime.now().strftime('%H:%M:%S')
            log_message = super().format(record)
            if hasattr(sys.stdout, 'isatty') and sys.stdout.isatty():
                color = self.COLORS.get(record.levelname, '')
                return f"{color}[{record.timestamp}] {record.levelname:8s} | {log_message}{self.RESET}"
            return f"[{record.timestamp}] {record.levelname:8s} | {log_message}"

    logging.basicConfig(
        level=level,
        format='%(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    for handler in logging.root.handlers:
        handler.setFormatter(ColoredFormatter())

    flatten_logger = logging.getLogger('dir_flatten')
    flatten_logger.setLevel(level)
    return flatten_logger


logger = logging.getLogger('dir_flatten')


# ----------------- Run state -----------------

@dataclass(frozen=True)
class FlattenConfig:
    verbose: bool = False
    delete: bool = False
    overwrite: bool = False


@dataclass
class FlattenStats:
    dirs_processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dirs_removed: int = 0

    def as_tuple(self) -> Tuple[int, int, int]:
        return self.dirs_processed, self.succeeded, self.failed


class FlattenError(Exception):
    """Fatal error that aborts the whole run.

    ``stats`` holds whatever was counted before the abort, so callers can
    still report partial progress.
    """

    def __init__(self, message: str, path: Optional[str] = None, stats: Optional[FlattenStats] = None):
        super().__init__(message)
        self.path = path
        self.stats = stats


# ----------------- Util helpers -----------------

def resolve_root(raw_path: str) -> str:
    """Strip the trailing separator and check that *raw_path* is a directory."""
    if not raw_path:
        raise FlattenError("No directory given")
    stripped = raw_path.rstrip(os.sep)
    if os.altsep:
        stripped = stripped.rstrip(os.altsep)
    root = os.path.abspath(stripped or raw_path)
    try:
        mode = os.stat(root).st_mode
    except OSError as e:
        raise FlattenError(f"Cannot access {root}: {e.strerror}", path=root) from e
    if not stat.S_ISDIR(mode):
        raise FlattenError(f"Provided path {root} is not a directory", path=root)
    return root


def list_entries(dir_path: str) -> List[Tuple[str, bool]]:
    """Return ``(name, is_dir)`` for each immediate entry, in listing order.

    Symbolic links are never reported as directories.
    """
    with os.scandir(dir_path) as it:
        return [(entry.name, entry.is_dir(follow_symlinks=False)) for entry in it]


def _move(src: str, dst: str):
    """Rename *src* onto *dst*, falling back to shutil.move across devices."""
    try:
        os.replace(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        # shutil.move would drop the file inside an existing directory
        if os.path.isdir(dst):
            raise IsADirectoryError(errno.EISDIR, "Destination is a directory", dst) from e
        logger.debug(f"Cross-device move detected, using shutil.move: {src} -> {dst}")
        shutil.move(src, dst)


# ----------------- Core algorithm -----------------

def _relocate_file(src: str, root: str, name: str, config: FlattenConfig, stats: FlattenStats) -> bool:
    dst = os.path.join(root, name)
    if config.verbose:
        logger.info(f"Moving file {src} to {root}")

    if not config.overwrite and os.path.lexists(dst):
        logger.warning(f"Cannot move file {src} to {dst}: file with the same name already exists")
        stats.failed += 1
        return False

    try:
        _move(src, dst)
    except OSError as e:
        logger.error(f"Move failed: {src} -> {dst}, error: {e}")
        stats.failed += 1
        return False
    stats.succeeded += 1
    return True


@dataclass
class _DirFrame:
    path: str
    entries: Iterator[Tuple[str, bool]]
    emptied: bool = True


def _enter_dir(dir_path: str, config: FlattenConfig, stats: FlattenStats) -> _DirFrame:
    stats.dirs_processed += 1
    if config.verbose:
        logger.info(f"Processing directory: {dir_path}")

    try:
        entries = list_entries(dir_path)
    except OSError as e:
        raise FlattenError(f"Cannot list directory {dir_path}: {e}", path=dir_path, stats=stats) from e
    logger.debug(f"{dir_path}: {len(entries)} entries")
    return _DirFrame(dir_path, iter(entries))


def _leave_dir(frame: _DirFrame, config: FlattenConfig, stats: FlattenStats) -> bool:
    """Remove a finished subdirectory when asked to; return True when nothing was left in it."""
    if not config.delete:
        return frame.emptied
    if not frame.emptied:
        logger.warning(f"Keeping directory {frame.path}: some entries could not be moved")
        return False
    if config.verbose:
        logger.info(f"Removing directory {frame.path}")
    try:
        os.rmdir(frame.path)
    except OSError as e:
        raise FlattenError(f"Cannot remove directory {frame.path}: {e}", path=frame.path, stats=stats) from e
    stats.dirs_removed += 1
    return True


def _walk(root: str, config: FlattenConfig, stats: FlattenStats):
    # Each frame keeps its own entry iterator, so subdirectories are finished
    # (and removed) before their next sibling is looked at.
    stack = [_enter_dir(root, config, stats)]
    while stack:
        frame = stack[-1]
        entry = next(frame.entries, None)
        if entry is None:
            stack.pop()
            if stack and not _leave_dir(frame, config, stats):
                stack[-1].emptied = False
            continue

        name, is_dir = entry
        full_path = os.path.join(frame.path, name)
        if is_dir:
            stack.append(_enter_dir(full_path, config, stats))
        elif frame.path != root:
            if not _relocate_file(full_path, root, name, config, stats):
                frame.emptied = False


def flatten(root_path: str, config: Optional[FlattenConfig] = None) -> FlattenStats:
    """Move every file below *root_path* up into *root_path*.

    Files already in the root are left alone. Conflicts and failed moves are
    counted and the walk goes on; listing or removal failures raise
    FlattenError.
    """
    config = config or FlattenConfig()
    root = resolve_root(root_path)
    stats = FlattenStats()
    _walk(root, config, stats)
    return stats


# ----------------- Driver code -----------------

def print_summary(stats: FlattenStats, delete: bool = False):
    print("Finished flattening process with:")
    print(f"\t{stats.dirs_processed} directories processed")
    print(f"\t{stats.succeeded} files successfully moved")
    print(f"\t{stats.failed} files failed to move")
    if delete:
        print(f"\t{stats.dirs_removed} directories removed")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Move every file in the subdirectories of a directory up into it")
    target = parser.add_mutually_exclusive_group()
    target.add_argument('root_path', nargs='?', help='Directory to be processed')
    target.add_argument('--dir', dest='dir_path', default=None, help='Directory to be processed (alternative to root_path)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose execution')
    parser.add_argument('--delete', action='store_true', help='Delete processed subdirectories')
    parser.add_argument('--overwrite', action='store_true',
                        help='Overwrite files in the destination if a file with the same name already exists')
    parser.add_argument('--debug', action='store_true', help='Output debug information')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    raw_root = args.dir_path or args.root_path
    if not raw_root:
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    log = setup_logging(verbose=args.verbose, debug=args.debug)

    try:
        root = resolve_root(raw_root)
    except FlattenError as e:
        log.error(str(e))
        return EXIT_ERROR

    config = FlattenConfig(verbose=args.verbose, delete=args.delete, overwrite=args.overwrite)
    log.info(f"root: {root}")
    log.debug(f"config: {config}")
    print("Starting flattening process")

    try:
        stats = flatten(root, config)
    except FlattenError as e:
        log.error(f"Aborted: {e}")
        if e.stats is not None:
            print_summary(e.stats, delete=config.delete)
        return EXIT_ERROR

    print_summary(stats, delete=config.delete)
    if stats.failed:
        log.warning(f"{stats.failed} files were left in place")
        return EXIT_PARTIAL
    return EXIT_OK


if __name__ == '__main__':
    raise SystemExit(main())
