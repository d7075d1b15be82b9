#!/usr/bin/env python3
"""
tarpick

Pick files and directories of the current directory in a checklist dialog and
bundle them into a tar.gz archive. The selection is remembered as the default
for the next run in the same directory.
"""
from __future__ import annotations

import abc
import argparse
import enum
import os
import shutil
import subprocess
import sys
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set


PREFERENCES_FILE = ".backup_pref"
PICKER_SEPARATOR = "|"
DEFAULT_NOTIFY_MIN_SECONDS = 10
NOTIFICATION_MESSAGE = "Backup successfully created"


class BackupError(RuntimeError):
    """Raised when an external collaborator (picker, archiver) fails."""


def info(message: str) -> None:
    print(f"[+] {message}")


def warn(message: str) -> None:
    print(f"[!] {message}")


def error(message: str) -> None:
    print(f"[!] {message}", file=sys.stderr)


def debug(message: str, verbose: bool) -> None:
    if verbose:
        print(f"[debug] {message}")


def get_home() -> Path:
    """Allow overriding home for tests via TARPICK_HOME."""
    env_home = os.environ.get("TARPICK_HOME")
    return Path(env_home).expanduser() if env_home else Path.home()


def format_size(num_bytes: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(num_bytes)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            return f"{size:.1f} {unit}"
        size /= 1024


def format_date(timestamp: float) -> str:
    return time.strftime("%x", time.localtime(timestamp))


def default_destination(now: Optional[float] = None) -> str:
    stamp = time.localtime(now if now is not None else time.time())
    return time.strftime("backup_%Hh%Mm%Ss_%d-%b-%y", stamp)


@dataclass
class Entry:
    name: str
    size_bytes: int
    modified_at: float

    @property
    def is_hidden(self) -> bool:
        return self.name.startswith(".")


def calculate_path_size(path: Path) -> int:
    """Recursively measure file/directory size in bytes without following links."""
    try:
        if path.is_symlink():
            return 0
        if not path.is_dir():
            return path.stat().st_size
    except FileNotFoundError:
        return 0

    total = 0
    for root, _dirs, files in os.walk(path, followlinks=False):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except FileNotFoundError:
                continue
    return total


def scan_entries(root: Path, show_hidden: bool = False, sort_by_size: bool = False) -> List[Entry]:
    """List the immediate children of ``root`` with their recursive sizes.

    Hidden entries are left out unless ``show_hidden`` is set. The result is
    ordered by name, or by descending size when ``sort_by_size`` is set. An
    unreadable ``root`` raises ``OSError``.
    """
    entries: List[Entry] = []
    with os.scandir(root) as listing:
        for item in listing:
            if not show_hidden and item.name.startswith("."):
                continue
            entries.append(
                Entry(
                    name=item.name,
                    size_bytes=calculate_path_size(Path(item.path)),
                    modified_at=item.stat(follow_symlinks=False).st_mtime,
                )
            )
    if sort_by_size:
        entries.sort(key=lambda e: (-e.size_bytes, e.name))
    else:
        entries.sort(key=lambda e: e.name)
    return entries


class PreferenceStore:
    """Names chosen in the last confirmed run, one per line in ``.backup_pref``."""

    def __init__(self, root: Path) -> None:
        self.path = Path(root) / PREFERENCES_FILE

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[Set[str]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            warn(f"Ignoring unreadable preferences file {self.path}: {exc}")
            return None
        return {line for line in text.splitlines() if line.strip()}

    def save(self, chosen: Iterable[str]) -> None:
        # Full overwrite; the previous selection is never merged in.
        lines = "".join(f"{name}\n" for name in sorted(chosen))
        self.path.write_text(lines, encoding="utf-8")


class ForceMode(enum.Enum):
    NONE = "none"
    CHECK_ALL = "check_all"
    UNCHECK_ALL = "uncheck_all"


@dataclass
class SelectionRow:
    entry: Entry
    default_checked: bool


def default_checked(entry: Entry, preferences: Optional[Set[str]], force_mode: ForceMode) -> bool:
    if force_mode is ForceMode.CHECK_ALL:
        return True
    if force_mode is ForceMode.UNCHECK_ALL:
        return False
    if preferences is not None:
        return entry.name in preferences
    return not entry.is_hidden


def build_rows(
    entries: Sequence[Entry],
    preferences: Optional[Set[str]],
    force_mode: ForceMode = ForceMode.NONE,
) -> List[SelectionRow]:
    return [SelectionRow(entry, default_checked(entry, preferences, force_mode)) for entry in entries]


def parse_chosen(raw: Optional[str], entries: Sequence[Entry]) -> Optional[Set[str]]:
    """Turn the picker output into the set of chosen names.

    ``None`` means the user cancelled: the output was empty, or nothing in it
    matched a scanned entry. Names containing ``|`` cannot be told apart from
    two separate names and are never selected.
    """
    if not raw or not raw.strip():
        return None
    known = {entry.name for entry in entries}
    split_names = sorted(name for name in known if PICKER_SEPARATOR in name)
    chosen: Set[str] = set()
    unselectable: Set[str] = set()
    for token in raw.split(PICKER_SEPARATOR):
        if not token:
            continue
        if token in known:
            chosen.add(token)
            continue
        owners = [name for name in split_names if token in name.split(PICKER_SEPARATOR)]
        if owners:
            unselectable.update(owners)
        else:
            warn(f"Ignoring unknown entry returned by the dialog: {token!r}")
    for name in sorted(unselectable):
        warn(f"Entry {name!r} contains the separator {PICKER_SEPARATOR!r} and cannot be selected.")
    return chosen or None


class Picker(abc.ABC):
    """Shows the checklist and returns the chosen names joined by ``|``.

    An empty string means the dialog was cancelled.
    """

    @abc.abstractmethod
    def pick(self, rows: Sequence[SelectionRow], archive_name: str) -> str:
        ...


class Notifier(abc.ABC):
    @abc.abstractmethod
    def notify(self, message: str, urgency: str = "normal") -> None:
        ...


class ZenityPicker(Picker):
    def __init__(self, width: int = 500, height: int = 600) -> None:
        self.width = width
        self.height = height

    def build_command(self, rows: Sequence[SelectionRow], archive_name: str) -> List[str]:
        cmd = [
            "zenity",
            f"--width={self.width}",
            f"--height={self.height}",
            "--list",
            "--checklist",
            f"--separator={PICKER_SEPARATOR}",
            "--title", "Backup dialog",
            "--text", f"Select files for backup in <b>{archive_name}</b>:",
            "--column", "",
            "--column", "Files",
            "--column", "File size",
            "--column", "Last edited",
        ]
        for row in rows:
            cmd.extend(
                [
                    "TRUE" if row.default_checked else "FALSE",
                    row.entry.name,
                    format_size(row.entry.size_bytes),
                    format_date(row.entry.modified_at),
                ]
            )
        return cmd

    def pick(self, rows: Sequence[SelectionRow], archive_name: str) -> str:
        cmd = self.build_command(rows, archive_name)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            raise BackupError("zenity not found; install zenity to show the selection dialog.")
        # zenity exits 1 when the dialog is closed or cancelled.
        if result.returncode != 0:
            return ""
        return result.stdout.rstrip("\n")


class NotifySendNotifier(Notifier):
    def notify(self, message: str, urgency: str = "normal") -> None:
        try:
            subprocess.run(["notify-send", "-u", urgency, message], check=False)
        except FileNotFoundError:
            warn("notify-send not found; skipping desktop notification.")


@dataclass
class BackupJob:
    destination: str
    chosen: Set[str]
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None


@dataclass
class BackupReport:
    archive: Path
    elapsed_seconds: int


def make_tarball(output_filename: Path, source_dir: Path, verbose: bool = False) -> Path:
    """Creates a gzipped tarball holding ``source_dir`` (as its top-level folder)."""
    tar_cmd = ["tar", "-c", "-f", "-", "-C", str(source_dir.parent), source_dir.name]
    compress_cmd = ["pigz", "-1"] if shutil.which("pigz") else ["gzip", "-1"]

    debug(f"Running pipeline: {' '.join(tar_cmd)} | {' '.join(compress_cmd)} > {output_filename}", verbose)

    try:
        with open(output_filename, "wb") as out_f:
            tar_proc = subprocess.Popen(tar_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            try:
                compress_proc = subprocess.Popen(
                    compress_cmd, stdin=tar_proc.stdout, stdout=out_f, stderr=subprocess.PIPE
                )
            except OSError:
                tar_proc.kill()
                tar_proc.communicate()
                raise
            # Let the compressor own the read end of the pipe.
            tar_proc.stdout.close()

            _, compress_err = compress_proc.communicate()
            _, tar_err = tar_proc.communicate()

            if tar_proc.returncode != 0:
                # GNU tar returns 1 when files changed while being read.
                if tar_proc.returncode == 1:
                    warn(f"Tar warning (files changed?): {tar_err.decode().strip() if tar_err else ''}")
                else:
                    raise BackupError(
                        f"tar exited with {tar_proc.returncode}: {tar_err.decode().strip() if tar_err else ''}"
                    )
            if compress_proc.returncode != 0:
                raise BackupError(
                    f"{compress_cmd[0]} exited with {compress_proc.returncode}: "
                    f"{compress_err.decode().strip() if compress_err else ''}"
                )
    except (OSError, BackupError) as exc:
        warn(f"Archive pipeline failed: {exc}")
        if output_filename.exists():
            output_filename.unlink()
        raise

    return output_filename


def copy_entry(source: Path, staging: Path) -> None:
    target = staging / source.name
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, target, symlinks=True)
    else:
        shutil.copy2(source, target, follow_symlinks=False)


class BackupExecutor:
    """Copies the chosen entries into a staging folder and archives it.

    The staging folder ``<root>/<destination>`` is removed once the archive
    exists. Any copy or archive failure propagates immediately and leaves the
    staging folder in place for inspection.
    """

    def __init__(self, root: Path, verbose: bool = False) -> None:
        self.root = Path(root)
        self.verbose = verbose

    def run(self, job: BackupJob) -> BackupReport:
        staging = self.root / job.destination
        archive = self.root / f"{job.destination}.tar.gz"

        debug("Copying data to backup folder...", self.verbose)
        staging.mkdir()
        for name in sorted(job.chosen):
            debug(f"Copying {name}", self.verbose)
            copy_entry(self.root / name, staging)

        info("Creating archive...")
        make_tarball(archive, staging, verbose=self.verbose)
        shutil.rmtree(staging)

        job.finished_at = time.time()
        return BackupReport(archive=archive, elapsed_seconds=int(job.finished_at - job.started_at))


@dataclass
class RunConfig:
    destination: str
    root: Path
    show_hidden: bool = False
    verbose: bool = False
    sort_by_size: bool = False
    force_mode: ForceMode = ForceMode.NONE
    notify_min_seconds: int = DEFAULT_NOTIFY_MIN_SECONDS


class RunStatus(enum.Enum):
    DONE = "done"
    CANCELLED = "cancelled"
    DESTINATION_EXISTS = "destination_exists"


@dataclass
class RunOutcome:
    status: RunStatus
    report: Optional[BackupReport] = None

    @property
    def exit_code(self) -> int:
        return 1 if self.status is RunStatus.DESTINATION_EXISTS else 0


def run(config: RunConfig, picker: Picker, notifier: Notifier) -> RunOutcome:
    verbose = config.verbose
    root = Path(config.root)

    if os.path.lexists(root / config.destination):
        error(f"Output folder already exists: {config.destination}")
        return RunOutcome(RunStatus.DESTINATION_EXISTS)

    store = PreferenceStore(root)
    if store.exists():
        info("Found preferences file.")
    preferences = store.load()

    debug(f"Listing files in {root}...", verbose)
    entries = scan_entries(root, show_hidden=config.show_hidden, sort_by_size=config.sort_by_size)

    debug("Parsing data to build the dialog...", verbose)
    rows = build_rows(entries, preferences, config.force_mode)

    debug("Opening the selection dialog...", verbose)
    raw = picker.pick(rows, f"{config.destination}.tar.gz")

    started_at = time.time()
    chosen = parse_chosen(raw, entries)
    if chosen is None:
        info("Cancelled backup creation.")
        return RunOutcome(RunStatus.CANCELLED)

    # Saved before archiving so a failed archive keeps the selection.
    debug(f"Writing preferences in {store.path}...", verbose)
    store.save(chosen)

    job = BackupJob(destination=config.destination, chosen=chosen, started_at=started_at)
    report = BackupExecutor(root, verbose=verbose).run(job)
    info(f"Backup done in {report.elapsed_seconds} second(s).")

    if report.elapsed_seconds > config.notify_min_seconds:
        notifier.notify(NOTIFICATION_MESSAGE, "normal")
    return RunOutcome(RunStatus.DONE, report)


HELP_EPILOG = """\
Description:
  This tool shows a list of files in the current directory.
  Items can be selected for inclusion in the backup using checkboxes.
  Chosen files are then copied and archived in the backup.
  The selection is stored as the default for new backups in the
  same directory.

Dependencies:
  zenity for the selection dialog, notify-send (libnotify) for
  notifications, tar and gzip for the archive.

Example:
  tarpick -o mybackup -a -v
  # backup will be the file mybackup.tar.gz
"""


class CliParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on bad arguments."""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = CliParser(
        prog="tarpick",
        description="Create backups, selecting files and directories.",
        epilog=HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-o", dest="output", metavar="NAME", help="Backup name (suffix .tar.gz will be added)")
    parser.add_argument("-a", dest="show_hidden", action="store_true", help="Show hidden directories and files")
    parser.add_argument("-v", dest="verbose", action="store_true", help="Enable verbose mode for detailed output")
    parser.add_argument("-s", dest="sort_by_size", action="store_true", help="Sort items by size instead of name")
    parser.add_argument(
        "-u",
        dest="uncheck_all",
        action="store_true",
        help="Uncheck all files and directories by default (overrides preferences)",
    )
    parser.add_argument(
        "-c",
        dest="check_all",
        action="store_true",
        help="Check all files and directories by default (overrides preferences)",
    )
    parser.add_argument(
        "-t",
        dest="notify_min_seconds",
        metavar="SECONDS",
        type=int,
        default=DEFAULT_NOTIFY_MIN_SECONDS,
        help=f"Minimum duration before sending a notification (default: {DEFAULT_NOTIFY_MIN_SECONDS}s)",
    )
    return parser


def config_from_args(args: argparse.Namespace, root: Path) -> RunConfig:
    if args.check_all:
        force_mode = ForceMode.CHECK_ALL
    elif args.uncheck_all:
        force_mode = ForceMode.UNCHECK_ALL
    else:
        force_mode = ForceMode.NONE
    return RunConfig(
        destination=args.output or default_destination(),
        root=root,
        show_hidden=args.show_hidden,
        verbose=args.verbose,
        sort_by_size=args.sort_by_size,
        force_mode=force_mode,
        notify_min_seconds=args.notify_min_seconds,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = config_from_args(args, Path.cwd())
    outcome = run(config, ZenityPicker(), NotifySendNotifier())
    return outcome.exit_code


def write_crash_log() -> Path:
    log_dir = get_home() / ".tarpick"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "tarpick.error.log"
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
    with open(log_file, "a") as f:
        f.write(f"\n--- Error at {timestamp} ---\n")
        traceback.print_exc(file=f)
    return log_file


def cli() -> None:
    try:
        code = main()
    except Exception as e:
        log_file = write_crash_log()
        error(f"An unexpected error occurred: {e}")
        error(f"Details saved to: {log_file}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    cli()
