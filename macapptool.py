#!/usr/bin/env python3
"""macapptool - sign, package and notarize macOS application bundles.

This module provides tools for:
1. Recursively codesigning an .app bundle and its nested components
2. Packaging an .app bundle into a versioned zip archive
3. Submitting a bundle to Apple's notarization service, waiting for the
   result and stapling the notarization ticket back onto the bundle

It wraps the platform utilities (codesign, spctl, ditto, xcrun altool,
xcrun stapler) and provides both programmatic APIs and a command-line
interface.

Usage (CLI):
    # Sign an app bundle with a Developer ID
    macapptool sign -i "Developer ID Application: John Doe" MyApp.app

    # Create MyApp_1.0_macOS.zip from the bundle metadata
    macapptool zip MyApp.app

    # Notarize and staple (zips the bundle first)
    macapptool notarize -u john@example.com MyApp.app

    # Resume waiting for a request that was already submitted
    macapptool notarize -u john@example.com --ticket <uuid> MyApp.zip

Usage (API):
    from macapptool import Codesigner, NotarizationRequest, Notarizer

    Codesigner("MyApp.app", identity="Developer ID").process()

    request = NotarizationRequest("MyApp.app", "john@example.com", "secret")
    Notarizer().notarize_file(request)
"""

import argparse
import enum
import getpass
import logging
import os
import plistlib
import re
import shutil
import stat
import subprocess
import sys
import tempfile
import threading
import time
import zipfile
from pathlib import Path
from typing import IO, Callable, Iterator
from xml.parsers.expat import ExpatError

import httpx
from dotenv import load_dotenv

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names
ENV_DEV_ID = "DEV_ID"
ENV_APPLE_ID = "APPLE_ID"
ENV_APP_PASSWORD = "APP_PASSWORD"

# Default signing identity, matched by prefix against the keychain
DEFAULT_IDENTITY = "Developer ID"

# Seconds between two notarization status queries
DEFAULT_POLL_INTERVAL = 10.0

# Shown in place of secrets whenever a command line is echoed
PASSWORD_PLACEHOLDER = "Xx" * 8 + "X"

# Arguments whose following value is a secret
PASSWORD_FLAGS = ("--password", "-p")

# Ticket reported for submissions made in dry-run mode
DRY_RUN_TICKET = "00000000-0000-0000-0000-000000000000"

# Any of user, group or other may execute
EXECUTABLE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH

# Prefix for bundle identifiers of bare executables
FALLBACK_BUNDLE_ID_PREFIX = "com.example"

# Info.plist keys
CF_BUNDLE_IDENTIFIER = "CFBundleIdentifier"
CF_BUNDLE_NAME = "CFBundleName"
CF_BUNDLE_SHORT_VERSION_STRING = "CFBundleShortVersionString"

# Bundle directories which are signed as a unit
SIGNABLE_FOLDER_EXTENSIONS = [".app", ".framework", ".xpc"]
SIGNABLE_FILE_EXTENSIONS = [".dylib"]

# Bundles whose signature is assessed after signing
VERIFIABLE_EXTENSIONS = [".app", ".framework"]

# altool response patterns
TICKET_PATTERN = re.compile(r"RequestUUID = ([0-9a-z\-]+)")
# returned when resubmitting
TICKET_ALT_PATTERN = re.compile(r"The upload ID is ([0-9a-z\-]+)")
STATUS_PATTERN = re.compile(r"Status: ([\w ]+)", re.ASCII)
LOG_FILE_URL_PATTERN = re.compile(r"LogFileURL: (.*)")

# ----------------------------------------------------------------------------
# dotenv support


def _load_dotenv() -> None:
    """Load credentials and defaults from a .env file, if one exists."""
    load_dotenv()


_load_dotenv()

# ----------------------------------------------------------------------------
# Error handling


class MacAppToolError(Exception):
    """Base exception class for macapptool errors."""


class CommandError(MacAppToolError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class CommandNotFoundError(MacAppToolError):
    """Exception raised when a command cannot be started at all."""


class ConfigurationError(MacAppToolError):
    """Exception raised when configuration is missing or invalid."""


class ValidationError(MacAppToolError):
    """Exception raised when an input artifact is not acceptable."""


class PlistError(MacAppToolError):
    """Exception raised when a property list cannot be decoded."""


class PlistKeyError(PlistError):
    """Exception raised when a property list key is missing."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f'key "{key}" not found')


class PlistTypeError(PlistError):
    """Exception raised when a property list value has the wrong type."""

    def __init__(self, key: str, expected: type, actual: type):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f'key "{key}" has invalid type: expecting value of type '
            f"{expected.__name__}, got {actual.__name__} instead"
        )


class InfoPlistNotFoundError(MacAppToolError):
    """Exception raised when a payload has no primary Info.plist."""


class UnexpectedOutputError(MacAppToolError):
    """Exception raised when notarization service output is not understood."""


class NotarizationError(MacAppToolError):
    """Exception raised when notarization fails."""


class UnknownStatusError(NotarizationError):
    """Exception raised when the notarization status is not recognized."""


class CodesignError(MacAppToolError):
    """Exception raised when codesigning fails."""


class PackagingError(MacAppToolError):
    """Exception raised when archiving or stapling fails."""


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macapptool.toml in current directory
    3. macapptool.toml in current directory

    Note: pyproject.toml is intentionally NOT searched because config
    may contain notarization credentials that should not be committed
    to version control.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the config file is not valid TOML

    Example .macapptool.toml:
        [sign]
        identity = "Developer ID Application: John Doe (ABCD123456)"
        entitlements = "entitlements.plist"

        [notarize]
        username = "john@example.com"
        poll_interval = 30
    """
    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macapptool.toml",
            cwd / "macapptool.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "sign", "notarize")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def get_config_seconds(
    config: dict[str, object],
    section: str,
    key: str,
    default: float | None = None,
) -> float | None:
    """Get a duration in seconds from config, accepting numbers or strings."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(
                f"[{section}] {key} must be a number of seconds, got {value!r}"
            ) from None
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config(config_path: Path | None = None) -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config(config_path)
    return _config


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Prefix records with the time elapsed since startup.

    With use_color, each line is tinted by its level.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[38;20m",
        logging.INFO: "\x1b[32;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def __init__(self, use_color: bool = True):
        super().__init__(
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        elapsed = time.gmtime(record.relativeCreated / 1000)
        record.delta = time.strftime("%H:%M:%S", elapsed)
        line = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno)
        if not self.use_color or color is None:
            return line
        return f"{color}{line}{self.RESET}"


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution


def command_debug_string(args: list[str]) -> str:
    """Return a printable command line with secret arguments masked.

    The value following any of PASSWORD_FLAGS is replaced by
    PASSWORD_PLACEHOLDER.
    """
    values = []
    expect_password = False
    for arg in args:
        if expect_password:
            values.append(PASSWORD_PLACEHOLDER)
            expect_password = False
            continue
        values.append(arg)
        if arg in PASSWORD_FLAGS:
            expect_password = True
    return " ".join(values)


class CommandResult:
    """Exit status and captured output of an external command."""

    def __init__(self, returncode: int, output: str = ""):
        self.returncode = returncode
        self.output = output

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def __repr__(self) -> str:
        return f"CommandResult(returncode={self.returncode!r})"


def _tee(
    pipe: IO[str], stream: IO[str], chunks: list[str], lock: threading.Lock
) -> None:
    for line in iter(pipe.readline, ""):
        stream.write(line)
        stream.flush()
        with lock:
            chunks.append(line)
    pipe.close()


class CommandRunner:
    """Runs external commands, honouring dry-run and verbosity settings.

    Args:
        dry_run: If True, print commands instead of running them
        verbose: If True, echo every command at INFO level
    """

    def __init__(self, dry_run: bool = False, verbose: bool = False) -> None:
        self.dry_run = dry_run
        self.verbose = verbose
        self.log = logging.getLogger(self.__class__.__name__)

    def run(
        self,
        args: list[str],
        cwd: Pathlike | None = None,
        capture: bool = False,
        check: bool = True,
    ) -> CommandResult:
        """Run a command, optionally capturing its output.

        When capture is True, stdout and stderr are still streamed live
        to this process' own streams, and a combined copy is returned in
        the result. Standard input is always inherited so interactive
        prompts keep working.

        Args:
            args: The command as a list of arguments
            cwd: Optional working directory
            capture: Whether to keep a copy of the output
            check: Whether a non-zero exit status raises CommandError

        Returns:
            The command result

        Raises:
            CommandError: If the command exits non-zero and check is set
            CommandNotFoundError: If the command cannot be started
        """
        cmd_str = command_debug_string(args)
        line = f"({cwd}) @{cmd_str}" if cwd else f"@{cmd_str}"
        if self.dry_run:
            print(line)
            return CommandResult(0)
        if self.verbose:
            self.log.info("%s", line)
        else:
            self.log.debug("%s", line)

        try:
            if capture:
                result = self._run_captured(args, cwd)
            else:
                proc = subprocess.run(args, cwd=cwd, shell=False)
                result = CommandResult(proc.returncode)
        except OSError as e:
            raise CommandNotFoundError(
                f"cannot run '{args[0]}': {e.strerror or e}"
            ) from e

        if check and not result.ok:
            raise CommandError(cmd_str, result.returncode, result.output)
        return result

    def _run_captured(
        self, args: list[str], cwd: Pathlike | None
    ) -> CommandResult:
        proc = subprocess.Popen(
            args,
            cwd=cwd,
            shell=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        chunks: list[str] = []
        lock = threading.Lock()
        readers = [
            threading.Thread(
                target=_tee, args=(proc.stdout, sys.stdout, chunks, lock)
            ),
            threading.Thread(
                target=_tee, args=(proc.stderr, sys.stderr, chunks, lock)
            ),
        ]
        for reader in readers:
            reader.start()
        for reader in readers:
            reader.join()
        returncode = proc.wait()
        return CommandResult(returncode, "".join(chunks))


def is_executable(path: Path) -> bool:
    """Check if any execute bit is set on path."""
    return bool(path.stat().st_mode & EXECUTABLE_BITS)


def verify_signature(
    path: Path, runner: CommandRunner, verbose: bool = False
) -> None:
    """Assess the signature of path with Gatekeeper (spctl).

    Raises:
        CodesignError: If the assessment fails
    """
    args = ["spctl"]
    if verbose:
        args.append("--verbose=10")
    args.extend(["--assess", "--ignore-cache", "--no-cache"])
    if path.suffix.lower() == ".app":
        args.extend(["--type", "execute"])
    else:
        args.extend(
            ["--type", "open", "--context", "context:primary-signature"]
        )
    args.append(str(path))
    try:
        runner.run(args)
    except CommandError as e:
        raise CodesignError(
            f"signature verification failed for {path}"
        ) from e


# ----------------------------------------------------------------------------
# Property lists


class InfoPlist:
    """Typed access to the keys of a decoded property list."""

    def __init__(self, data: dict[str, object]):
        self.data = data

    @classmethod
    def from_bytes(cls, raw: bytes) -> "InfoPlist":
        """Decode an XML or binary property list.

        Raises:
            PlistError: If the data is not a property list dictionary
        """
        try:
            data = plistlib.loads(raw)
        except (ValueError, ExpatError) as e:
            raise PlistError(f"invalid property list: {e}") from e
        if not isinstance(data, dict):
            raise PlistError(
                f"expecting a dictionary at the root of the property list, "
                f"got {type(data).__name__} instead"
            )
        return cls(data)

    @classmethod
    def from_file(cls, path: Pathlike) -> "InfoPlist":
        with open(path, "rb") as f:
            return cls.from_bytes(f.read())

    def string_key(self, key: str) -> str:
        if key not in self.data:
            raise PlistKeyError(key)
        value = self.data[key]
        if not isinstance(value, str):
            raise PlistTypeError(key, str, type(value))
        return value

    def bundle_identifier(self) -> str:
        return self.string_key(CF_BUNDLE_IDENTIFIER)

    def bundle_name(self) -> str:
        return self.string_key(CF_BUNDLE_NAME)

    def bundle_short_version_string(self) -> str:
        return self.string_key(CF_BUNDLE_SHORT_VERSION_STRING)


# ----------------------------------------------------------------------------
# Payload readers


class PayloadEntry:
    """A single file or directory inside a payload."""

    def __init__(
        self,
        name: str,
        executable: bool,
        opener: Callable[[], IO[bytes]],
        is_dir: bool = False,
    ):
        self.name = name
        self.executable = executable
        self.is_dir = is_dir
        self._opener = opener

    def read(self) -> bytes:
        with self._opener() as f:
            return f.read()

    def __repr__(self) -> str:
        return f"PayloadEntry({self.name!r})"


class ZipPayload:
    """A zip archive, read entry by entry in archive order.

    Directory entries are reported too, flagged with is_dir.
    """

    def __init__(self, path: Pathlike):
        self.path = Path(path)
        self._zip = zipfile.ZipFile(self.path)

    def entries(self) -> Iterator[PayloadEntry]:
        for info in self._zip.infolist():
            mode = info.external_attr >> 16
            yield PayloadEntry(
                info.filename,
                bool(mode & EXECUTABLE_BITS),
                lambda info=info: self._zip.open(info),
                is_dir=info.is_dir(),
            )

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "ZipPayload":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class FilePayload:
    """A bare file, presented as an archive holding one root entry."""

    def __init__(self, path: Pathlike):
        self.path = Path(path)

    def entries(self) -> Iterator[PayloadEntry]:
        yield PayloadEntry(
            self.path.name,
            is_executable(self.path),
            lambda: open(self.path, "rb"),
        )

    def close(self) -> None:
        pass

    def __enter__(self) -> "FilePayload":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def open_payload(path: Pathlike) -> ZipPayload | FilePayload:
    """Open a zip archive or a bare file as a payload.

    Raises:
        ValidationError: If path is neither a zip archive nor a file
    """
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"Payload does not exist: {path}")
    if zipfile.is_zipfile(path):
        return ZipPayload(path)
    return FilePayload(path)


def _is_primary_info_plist(name: str) -> bool:
    parts = name.split("/")
    return (
        len(parts) == 3
        and Path(parts[0]).suffix == ".app"
        and parts[1] == "Contents"
        and parts[2] == "Info.plist"
    )


def find_primary_bundle_id(path: Pathlike) -> str:
    """Find the bundle identifier of the app inside a payload.

    The first entry named <name>.app/Contents/Info.plist wins. A payload
    holding exactly one entry, an executable at its root, gets a
    synthesized identifier, com.example.<filename>. Directory entries
    count towards that total.

    Args:
        path: Path to a zip archive or a bare executable

    Returns:
        The bundle identifier

    Raises:
        InfoPlistNotFoundError: If no Info.plist can be found
        PlistError: If the Info.plist is malformed or lacks the key
    """
    with open_payload(path) as payload:
        entries = []
        for entry in payload.entries():
            if not entry.is_dir and _is_primary_info_plist(entry.name):
                plist = InfoPlist.from_bytes(entry.read())
                return plist.bundle_identifier()
            entries.append(entry)
    if len(entries) == 1:
        entry = entries[0]
        if not entry.is_dir and "/" not in entry.name and entry.executable:
            return f"{FALLBACK_BUNDLE_ID_PREFIX}.{entry.name}"
    raise InfoPlistNotFoundError("could not find Info.plist")


# ----------------------------------------------------------------------------
# Archiving


def app_zip_path(app: Pathlike) -> Path:
    """Return <dir>/<stem>.zip for an app bundle or executable."""
    app = Path(app)
    return app.parent / f"{app.stem}.zip"


class Archiver:
    """Creates and extracts zip archives with ditto."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def compress(
        self, source: Pathlike, output: Pathlike, norsrc: bool = False
    ) -> Path:
        args = ["ditto", "-c", "-k"]
        if norsrc:
            args.append("--norsrc")
        args.extend(
            ["--sequesterRsrc", "--keepParent", str(source), str(output)]
        )
        self.runner.run(args)
        return Path(output)

    def extract(self, archive: Pathlike, dest: Pathlike) -> Path:
        self.runner.run(["ditto", "-x", "-k", str(archive), str(dest)])
        return Path(dest)


# ----------------------------------------------------------------------------
# Codesigning


class Codesigner:
    """Recursively codesign a macOS bundle with a hardened runtime.

    Nested components are signed depth-first, so every inner bundle is
    sealed before the bundle containing it:
    - directories with an extension in FOLDER_EXTENSIONS are signed
      after their contents
    - files are signed when they are dylibs, live in a Helpers folder,
      or are executable

    Args:
        path: Path to the bundle (or single binary) to sign
        identity: Signing identity (default: DEV_ID or "Developer ID")
        entitlements: Path to entitlements.plist file
        dry_run: If True, only show what would be signed
        verbose: If True, pass --verbose to codesign and spctl

    Environment Variables:
        DEV_ID: Signing identity (fallback if identity not provided)

    Example:
        signer = Codesigner("MyApp.app", identity="Developer ID",
                            entitlements="entitlements.plist")
        signer.process()
    """

    FILE_EXTENSIONS: list[str] = SIGNABLE_FILE_EXTENSIONS
    FOLDER_EXTENSIONS: list[str] = SIGNABLE_FOLDER_EXTENSIONS

    def __init__(
        self,
        path: Pathlike,
        identity: str | None = None,
        entitlements: Pathlike | None = None,
        dry_run: bool = False,
        verbose: bool = False,
        runner: CommandRunner | None = None,
    ) -> None:
        # Path() drops a trailing slash, so "Foo.app/" keeps its suffix
        self.path = Path(path)
        self.identity = identity or os.getenv(ENV_DEV_ID) or DEFAULT_IDENTITY
        self.verbose = verbose
        self.runner = runner or CommandRunner(dry_run=dry_run, verbose=verbose)
        self.log = logging.getLogger(self.__class__.__name__)

        self.entitlements: Path | None
        if entitlements:
            self.entitlements = Path(entitlements)
            if not self.entitlements.exists():
                raise ConfigurationError(
                    f"Entitlements file not found: {self.entitlements}"
                )
        else:
            self.entitlements = None

    def should_sign(self, path: Path) -> bool:
        if path.is_dir():
            return path.suffix in self.FOLDER_EXTENSIONS
        return (
            path.suffix in self.FILE_EXTENSIONS
            or path.parent.name == "Helpers"
            or is_executable(path)
        )

    def collect(self, path: Path | None = None) -> list[Path]:
        """Return the signable paths under path in signing order."""
        if path is None:
            path = self.path
        targets: list[Path] = []
        if path.is_dir():
            # Inner bundles need to be signed before outer ones
            for child in sorted(path.iterdir()):
                if child.is_symlink():
                    continue
                targets.extend(self.collect(child))
        if self.should_sign(path):
            targets.append(path)
        return targets

    def sign_entry(self, path: Path) -> None:
        name = path.relative_to(self.path) if path != self.path else path
        self.log.info("signing %s", name)
        args = ["codesign"]
        if self.verbose:
            args.append("--verbose")
        args.extend(["--force", "--options=runtime", "--timestamp"])
        if self.entitlements:
            args.extend(["--entitlements", str(self.entitlements)])
        args.extend(["--sign", self.identity, str(path)])
        self.runner.run(args)

    def process(self) -> None:
        """Sign every target and verify the result."""
        if not self.path.exists():
            raise ValidationError(f"Bundle does not exist: {self.path}")
        for target in self.collect():
            self.sign_entry(target)
        if self.path.suffix.lower() in VERIFIABLE_EXTENSIONS:
            verify_signature(self.path, self.runner, self.verbose)
        self.log.info("signed %s", self.path)


# ----------------------------------------------------------------------------
# Zip packaging


class AppZipper:
    """Creates a distributable zip archive from an app bundle.

    The default output name is built from the bundle metadata:
    <CFBundleName>_<CFBundleShortVersionString>_macOS.zip, placed in the
    current directory.

    Args:
        app: Path to the .app bundle
        output: Output path (default: derived from Info.plist)
        macos_suffix: Whether the default name ends with _macOS
        delete: Remove the bundle after zipping
        force: Overwrite an existing output file
        dry_run: If True, show commands without executing
        verbose: If True, echo every command
        runner: Command runner (default: a new CommandRunner)
    """

    def __init__(
        self,
        app: Pathlike,
        output: Pathlike | None = None,
        macos_suffix: bool = True,
        delete: bool = False,
        force: bool = False,
        dry_run: bool = False,
        verbose: bool = False,
        runner: CommandRunner | None = None,
    ) -> None:
        self.app = Path(app)
        if not self.app.exists():
            raise ValidationError(f"Bundle does not exist: {self.app}")
        self.output = Path(output) if output else None
        self.macos_suffix = macos_suffix
        self.delete = delete
        self.force = force
        self.dry_run = dry_run
        self.runner = runner or CommandRunner(dry_run=dry_run, verbose=verbose)
        self.archiver = Archiver(self.runner)
        self.log = logging.getLogger(self.__class__.__name__)

    def output_filename(self) -> Path:
        plist = InfoPlist.from_file(self.app / "Contents" / "Info.plist")
        name = plist.bundle_name()
        version = plist.bundle_short_version_string()
        suffix = "_macOS" if self.macos_suffix else ""
        return Path(f"{name}_{version}{suffix}.zip")

    def _remove_existing(self, output: Path) -> None:
        if not output.is_file():
            return
        if not self.force:
            raise ValidationError(f"{output} already exists")
        if self.dry_run:
            print(f"rm {output}")
            return
        self.log.info("removing %s", output)
        output.unlink()

    def process(self) -> Path:
        output = self.output or self.output_filename()
        self._remove_existing(output)
        self.archiver.compress(self.app, output, norsrc=True)
        if self.delete:
            if self.dry_run:
                print(f"rm -r {self.app}")
            else:
                self.log.info("removing %s", self.app)
                shutil.rmtree(self.app)
        self.log.info("created %s", output)
        return output


# ----------------------------------------------------------------------------
# Notarization: response parsing


class NotarizationStatus(enum.Enum):
    """Request states reported by the notarization service."""

    IN_PROGRESS = "in progress"
    SUCCESS = "success"
    INVALID = "invalid"


def parse_ticket(text: str) -> str:
    """Extract the request ticket from a submission response.

    Raises:
        UnexpectedOutputError: If neither ticket pattern matches
    """
    m = TICKET_PATTERN.search(text) or TICKET_ALT_PATTERN.search(text)
    if m is None:
        raise UnexpectedOutputError("cannot find ticket in response")
    return m.group(1)


def parse_status(text: str) -> NotarizationStatus:
    """Extract the request status from a status query response.

    Raises:
        UnexpectedOutputError: If the response has no Status field
        UnknownStatusError: If the status is not a known state
    """
    m = STATUS_PATTERN.search(text)
    if m is None:
        raise UnexpectedOutputError("unexpected output format from altool")
    try:
        return NotarizationStatus(m.group(1))
    except ValueError:
        raise UnknownStatusError(f"unknown status {m.group(1)!r}") from None


def parse_log_url(text: str) -> str | None:
    m = LOG_FILE_URL_PATTERN.search(text)
    return m.group(1) if m else None


def fetch_log(
    url: str, stream: IO[str], client: httpx.Client | None = None
) -> None:
    """Stream the body of url to stream.

    There is no request timeout, and the HTTP status is not checked: the
    body is the diagnostic, whatever it says.

    Raises:
        httpx.HTTPError: If the log cannot be retrieved
    """
    owned = client is None
    if client is None:
        client = httpx.Client(timeout=None)
    try:
        with client.stream("GET", url) as response:
            for chunk in response.iter_text():
                stream.write(chunk)
        stream.write("\n")
        stream.flush()
    finally:
        if owned:
            client.close()


# ----------------------------------------------------------------------------
# Notarization: workflow


class NotarizationRequest:
    """A single artifact to notarize.

    Args:
        app_path: Path to the .app bundle, executable or .zip archive
        username: Apple Developer account username
        password: App-specific password
        ticket: Ticket of an earlier submission to resume waiting for
    """

    def __init__(
        self,
        app_path: Pathlike,
        username: str,
        password: str,
        ticket: str | None = None,
    ):
        self.app_path = Path(app_path)
        self.username = username
        self.password = password
        self.ticket = ticket

    def __repr__(self) -> str:
        return (
            f"NotarizationRequest({str(self.app_path)!r}, "
            f"{self.username!r}, ticket={self.ticket!r})"
        )


class NotaryClient:
    """Command-line front-end of the notarization service (xcrun)."""

    def __init__(self, runner: CommandRunner, verbose: bool = False):
        self.runner = runner
        self.verbose = verbose

    def notarize_app(
        self, zip_path: Path, bundle_id: str, username: str, password: str
    ) -> CommandResult:
        args = [
            "xcrun",
            "altool",
            "--notarize-app",
            "--primary-bundle-id",
            bundle_id,
            "--username",
            username,
            "--password",
            password,
            "--file",
            str(zip_path),
        ]
        if self.verbose:
            args.append("--verbose")
        # altool may exit non-zero and still report a usable ticket
        return self.runner.run(args, capture=True, check=False)

    def notarization_info(
        self, ticket: str, username: str, password: str
    ) -> str:
        args = [
            "xcrun",
            "altool",
            "--notarization-info",
            ticket,
            "--username",
            username,
            "--password",
            password,
        ]
        if self.verbose:
            args.append("--verbose")
        return self.runner.run(args, capture=True).output

    def staple(self, app: Path) -> None:
        self.runner.run(["xcrun", "stapler", "staple", str(app)])


class NotarizationSubmitter:
    """Uploads a payload and returns the ticket issued for it."""

    def __init__(self, client: NotaryClient):
        self.client = client
        self.log = logging.getLogger(self.__class__.__name__)

    def submit(self, zip_path: Pathlike, username: str, password: str) -> str:
        """Submit zip_path for notarization.

        Raises:
            InfoPlistNotFoundError: If the bundle identifier is unknown
            UnexpectedOutputError: If the response carries no ticket
        """
        zip_path = Path(zip_path)
        dry_run = self.client.runner.dry_run
        if dry_run and not zip_path.exists():
            bundle_id = "<bundle-id>"
        else:
            bundle_id = find_primary_bundle_id(zip_path)
        self.log.info("submitting %s for notarization...", zip_path.name)
        result = self.client.notarize_app(
            zip_path, bundle_id, username, password
        )
        if dry_run:
            return DRY_RUN_TICKET
        try:
            return parse_ticket(result.output)
        except UnexpectedOutputError:
            if not result.ok:
                self.log.error(
                    "altool exited with status %d", result.returncode
                )
            raise


class NotarizationPoller:
    """Waits for a notarization request to reach a final state.

    Args:
        client: Notarization front-end
        interval: Seconds between status queries
        timeout: Give up after this many seconds (default: wait forever)
        http_client: Client used to download the failure log
    """

    def __init__(
        self,
        client: NotaryClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.client = client
        self.interval = interval
        self.timeout = timeout
        self.http_client = http_client
        self.log = logging.getLogger(self.__class__.__name__)

    def wait(self, ticket: str, username: str, password: str) -> None:
        """Block until the request succeeds.

        Raises:
            NotarizationError: If the request is rejected or times out
            UnknownStatusError: If an unrecognized status is reported
            UnexpectedOutputError: If a response has no status
        """
        deadline = None
        if self.timeout is not None:
            deadline = time.monotonic() + self.timeout
        while True:
            info = self.client.notarization_info(ticket, username, password)
            if self.client.runner.dry_run:
                return
            status = parse_status(info)
            if status is NotarizationStatus.SUCCESS:
                self.log.info("notarization completed")
                return
            if status is NotarizationStatus.INVALID:
                self.report_failure(info)
                raise NotarizationError("app notarization failed")
            next_query = time.monotonic() + self.interval
            if deadline is not None and next_query > deadline:
                raise NotarizationError(
                    f"notarization of {ticket} did not finish "
                    f"within {self.timeout:g}s"
                )
            self.log.info(
                "notarization in progress, will check again in %gs...",
                self.interval,
            )
            time.sleep(self.interval)

    def report_failure(self, info: str) -> None:
        url = parse_log_url(info)
        if url is None:
            self.log.error("could not find log URL")
            return
        try:
            fetch_log(url, sys.stderr, self.http_client)
        except httpx.HTTPError as e:
            self.log.error("error reading log: %s", e)


class Stapler:
    """Staples a notarized bundle and replaces its zip archive."""

    def __init__(self, client: NotaryClient, archiver: Archiver):
        self.client = client
        self.archiver = archiver
        self.runner = client.runner
        self.log = logging.getLogger(self.__class__.__name__)

    def find_target(self, directory: Path) -> Path:
        """Return the .app bundle (or lone executable) in directory.

        Raises:
            PackagingError: If there is nothing to staple or verify
        """
        children = sorted(directory.iterdir())
        for child in children:
            if child.suffix == ".app" and child.is_dir():
                return child
        if len(children) == 1:
            child = children[0]
            if child.is_file() and is_executable(child):
                return child
        raise PackagingError(
            f"couldn't find any .app directories at {directory}"
        )

    def staple(self, zip_path: Pathlike) -> Path:
        """Staple the app inside zip_path and verify it.

        The original archive is replaced only when a bundle was stapled.
        """
        zip_path = Path(zip_path)
        if self.runner.dry_run:
            return self._staple_dry_run(zip_path)
        with tempfile.TemporaryDirectory(prefix="macapptool-") as tmpdir:
            self.archiver.extract(zip_path.resolve(), tmpdir)
            target = self.find_target(Path(tmpdir))
            if target.suffix != ".app":
                self.log.info(
                    "%s is not a bundle, skipping staple", target.name
                )
                verify_signature(target, self.runner, self.client.verbose)
                return zip_path
            self.client.staple(target)
            verify_signature(target, self.runner, self.client.verbose)
            self._replace_zip(target, zip_path)
        return zip_path

    def _replace_zip(self, app: Path, zip_path: Path) -> None:
        new_zip = zip_path.with_name(f".{zip_path.stem}.stapled.zip")
        self.log.info("compressing %s to %s", app.name, zip_path)
        try:
            self.archiver.compress(app, new_zip)
            os.replace(new_zip, zip_path)
        except BaseException:
            new_zip.unlink(missing_ok=True)
            raise

    def _staple_dry_run(self, zip_path: Path) -> Path:
        tmpdir = Path(tempfile.gettempdir()) / "macapptool-XXXXXX"
        app = tmpdir / f"{zip_path.stem}.app"
        new_zip = zip_path.with_name(f".{zip_path.stem}.stapled.zip")
        self.archiver.extract(zip_path, tmpdir)
        self.client.staple(app)
        verify_signature(app, self.runner, self.client.verbose)
        self.archiver.compress(app, new_zip)
        print(f"mv {new_zip} {zip_path}")
        return zip_path


class Notarizer:
    """Notarizes an app: zip, submit, wait, staple.

    Args:
        dry_run: If True, show commands without executing
        verbose: If True, pass --verbose to the platform tools
        interval: Seconds between status queries
        timeout: Give up waiting after this many seconds
        runner: Command runner (default: a new CommandRunner)
        http_client: Client used to download failure logs

    Example:
        request = NotarizationRequest("MyApp.app", "me@example.com", "pw")
        zip_path = Notarizer().notarize_file(request)
    """

    def __init__(
        self,
        dry_run: bool = False,
        verbose: bool = False,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float | None = None,
        runner: CommandRunner | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.runner = runner or CommandRunner(dry_run=dry_run, verbose=verbose)
        self.client = NotaryClient(self.runner, verbose=verbose)
        self.archiver = Archiver(self.runner)
        self.submitter = NotarizationSubmitter(self.client)
        self.poller = NotarizationPoller(
            self.client, interval, timeout, http_client
        )
        self.stapler = Stapler(self.client, self.archiver)
        self.log = logging.getLogger(self.__class__.__name__)

    def make_app_zip(self, app: Path) -> Path:
        zip_path = app_zip_path(app)
        self.log.info("compressing %s to %s", app, zip_path)
        return self.archiver.compress(app, zip_path)

    def notarize_file(self, request: NotarizationRequest) -> Path:
        """Notarize request.app_path, zipping it first when needed.

        Returns:
            Path to the zip archive holding the notarized app

        Raises:
            ConfigurationError: If credentials are missing
            ValidationError: If the artifact is missing or unsupported
        """
        if not request.username:
            raise ConfigurationError("missing username")
        if not request.password:
            raise ConfigurationError("missing password")
        path = request.app_path
        if not path.exists():
            raise ValidationError(f"Artifact does not exist: {path}")
        ext = path.suffix
        if ext in (".app", ""):
            request.app_path = self.make_app_zip(path)
        elif ext != ".zip":
            raise ValidationError(f"can't notarize app in {ext} format")
        return self.notarize_zip(request)

    def notarize_zip(self, request: NotarizationRequest) -> Path:
        if not request.ticket:
            request.ticket = self.submitter.submit(
                request.app_path, request.username, request.password
            )
        self.log.info("waiting for notarization of %s", request.ticket)
        self.poller.wait(request.ticket, request.username, request.password)
        return self.stapler.staple(request.app_path)


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="show commands without executing them",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        type=Path,
        help="path to a TOML config file (default: .macapptool.toml)",
    )


def _prompt(label: str, secret: bool = False) -> str:
    value = getpass.getpass(f"{label}: ") if secret else input(f"{label}: ")
    if not value:
        raise ConfigurationError(f"{label.lower()} can't be empty")
    return value


def _cmd_sign(args: argparse.Namespace) -> None:
    """Handle 'sign' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macapptool")

    config = get_config(args.config)
    identity = args.identity
    if identity is None and not os.getenv(ENV_DEV_ID):
        identity = get_config_value(config, "sign", "identity")
    entitlements = args.entitlements
    if entitlements is None:
        entitlements = get_config_value(config, "sign", "entitlements")

    for bundle in args.bundles:
        try:
            signer = Codesigner(
                path=bundle,
                identity=identity,
                entitlements=entitlements,
                dry_run=args.dry_run,
                verbose=args.verbose,
            )
            signer.process()
        except (MacAppToolError, OSError) as e:
            log.error("error signing %s: %s", bundle, e)
            sys.exit(1)


def _cmd_zip(args: argparse.Namespace) -> None:
    """Handle 'zip' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macapptool")

    config = get_config(args.config)
    output = args.output
    if output is None:
        output = get_config_value(config, "zip", "output")

    try:
        zipper = AppZipper(
            app=args.app,
            output=output,
            macos_suffix=not args.no_macos_suffix,
            delete=args.delete,
            force=args.force,
            dry_run=args.dry_run,
            verbose=args.verbose,
        )
        zipper.process()
    except (MacAppToolError, OSError) as e:
        log.error("error zipping %s: %s", args.app, e)
        sys.exit(1)


def _cmd_notarize(args: argparse.Namespace) -> None:
    """Handle 'notarize' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macapptool")

    try:
        config = get_config(args.config)
        username = (
            args.username
            or os.getenv(ENV_APPLE_ID)
            or get_config_value(config, "notarize", "username")
            or _prompt("Username")
        )
        password = (
            args.password
            or os.getenv(ENV_APP_PASSWORD)
            or get_config_value(config, "notarize", "password")
            or _prompt("Password", secret=True)
        )
        interval = args.poll_interval
        if interval is None:
            interval = get_config_seconds(
                config, "notarize", "poll_interval", DEFAULT_POLL_INTERVAL
            )
        timeout = args.timeout
        if timeout is None:
            timeout = get_config_seconds(config, "notarize", "timeout")

        notarizer = Notarizer(
            dry_run=args.dry_run,
            verbose=args.verbose,
            interval=interval,
            timeout=timeout,
        )
        request = NotarizationRequest(
            args.artifact, username, password, ticket=args.ticket
        )
        zip_path = notarizer.notarize_file(request)
    except (MacAppToolError, OSError) as e:
        log.error("error notarizing %s: %s", args.artifact, e)
        sys.exit(1)
    log.info("notarized: %s", zip_path)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the command-line interface."""
    parser = argparse.ArgumentParser(
        prog="macapptool",
        description="Sign, package and notarize macOS app bundles.",
        epilog=(
            "Examples:\n"
            "  macapptool sign MyApp.app\n"
            "  macapptool zip MyApp.app\n"
            "  macapptool notarize -u john@example.com MyApp.app\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        required=True,
    )

    # --- sign subcommand ---
    sign_parser = subparsers.add_parser(
        "sign",
        help="codesign an app bundle",
        description="Recursively codesign a macOS bundle and verify it.",
        epilog=(
            "Examples:\n"
            "  macapptool sign MyApp.app\n"
            "  macapptool sign MyApp.app -i 'Developer ID Application: John Doe'\n"
            "  macapptool sign MyApp.app -e entitlements.plist --dry-run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sign_parser.add_argument(
        "bundles",
        nargs="+",
        metavar="BUNDLE",
        help="bundle to sign (.app, .framework, ...)",
    )
    sign_parser.add_argument(
        "-i",
        "--identity",
        metavar="ID",
        help=f"signing identity (or set DEV_ID env var, default: {DEFAULT_IDENTITY})",
    )
    sign_parser.add_argument(
        "-e",
        "--entitlements",
        metavar="FILE",
        help="path to entitlements.plist",
    )
    _add_common_options(sign_parser)
    sign_parser.set_defaults(func=_cmd_sign)

    # --- zip subcommand ---
    zip_parser = subparsers.add_parser(
        "zip",
        help="create a zip file from an app bundle",
        description="Create a zip archive named after the bundle metadata.",
        epilog=(
            "Examples:\n"
            "  macapptool zip MyApp.app\n"
            "  macapptool zip MyApp.app -o release.zip --force\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    zip_parser.add_argument(
        "app",
        help="path to the .app bundle",
    )
    zip_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="output filename (default: <Name>_<version>_macOS.zip)",
    )
    zip_parser.add_argument(
        "--no-macos-suffix",
        action="store_true",
        help="omit _macOS from the default output filename",
    )
    zip_parser.add_argument(
        "-d",
        "--delete",
        action="store_true",
        help="delete the original bundle after zipping",
    )
    zip_parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="overwrite the output file if it exists",
    )
    _add_common_options(zip_parser)
    zip_parser.set_defaults(func=_cmd_zip)

    # --- notarize subcommand ---
    notarize_parser = subparsers.add_parser(
        "notarize",
        help="notarize and staple an app bundle",
        description=(
            "Submit an app to Apple's notarization service, wait for the "
            "result and staple the ticket."
        ),
        epilog=(
            "Examples:\n"
            "  macapptool notarize -u john@example.com MyApp.app\n"
            "  macapptool notarize -u john@example.com MyApp.zip\n"
            "  macapptool notarize --ticket 1111-2222 MyApp.zip\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    notarize_parser.add_argument(
        "artifact",
        help="path to the .app bundle, executable or .zip archive",
    )
    notarize_parser.add_argument(
        "-u",
        "--username",
        metavar="USER",
        help="Apple Developer account username (or set APPLE_ID env var)",
    )
    notarize_parser.add_argument(
        "-p",
        "--password",
        metavar="PASSWORD",
        help="app-specific password (or set APP_PASSWORD env var)",
    )
    notarize_parser.add_argument(
        "--ticket",
        metavar="UUID",
        help="ticket of an earlier submission, skips uploading",
    )
    notarize_parser.add_argument(
        "--poll-interval",
        type=float,
        metavar="SECONDS",
        help=f"seconds between status checks (default: {DEFAULT_POLL_INTERVAL:g})",
    )
    notarize_parser.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="give up waiting after this many seconds (default: never)",
    )
    _add_common_options(notarize_parser)
    notarize_parser.set_defaults(func=_cmd_notarize)

    return parser


def main() -> None:
    """Command line interface for macapptool."""
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)

    except MacAppToolError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
