"""Shared fixtures: sample bundles and a scripted command runner."""

import os
import plistlib
import zipfile
from pathlib import Path

import pytest

from macapptool import CommandError, CommandResult, CommandRunner

TICKET = "11111111-2222-3333-4444-555555555555"


def status_output(status: str, log_url: str | None = None) -> str:
    """Build an altool --notarization-info response."""
    lines = [
        "No errors getting notarization info.",
        "",
        "          Date: 2019-10-22 10:00:00 +0000",
        f"   RequestUUID: {TICKET}",
        f"        Status: {status}",
    ]
    if log_url:
        lines.append(f"    LogFileURL: {log_url}")
    lines.append("   Status Code: 0")
    return "\n".join(lines) + "\n"


def make_zip(source: Path, output: Path) -> None:
    """Zip source the way `ditto -c -k --keepParent` does."""
    with zipfile.ZipFile(output, "w") as zf:
        if source.is_file():
            zf.write(source, source.name)
            return
        zf.write(source, source.name)
        for path in sorted(source.rglob("*")):
            zf.write(path, path.relative_to(source.parent).as_posix())


def extract_zip(archive: Path, dest: Path) -> None:
    """Unzip archive into dest, restoring file modes like `ditto -x -k`."""
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            extracted = zf.extract(info, dest)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                os.chmod(extracted, mode)


def write_info_plist(app: Path, **values: object) -> Path:
    """Write Contents/Info.plist for app."""
    contents = app / "Contents"
    contents.mkdir(parents=True, exist_ok=True)
    plist = contents / "Info.plist"
    plist.write_bytes(plistlib.dumps(values))
    return plist


class FakeRunner(CommandRunner):
    """A CommandRunner that emulates the platform tools.

    ditto creates and extracts real zip files, stapler drops a
    CodeResources marker into the bundle, and altool answers from the
    scripted submit_output and statuses.
    """

    def __init__(
        self,
        submit_output: str = f"RequestUUID = {TICKET}\n",
        submit_returncode: int = 0,
        statuses: list[str] | None = None,
        spctl_returncode: int = 0,
    ) -> None:
        super().__init__(dry_run=False)
        self.submit_output = submit_output
        self.submit_returncode = submit_returncode
        self.statuses = list(statuses or [status_output("success")])
        self.spctl_returncode = spctl_returncode
        self.calls: list[list[str]] = []

    def commands(self, *prefix: str) -> list[list[str]]:
        """Return recorded calls starting with prefix."""
        return [c for c in self.calls if c[: len(prefix)] == list(prefix)]

    def run(self, args, cwd=None, capture=False, check=True):
        args = list(args)
        self.calls.append(args)
        result = self._dispatch(args)
        if check and not result.ok:
            raise CommandError(" ".join(args), result.returncode, result.output)
        return result

    def _dispatch(self, args: list[str]) -> CommandResult:
        if args[:3] == ["ditto", "-c", "-k"]:
            make_zip(Path(args[-2]), Path(args[-1]))
        elif args[:3] == ["ditto", "-x", "-k"]:
            extract_zip(Path(args[3]), Path(args[4]))
        elif args[:3] == ["xcrun", "altool", "--notarize-app"]:
            return CommandResult(self.submit_returncode, self.submit_output)
        elif args[:3] == ["xcrun", "altool", "--notarization-info"]:
            return CommandResult(0, self.statuses.pop(0))
        elif args[:3] == ["xcrun", "stapler", "staple"]:
            app = Path(args[3])
            (app / "Contents" / "CodeResources").write_bytes(b"ticket")
        elif args[0] == "spctl":
            return CommandResult(self.spctl_returncode)
        return CommandResult(0)


@pytest.fixture
def runner():
    """A FakeRunner reporting immediate success."""
    return FakeRunner()


@pytest.fixture
def sample_app(tmp_path):
    """Create MyApp.app with an Info.plist and an executable."""
    app = tmp_path / "MyApp.app"
    write_info_plist(
        app,
        CFBundleIdentifier="com.example.myapp",
        CFBundleName="MyApp",
        CFBundleShortVersionString="1.2",
    )
    macos = app / "Contents" / "MacOS"
    macos.mkdir()
    exe = macos / "MyApp"
    exe.write_bytes(b"#!/bin/sh\necho hello\n")
    exe.chmod(0o755)
    return app


@pytest.fixture
def sample_zip(sample_app):
    """Zip MyApp.app into MyApp.zip next to it."""
    output = sample_app.parent / "MyApp.zip"
    make_zip(sample_app, output)
    return output
