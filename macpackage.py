#!/usr/bin/env python3
"""macpackage - wrap a compiled executable into a minimal macOS .app bundle.

The packager creates the standard bundle layout around an existing
executable:

    Foo.app/
        Contents/
            Info.plist
            MacOS/
                Foo        (hard link to the source executable)

The executable is hard-linked rather than copied, so the bundle shares
its contents with the build output and follows in-place rebuilds. Source
and destination must therefore live on the same filesystem.

Usage (CLI):
    # Package target/release/installer as dist/Installer.app
    macpackage package target/release/installer dist/Installer com.example.installer

    # Show the descriptor of an existing bundle
    macpackage inspect dist/Installer.app

Usage (API):
    from macpackage import Packager, package

    bundle_path = package("target/release/installer", "dist/Installer",
                          "com.example.installer")
"""

import argparse
import datetime
import logging
import os
import plistlib
import sys
from pathlib import Path
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.1"

# Type aliases
Pathlike = Path | str

# Bundle extension appended to the destination path
BUNDLE_EXT = ".app"

# Fixed descriptor values
INFO_DICTIONARY_VERSION = "6.0"
PACKAGE_TYPE = "APPL"
SHORT_VERSION = "1.0"
BUNDLE_VERSION = "1"
SUPPORTED_PLATFORMS = ["MacOSX"]

# Configuration file names searched in the working directory
CONFIG_FILENAMES = [".macpackage.toml", "macpackage.toml"]

INFO_PLIST_TMPL = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
    <dict>
        <key>CFBundleExecutable</key>
        <string>{name}</string>
        <key>CFBundleIdentifier</key>
        <string>{identifier}</string>
        <key>CFBundleInfoDictionaryVersion</key>
        <string>{dictionary_version}</string>
        <key>CFBundleName</key>
        <string>{name}</string>
        <key>CFBundlePackageType</key>
        <string>{package_type}</string>
        <key>CFBundleShortVersionString</key>
        <string>{short_version}</string>
        <key>CFBundleSupportedPlatforms</key>
        <array>
                <string>{platform}</string>
        </array>
        <key>CFBundleVersion</key>
        <string>{bundle_version}</string>
    </dict>
</plist>
"""

# ----------------------------------------------------------------------------
# Error handling


class PackagerError(Exception):
    """Base exception class for macpackage errors."""


class FileError(PackagerError):
    """Exception raised when a filesystem step fails.

    Attributes:
        step: Name of the failing step ("mkdir", "remove", "link",
            "write" or "read")
        path: The path the step was operating on
    """

    def __init__(self, step: str, path: Pathlike, reason: object):
        self.step = step
        self.path = Path(path)
        super().__init__(f"{step} failed for {path}: {reason}")


class ValidationError(PackagerError):
    """Exception raised when validation fails."""


class ConfigurationError(PackagerError):
    """Exception raised when configuration is invalid."""


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macpackage.toml in current directory
    3. macpackage.toml in current directory

    An explicit config_path must exist and parse; the default locations
    are optional and skipped when absent.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the explicit config file is missing or invalid

    Example .macpackage.toml:
        [package]
        id = "org.quiltmc.quilt-installer"
    """
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path is not None:
        config_path = Path(config_path)
        try:
            with open(config_path, "rb") as f:
                data: dict[str, object] = tomllib.load(f)
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(
                f"Cannot load config {config_path}: {e}"
            ) from e
        return data

    cwd = Path.cwd()
    for name in CONFIG_FILENAMES:
        path = cwd / name
        if not path.exists():
            continue
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError):
            logging.getLogger("macpackage").warning(
                "Ignoring unreadable config file: %s", path
            )

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


# ----------------------------------------------------------------------------
# Validation


def validate_executable(path: Pathlike) -> None:
    """Check that path is an existing, regular, executable file.

    Raises:
        ValidationError: If any check fails
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Executable does not exist: {path}")
    if not path.is_file():
        raise ValidationError(f"Executable is not a regular file: {path}")
    if not os.access(path, os.X_OK):
        raise ValidationError(f"File is not executable: {path}")


def validate_bundle_id(bundle_id: str) -> None:
    """Reject a blank bundle identifier."""
    if not bundle_id or not bundle_id.strip():
        raise ValidationError("Bundle identifier cannot be empty")


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Logging formatter with elapsed time and optional ANSI colors."""

    RESET = "\x1b[0m"
    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[38;20m",
        logging.INFO: "\x1b[32;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    PLAIN_FMT = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _format_for(self, levelno: int) -> str:
        if not self.use_color:
            return self.PLAIN_FMT
        color = self.LEVEL_COLORS.get(levelno, self.RESET)
        return (
            f"%(delta)s - {color}%(levelname)s{self.RESET} - "
            f"%(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the record, stamping the time elapsed since startup."""
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = elapsed.strftime("%H:%M:%S")
        return logging.Formatter(self._format_for(record.levelno)).format(
            record
        )


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the command-line tool.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    handler = logging.StreamHandler()
    handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Bundle descriptor


class BundleDescriptor:
    """The Info.plist contents of a packaged bundle.

    Only the executable name and bundle identifier vary; every other key
    is a fixed constant.

    Args:
        name: Executable and bundle display name
        identifier: Bundle identifier, embedded verbatim
    """

    def __init__(self, name: str, identifier: str):
        self.name = name
        self.identifier = identifier

    def __repr__(self) -> str:
        return f"BundleDescriptor(name={self.name!r}, identifier={self.identifier!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BundleDescriptor):
            return NotImplemented
        return (self.name, self.identifier) == (other.name, other.identifier)

    def as_dict(self) -> dict[str, object]:
        """Return the descriptor as a plist dictionary."""
        return {
            "CFBundleExecutable": self.name,
            "CFBundleIdentifier": self.identifier,
            "CFBundleInfoDictionaryVersion": INFO_DICTIONARY_VERSION,
            "CFBundleName": self.name,
            "CFBundlePackageType": PACKAGE_TYPE,
            "CFBundleShortVersionString": SHORT_VERSION,
            "CFBundleSupportedPlatforms": list(SUPPORTED_PLATFORMS),
            "CFBundleVersion": BUNDLE_VERSION,
        }

    def render(self) -> str:
        """Render the Info.plist document text."""
        return INFO_PLIST_TMPL.format(
            name=escape(self.name),
            identifier=escape(self.identifier),
            dictionary_version=INFO_DICTIONARY_VERSION,
            package_type=PACKAGE_TYPE,
            short_version=SHORT_VERSION,
            platform=SUPPORTED_PLATFORMS[0],
            bundle_version=BUNDLE_VERSION,
        )

    @classmethod
    def load(cls, path: Pathlike) -> "BundleDescriptor":
        """Read a descriptor back from an Info.plist file.

        Raises:
            FileError: If the file cannot be read or parsed
            ValidationError: If a required key is missing
        """
        path = Path(path)
        try:
            with open(path, "rb") as f:
                data = plistlib.load(f)
        except (
            OSError,
            ValueError,
            ExpatError,
            plistlib.InvalidFileException,
        ) as e:
            raise FileError("read", path, e) from e

        if not isinstance(data, dict):
            raise ValidationError(f"Info.plist is not a dictionary: {path}")
        for key in ("CFBundleExecutable", "CFBundleIdentifier"):
            if not isinstance(data.get(key), str):
                raise ValidationError(f"Info.plist is missing {key}: {path}")
        return cls(data["CFBundleExecutable"], data["CFBundleIdentifier"])


# ----------------------------------------------------------------------------
# Packager


class Packager:
    """Packages an executable as a minimal macOS application bundle.

    The steps run in a fixed order: create Contents/MacOS, remove a stale
    executable, hard-link the new one, write Info.plist. A failing step
    raises FileError and leaves whatever was already created in place.

    Args:
        executable: Path to the compiled executable
        bundle_path: Destination path without the .app suffix
        bundle_id: Bundle identifier written to Info.plist
        dry_run: If True, only log what would be done
        validate: If True, check inputs before touching the filesystem

    Example:
        packager = Packager("target/release/app", "dist/App", "com.example.app")
        packager.create()
    """

    def __init__(
        self,
        executable: Pathlike,
        bundle_path: Pathlike,
        bundle_id: str,
        dry_run: bool = False,
        validate: bool = False,
    ):
        self.source = Path(executable)
        self.bundle_id = bundle_id
        self.dry_run = dry_run
        self.validate = validate
        self.log = logging.getLogger(self.__class__.__name__)

        destination = Path(bundle_path)
        self.name = destination.name

        # Bundle structure paths
        self.bundle = destination.parent / (self.name + BUNDLE_EXT)
        self.contents = self.bundle / "Contents"
        self.macos = self.contents / "MacOS"

        # Files
        self.executable = self.macos / self.name
        self.info_plist = self.contents / "Info.plist"

        self.descriptor = BundleDescriptor(self.name, bundle_id)

    def check_inputs(self) -> None:
        """Validate the executable and identifier (strict mode only)."""
        validate_executable(self.source)
        validate_bundle_id(self.bundle_id)

    def create_macos_dir(self) -> None:
        """Create Contents/MacOS, tolerating existing directories."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would create %s", self.macos)
            return
        try:
            self.macos.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileError("mkdir", self.macos, e) from e

    def remove_stale_executable(self) -> None:
        """Remove an executable left by a previous run, if any."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would remove %s if present", self.executable)
            return
        try:
            self.executable.unlink(missing_ok=True)
        except OSError as e:
            raise FileError("remove", self.executable, e) from e

    def link_executable(self) -> None:
        """Hard-link the source executable into the bundle."""
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would link %s to %s", self.source, self.executable
            )
            return
        self.log.debug("ln %s %s", self.source, self.executable)
        try:
            os.link(self.source, self.executable)
        except OSError as e:
            raise FileError("link", self.executable, e) from e

    def write_info_plist(self) -> None:
        """Write Info.plist, replacing any previous one."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would create %s", self.info_plist)
            return
        try:
            with open(self.info_plist, "w", encoding="utf-8") as fopen:
                fopen.write(self.descriptor.render())
        except OSError as e:
            raise FileError("write", self.info_plist, e) from e

    def create(self) -> Path:
        """Create the bundle.

        Returns:
            Path to the .app bundle
        """
        self.log.info(
            "Packaging %s as %s with app id %s",
            self.source,
            self.bundle,
            self.bundle_id,
        )
        if self.validate:
            self.check_inputs()

        self.create_macos_dir()
        self.remove_stale_executable()
        self.link_executable()
        self.write_info_plist()

        if self.dry_run:
            self.log.info("[DRY RUN] Bundle would be created at: %s", self.bundle)
        else:
            self.log.info("Bundle created successfully: %s", self.bundle)
        return self.bundle


def inspect_bundle(bundle: Pathlike) -> dict[str, object]:
    """Describe an existing bundle.

    Args:
        bundle: Path to the .app directory

    Returns:
        Dictionary with the bundle path, its descriptor and whether the
        executable named by the descriptor is present in Contents/MacOS.
    """
    bundle = Path(bundle)
    descriptor = BundleDescriptor.load(bundle / "Contents" / "Info.plist")
    executable = bundle / "Contents" / "MacOS" / descriptor.name
    return {
        "bundle": bundle,
        "descriptor": descriptor,
        "executable": executable,
        "has_executable": executable.is_file(),
    }


# ----------------------------------------------------------------------------
# Functional API


def package(
    executable_path: Pathlike,
    bundle_path: Pathlike,
    bundle_id: str,
    dry_run: bool = False,
    validate: bool = False,
) -> Path:
    """Package an executable as {bundle_path}.app.

    This is a convenience function that creates a Packager instance
    and calls create() on it.

    Returns:
        Path to the created bundle

    Raises:
        FileError: If a filesystem step fails
        ValidationError: If validate is set and an input is rejected

    Example:
        package("/bin/true", "/tmp/Foo", "com.example.foo")
    """
    packager = Packager(
        executable_path,
        bundle_path,
        bundle_id,
        dry_run=dry_run,
        validate=validate,
    )
    return packager.create()


# ----------------------------------------------------------------------------
# Command-line interface


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _cmd_package(args: argparse.Namespace) -> None:
    """Handle 'package' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macpackage")

    config = load_config(Path(args.config) if args.config else None)
    bundle_id = args.bundle_id
    if bundle_id is None:
        bundle_id = get_config_value(config, "package", "id")
    if bundle_id is None:
        raise ConfigurationError(
            "No bundle identifier given on the command line or in [package] id"
        )

    bundle_path = package(
        args.executable,
        args.bundle,
        bundle_id,
        dry_run=args.dry_run,
        validate=args.strict,
    )
    log.info("Created: %s", bundle_path)


def _cmd_inspect(args: argparse.Namespace) -> None:
    """Handle 'inspect' subcommand."""
    setup_logging(args.verbose, not args.no_color)

    info = inspect_bundle(args.bundle)
    descriptor = info["descriptor"]
    print(f"bundle:     {info['bundle']}")
    print(f"executable: {descriptor.name}")
    print(f"identifier: {descriptor.identifier}")
    print(f"present:    {'yes' if info['has_executable'] else 'no'}")
    if not info["has_executable"]:
        raise ValidationError(f"Bundle executable is missing: {info['executable']}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the command-line tool."""
    parser = argparse.ArgumentParser(
        prog="macpackage",
        description="Package an executable as a minimal macOS .app bundle.",
        epilog=(
            "Examples:\n"
            "  macpackage package target/release/app dist/App com.example.app\n"
            "  macpackage inspect dist/App.app\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        required=True,
    )

    # --- package subcommand ---
    package_parser = subparsers.add_parser(
        "package",
        help="wrap an executable in a .app bundle",
        description=(
            "Hard-link an executable into <bundle>.app/Contents/MacOS and "
            "write a minimal Info.plist."
        ),
        epilog=(
            "Examples:\n"
            "  macpackage package target/release/app dist/App com.example.app\n"
            "  macpackage package target/release/app dist/App --config ci.toml\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    package_parser.add_argument(
        "executable",
        help="path to the compiled executable",
    )
    package_parser.add_argument(
        "bundle",
        help="destination bundle path without the .app suffix",
    )
    package_parser.add_argument(
        "bundle_id",
        nargs="?",
        help="bundle identifier (default: [package] id from config)",
    )
    package_parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="path to a TOML config file",
    )
    package_parser.add_argument(
        "--strict",
        action="store_true",
        help="validate the executable and identifier before packaging",
    )
    package_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    _add_common_options(package_parser)
    package_parser.set_defaults(func=_cmd_package)

    # --- inspect subcommand ---
    inspect_parser = subparsers.add_parser(
        "inspect",
        help="show the Info.plist descriptor of a bundle",
        description="Read an existing bundle's Info.plist and check its executable.",
    )
    inspect_parser.add_argument(
        "bundle",
        help="path to the .app bundle",
    )
    _add_common_options(inspect_parser)
    inspect_parser.set_defaults(func=_cmd_inspect)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macpackage."""
    try:
        args = build_parser().parse_args(argv)
        args.func(args)
    except PackagerError as e:
        logging.getLogger("macpackage").error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.getLogger("macpackage").info("Interrupted by user")
        sys.exit(130)
    except OSError as e:
        logging.getLogger("macpackage").error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
