#!/usr/bin/env python3
"""quiltinstaller - install Quilt Loader into a Minecraft launcher directory.

Looks up game and loader versions on the Quilt meta server and writes a
launcher profile for the chosen pair:

    <minecraft dir>/
        launcher_profiles.json          (profile entry added or updated)
        versions/
            quilt-loader-<loader>-<game>/
                quilt-loader-<loader>-<game>.jar    (empty placeholder)
                quilt-loader-<loader>-<game>.json   (launch profile)

Usage (CLI):
    # Latest stable game and loader into the default launcher directory
    quilt-installer client

    # Pin versions and target another directory
    quilt-installer client -m 1.20.1 -l 0.21.0 -d ~/.minecraft

Usage (API):
    from quiltinstaller import (
        ClientInstallation, MetaClient, install_client,
        latest_loader_version, latest_minecraft_version,
    )

    meta = MetaClient()
    game = latest_minecraft_version(meta.fetch_minecraft_versions())
    loader = latest_loader_version(meta.fetch_loader_versions())
    install_client(ClientInstallation(game, loader, "~/.minecraft"), meta)
"""

import argparse
import base64
import datetime
import json
import logging
import os
import shutil
import sys
from pathlib import Path

import requests

from macpackage import setup_logging

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.1"

# Type aliases
Pathlike = Path | str

# Quilt meta API root
META_URL = "https://meta.quiltmc.org/v3"

USER_AGENT = f"quilt-installer/{__version__}"

# Seconds to wait for the meta server
DEFAULT_TIMEOUT = 30

# quilt-meta lists both hashed and intermediary mappings; quilt-loader
# silently fails remapping when both are on the classpath
HASHED_LIBRARY_PREFIX = "org.quiltmc:hashed"

LAUNCHER_PROFILES = "launcher_profiles.json"

# ----------------------------------------------------------------------------
# Error handling


class InstallerError(Exception):
    """Base exception class for installer errors."""


class MetaError(InstallerError):
    """Exception raised when the meta server cannot be queried."""


class InstallLocationError(InstallerError):
    """Exception raised when the install location is unusable."""


class VersionNotFoundError(InstallerError):
    """Exception raised when a requested version is not published."""


# ----------------------------------------------------------------------------
# Version models


class MinecraftVersion:
    """A game version as listed by the meta server."""

    def __init__(self, version: str, stable: bool):
        self.version = version
        self.stable = stable

    def __str__(self) -> str:
        return self.version

    def __repr__(self) -> str:
        return f"MinecraftVersion({self.version!r}, stable={self.stable!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MinecraftVersion):
            return NotImplemented
        return (self.version, self.stable) == (other.version, other.stable)

    @classmethod
    def from_json(cls, data: dict) -> "MinecraftVersion":
        try:
            return cls(str(data["version"]), bool(data["stable"]))
        except (KeyError, TypeError) as e:
            raise MetaError(f"Malformed game version entry: {data!r}") from e


class LoaderVersion:
    """A Quilt Loader release as listed by the meta server."""

    def __init__(self, separator: str, build: int, maven: str, version: str):
        self.separator = separator
        self.build = build
        self.maven = maven
        self.version = version

    def __str__(self) -> str:
        return self.version

    def __repr__(self) -> str:
        return f"LoaderVersion({self.version!r}, build={self.build!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LoaderVersion):
            return NotImplemented
        return (self.separator, self.build, self.maven, self.version) == (
            other.separator,
            other.build,
            other.maven,
            other.version,
        )

    @property
    def is_prerelease(self) -> bool:
        """True for beta and other pre-release builds (semver suffix)."""
        return "-" in self.version.split("+", 1)[0]

    @classmethod
    def from_json(cls, data: dict) -> "LoaderVersion":
        try:
            return cls(
                str(data["separator"]),
                int(data["build"]),
                str(data["maven"]),
                str(data["version"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MetaError(f"Malformed loader version entry: {data!r}") from e


def latest_minecraft_version(
    versions: list[MinecraftVersion], snapshots: bool = False
) -> MinecraftVersion:
    """Return the newest game version, skipping snapshots unless asked.

    The meta server lists versions newest first.
    """
    for version in versions:
        if snapshots or version.stable:
            return version
    raise VersionNotFoundError("No matching Minecraft version published")


def latest_loader_version(
    versions: list[LoaderVersion], betas: bool = False
) -> LoaderVersion:
    """Return the newest loader version, skipping betas unless asked."""
    for version in versions:
        if betas or not version.is_prerelease:
            return version
    raise VersionNotFoundError("No matching Quilt Loader version published")


def find_version(versions: list, name: str):
    """Return the entry of versions whose version string is name."""
    for version in versions:
        if version.version == name:
            return version
    raise VersionNotFoundError(f"Version {name} is not published")


# ----------------------------------------------------------------------------
# Meta server client


class MetaClient:
    """Client for the Quilt meta HTTP API.

    Args:
        base_url: API root (default: META_URL)
        session: requests session to use; a new one is created if omitted
        timeout: request timeout in seconds
    """

    def __init__(
        self,
        base_url: str = META_URL,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        self.log = logging.getLogger(self.__class__.__name__)

    def get_json(self, path: str) -> object:
        """GET base_url/path and decode the JSON body.

        Raises:
            MetaError: On transport errors, HTTP errors or invalid JSON
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        self.log.debug("GET %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise MetaError(f"Request to {url} failed: {e}") from e
        except ValueError as e:
            raise MetaError(f"Invalid JSON from {url}: {e}") from e

    def _get_list(self, path: str) -> list:
        data = self.get_json(path)
        if not isinstance(data, list):
            raise MetaError(f"Expected a list from {path}")
        return data

    def fetch_minecraft_versions(self) -> list[MinecraftVersion]:
        return [
            MinecraftVersion.from_json(entry)
            for entry in self._get_list("versions/game")
        ]

    def fetch_loader_versions(self) -> list[LoaderVersion]:
        return [
            LoaderVersion.from_json(entry)
            for entry in self._get_list("versions/loader")
        ]

    def fetch_launch_profile(
        self, minecraft_version: str, loader_version: str
    ) -> dict:
        """Fetch the launcher JSON for a game and loader pair."""
        path = f"versions/loader/{minecraft_version}/{loader_version}/profile/json"
        data = self.get_json(path)
        if not isinstance(data, dict):
            raise MetaError(f"Expected an object from {path}")
        return data


# ----------------------------------------------------------------------------
# Installation


def get_default_client_directory(
    platform: str | None = None,
    environ: dict | None = None,
    home: Path | None = None,
) -> Path:
    """Return the vanilla launcher's default game directory."""
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ
    home = home or Path.home()
    if platform.startswith("win"):
        appdata = environ.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / ".minecraft"
    if platform == "darwin":
        return home / "Library" / "Application Support" / "minecraft"
    return home / ".minecraft"


def filter_hashed_libraries(profile: dict) -> dict:
    """Drop hashed-mapping libraries from a launch profile."""
    libraries = profile.get("libraries")
    if not isinstance(libraries, list):
        raise MetaError("Launch profile has no libraries list")
    result = dict(profile)
    result["libraries"] = [
        lib
        for lib in libraries
        if not (
            isinstance(lib, dict)
            and str(lib.get("name", "")).startswith(HASHED_LIBRARY_PREFIX)
        )
    ]
    return result


class ClientInstallation:
    """Parameters of a client install.

    Args:
        minecraft_version: Game version to install for
        loader_version: Quilt Loader version to install
        install_location: Launcher game directory (must exist)
        generate_profile: Whether to add a launcher_profiles.json entry
        icon: Optional PNG embedded as the launcher profile icon
    """

    def __init__(
        self,
        minecraft_version: MinecraftVersion,
        loader_version: LoaderVersion,
        install_location: Pathlike,
        generate_profile: bool = True,
        icon: Pathlike | None = None,
    ):
        self.minecraft_version = minecraft_version
        self.loader_version = loader_version
        self.install_location = Path(install_location).expanduser()
        self.generate_profile = generate_profile
        self.icon = Path(icon) if icon else None

    @property
    def profile_name(self) -> str:
        return f"quilt-loader-{self.loader_version}-{self.minecraft_version}"

    @property
    def short_profile_name(self) -> str:
        return f"quilt-loader-{self.minecraft_version}"

    @property
    def profile_dir(self) -> Path:
        return self.install_location / "versions" / self.profile_name

    def __repr__(self) -> str:
        return (
            f"ClientInstallation({self.minecraft_version}, "
            f"{self.loader_version}, {self.install_location})"
        )


class ServerInstallation:
    """Parameters of a server install."""

    def __init__(
        self,
        minecraft_version: MinecraftVersion,
        loader_version: LoaderVersion,
        install_location: Pathlike,
        download_jar: bool = True,
        generate_script: bool = True,
    ):
        self.minecraft_version = minecraft_version
        self.loader_version = loader_version
        self.install_location = Path(install_location).expanduser()
        self.download_jar = download_jar
        self.generate_script = generate_script

    def __repr__(self) -> str:
        return (
            f"ServerInstallation({self.minecraft_version}, "
            f"{self.loader_version}, {self.install_location})"
        )


def _timestamp() -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def update_launcher_profiles(installation: ClientInstallation) -> Path:
    """Add or refresh the profile entry in launcher_profiles.json.

    An existing entry for the same game version keeps its other settings.

    Returns:
        Path to launcher_profiles.json
    """
    path = installation.install_location / LAUNCHER_PROFILES
    try:
        with open(path, encoding="utf-8") as f:
            launcher = json.load(f)
    except (OSError, ValueError) as e:
        raise InstallLocationError(f"Cannot read {path}: {e}") from e
    if not isinstance(launcher, dict) or not isinstance(
        launcher.get("profiles"), dict
    ):
        raise InstallLocationError(f"{path} has no profiles table")

    name = installation.short_profile_name
    profile = launcher["profiles"].get(name)
    profile = dict(profile) if isinstance(profile, dict) else {}
    profile["name"] = name
    profile["type"] = "custom"
    profile["created"] = _timestamp()
    profile["lastVersionId"] = installation.profile_name
    if installation.icon:
        try:
            icon = base64.b64encode(installation.icon.read_bytes()).decode("ascii")
        except OSError as e:
            raise InstallerError(
                f"Cannot read icon {installation.icon}: {e}"
            ) from e
        profile["icon"] = f"data:image/png;base64,{icon}"
    launcher["profiles"][name] = profile

    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(launcher, f, indent=2)
    except OSError as e:
        raise InstallerError(f"Cannot write {path}: {e}") from e
    return path


def install_client(installation: ClientInstallation, meta: MetaClient) -> Path:
    """Install Quilt Loader into a launcher directory.

    Replaces any previous install of the same game and loader pair.

    Returns:
        Path to the version directory
    """
    log = logging.getLogger("quiltinstaller")
    log.info("Installing client: %r", installation)

    if not installation.install_location.is_dir():
        raise InstallLocationError(
            f"Target directory doesn't exist: {installation.install_location}"
        )

    profile = filter_hashed_libraries(
        meta.fetch_launch_profile(
            installation.minecraft_version.version,
            installation.loader_version.version,
        )
    )

    profile_dir = installation.profile_dir
    try:
        if profile_dir.exists():
            log.debug("Removing previous install %s", profile_dir)
            shutil.rmtree(profile_dir)
        profile_dir.mkdir(parents=True)

        # the vanilla launcher expects a jar next to the json
        (profile_dir / f"{installation.profile_name}.jar").touch()
        with open(
            profile_dir / f"{installation.profile_name}.json",
            "w",
            encoding="utf-8",
        ) as f:
            json.dump(profile, f)
    except OSError as e:
        raise InstallerError(f"Cannot write {profile_dir}: {e}") from e

    if installation.generate_profile:
        path = update_launcher_profiles(installation)
        log.info("Updated %s", path)

    log.info("Installed %s", installation.profile_name)
    return profile_dir


def install_server(installation: ServerInstallation, meta: MetaClient) -> None:
    """Server installs are not supported yet; logs the request only."""
    log = logging.getLogger("quiltinstaller")
    log.info("Installing server: %r", installation)
    log.warning("Server installation is not supported yet; nothing was written")


# ----------------------------------------------------------------------------
# Command-line interface


def _add_version_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-m",
        "--minecraft-version",
        metavar="VERSION",
        help="game version (default: latest)",
    )
    parser.add_argument(
        "-l",
        "--loader-version",
        metavar="VERSION",
        help="Quilt Loader version (default: latest)",
    )
    parser.add_argument(
        "--snapshots",
        action="store_true",
        help="allow snapshot game versions when picking the latest",
    )
    parser.add_argument(
        "--betas",
        action="store_true",
        help="allow beta loader versions when picking the latest",
    )
    parser.add_argument(
        "--meta-url",
        default=META_URL,
        metavar="URL",
        help=f"meta server root (default: {META_URL})",
    )
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


def resolve_versions(
    meta: MetaClient, args: argparse.Namespace
) -> tuple[MinecraftVersion, LoaderVersion]:
    """Pick the game and loader versions requested on the command line."""
    games = meta.fetch_minecraft_versions()
    if args.minecraft_version:
        game = find_version(games, args.minecraft_version)
    else:
        game = latest_minecraft_version(games, args.snapshots)

    loaders = meta.fetch_loader_versions()
    if args.loader_version:
        loader = find_version(loaders, args.loader_version)
    else:
        loader = latest_loader_version(loaders, args.betas)
    return game, loader


def _cmd_client(args: argparse.Namespace, meta: MetaClient) -> None:
    """Handle 'client' subcommand."""
    game, loader = resolve_versions(meta, args)
    installation = ClientInstallation(
        game,
        loader,
        args.install_dir or get_default_client_directory(),
        generate_profile=not args.no_profile,
        icon=args.icon,
    )
    install_client(installation, meta)


def _cmd_server(args: argparse.Namespace, meta: MetaClient) -> None:
    """Handle 'server' subcommand."""
    game, loader = resolve_versions(meta, args)
    installation = ServerInstallation(
        game,
        loader,
        args.install_dir or Path.cwd(),
        download_jar=not args.no_download_jar,
        generate_script=not args.no_script,
    )
    install_server(installation, meta)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the installer."""
    parser = argparse.ArgumentParser(
        prog="quilt-installer",
        description="Install Quilt Loader for a Minecraft client or server.",
        epilog=(
            "Examples:\n"
            "  quilt-installer client\n"
            "  quilt-installer client -m 1.20.1 -d ~/.minecraft --no-profile\n"
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

    # --- client subcommand ---
    client_parser = subparsers.add_parser(
        "client",
        help="install into a launcher game directory",
        description="Install Quilt Loader into a vanilla launcher directory.",
    )
    client_parser.add_argument(
        "-d",
        "--install-dir",
        metavar="DIR",
        help="launcher game directory (default: platform launcher directory)",
    )
    client_parser.add_argument(
        "--no-profile",
        action="store_true",
        help="do not add a launcher_profiles.json entry",
    )
    client_parser.add_argument(
        "--icon",
        metavar="FILE",
        help="PNG to use as the launcher profile icon",
    )
    _add_version_options(client_parser)
    client_parser.set_defaults(func=_cmd_client)

    # --- server subcommand ---
    server_parser = subparsers.add_parser(
        "server",
        help="install a server (not supported yet)",
        description="Install Quilt Loader for a dedicated server.",
    )
    server_parser.add_argument(
        "-d",
        "--install-dir",
        metavar="DIR",
        help="server directory (default: current directory)",
    )
    server_parser.add_argument(
        "--no-download-jar",
        action="store_true",
        help="do not download the vanilla server jar",
    )
    server_parser.add_argument(
        "--no-script",
        action="store_true",
        help="do not generate a launch script",
    )
    _add_version_options(server_parser)
    server_parser.set_defaults(func=_cmd_server)

    return parser


def main(argv: list[str] | None = None, session: requests.Session | None = None) -> None:
    """Command line interface for the installer."""
    try:
        args = build_parser().parse_args(argv)
        setup_logging(args.verbose, not args.no_color)
        meta = MetaClient(args.meta_url, session=session)
        args.func(args, meta)
    except InstallerError as e:
        logging.getLogger("quiltinstaller").error("Installation failed! %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.getLogger("quiltinstaller").info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
