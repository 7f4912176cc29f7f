"""Unit tests for Packager and the package() function."""

import errno
import logging
import os
import plistlib
from unittest.mock import patch

import pytest

from macpackage import (
    FileError,
    Packager,
    ValidationError,
    inspect_bundle,
    package,
)


def read_plist(path):
    with open(path, "rb") as f:
        return plistlib.load(f)


class TestPackagerInit:
    """Tests for Packager path layout."""

    def test_paths(self, temp_dir, sample_executable):
        packager = Packager(sample_executable, temp_dir / "Foo", "com.example.foo")

        assert packager.name == "Foo"
        assert packager.bundle == temp_dir / "Foo.app"
        assert packager.contents == temp_dir / "Foo.app" / "Contents"
        assert packager.macos == packager.contents / "MacOS"
        assert packager.executable == packager.macos / "Foo"
        assert packager.info_plist == packager.contents / "Info.plist"
        assert packager.descriptor.name == "Foo"
        assert packager.descriptor.identifier == "com.example.foo"

    def test_name_from_last_segment(self, temp_dir, sample_executable):
        """The bundle name ignores the executable's own name."""
        packager = Packager(
            sample_executable, temp_dir / "out" / "My App", "org.test"
        )
        assert packager.name == "My App"
        assert packager.bundle == temp_dir / "out" / "My App.app"

    def test_relative_bundle_path(self, sample_executable):
        packager = Packager(sample_executable, "Foo", "com.example.foo")
        assert str(packager.bundle) == "Foo.app"

    def test_init_touches_nothing(self, temp_dir, sample_executable):
        Packager(sample_executable, temp_dir / "Foo", "com.example.foo")
        assert not (temp_dir / "Foo.app").exists()


class TestPackage:
    """Tests for end-to-end packaging."""

    def test_creates_layout(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "com.example.foo")

        assert result == temp_dir / "Foo.app"
        assert (result / "Contents" / "MacOS").is_dir()
        assert (result / "Contents" / "Info.plist").is_file()

    def test_executable_is_hard_link(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "com.example.foo")
        linked = result / "Contents" / "MacOS" / "Foo"

        assert os.path.samefile(linked, sample_executable)
        assert not linked.is_symlink()
        assert sample_executable.stat().st_nlink == 2

    def test_plist_contents(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "com.example.foo")
        info_plist = result / "Contents" / "Info.plist"

        data = read_plist(info_plist)
        assert data["CFBundleExecutable"] == "Foo"
        assert data["CFBundleName"] == "Foo"
        assert data["CFBundleIdentifier"] == "com.example.foo"

        text = info_plist.read_text(encoding="utf-8")
        assert "<string>Foo</string>" in text
        assert "<string>com.example.foo</string>" in text

    def test_rerun_is_idempotent(self, temp_dir, sample_executable):
        package(sample_executable, temp_dir / "Foo", "com.example.foo")
        result = package(sample_executable, temp_dir / "Foo", "com.example.bar")

        macos = result / "Contents" / "MacOS"
        assert [p.name for p in macos.iterdir()] == ["Foo"]
        assert os.path.samefile(macos / "Foo", sample_executable)
        data = read_plist(result / "Contents" / "Info.plist")
        assert data["CFBundleIdentifier"] == "com.example.bar"

    def test_replaces_existing_file(self, temp_dir, sample_executable):
        """A stale file at the link path is replaced, not kept alongside."""
        macos = temp_dir / "Foo.app" / "Contents" / "MacOS"
        macos.mkdir(parents=True)
        stale = macos / "Foo"
        stale.write_bytes(b"stale build")

        package(sample_executable, temp_dir / "Foo", "com.example.foo")

        assert [p.name for p in macos.iterdir()] == ["Foo"]
        assert stale.read_bytes() == sample_executable.read_bytes()
        assert os.path.samefile(stale, sample_executable)

    def test_rebuilt_source_visible_through_link(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "com.example.foo")
        with open(sample_executable, "ab") as f:
            f.write(b"# rebuilt\n")

        linked = result / "Contents" / "MacOS" / "Foo"
        assert linked.read_bytes().endswith(b"# rebuilt\n")

    def test_overwrites_existing_plist(self, temp_dir, sample_executable):
        contents = temp_dir / "Foo.app" / "Contents"
        contents.mkdir(parents=True)
        (contents / "Info.plist").write_text("old contents " * 100)

        package(sample_executable, temp_dir / "Foo", "com.example.foo")

        text = (contents / "Info.plist").read_text(encoding="utf-8")
        assert "old contents" not in text
        assert text.startswith('<?xml version="1.0" encoding="UTF-8"?>\n')

    def test_logs_packaging_line(self, temp_dir, sample_executable, caplog):
        caplog.set_level(logging.INFO)
        package(sample_executable, temp_dir / "Foo", "com.example.foo")
        assert (
            f"Packaging {sample_executable} as {temp_dir / 'Foo.app'} "
            "with app id com.example.foo"
        ) in caplog.text


class TestPackageFailures:
    """Tests for filesystem failures at each step."""

    def test_missing_executable(self, temp_dir):
        with pytest.raises(FileError) as excinfo:
            package(temp_dir / "nonexistent", temp_dir / "out", "com.example.id")

        assert excinfo.value.step == "link"
        assert excinfo.value.path == temp_dir / "out.app" / "Contents" / "MacOS" / "out"
        assert isinstance(excinfo.value.__cause__, FileNotFoundError)
        # link runs before the plist write
        assert not (temp_dir / "out.app" / "Contents" / "Info.plist").exists()
        # no rollback of the directories already created
        assert (temp_dir / "out.app" / "Contents" / "MacOS").is_dir()

    def test_missing_executable_keeps_old_plist_untouched(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "com.example.old")
        sample_executable.unlink()

        with pytest.raises(FileError, match="link failed"):
            package(sample_executable, temp_dir / "Foo", "com.example.new")

        assert not (result / "Contents" / "MacOS" / "Foo").exists()
        data = read_plist(result / "Contents" / "Info.plist")
        assert data["CFBundleIdentifier"] == "com.example.old"

    def test_mkdir_failure(self, temp_dir, sample_executable):
        (temp_dir / "Foo.app").write_text("a file, not a directory")

        with pytest.raises(FileError) as excinfo:
            package(sample_executable, temp_dir / "Foo", "com.example.foo")
        assert excinfo.value.step == "mkdir"
        assert excinfo.value.path == temp_dir / "Foo.app" / "Contents" / "MacOS"

    def test_remove_failure(self, temp_dir, sample_executable):
        """A directory squatting on the link path cannot be removed."""
        (temp_dir / "Foo.app" / "Contents" / "MacOS" / "Foo").mkdir(parents=True)

        with pytest.raises(FileError) as excinfo:
            package(sample_executable, temp_dir / "Foo", "com.example.foo")
        assert excinfo.value.step == "remove"
        assert not (temp_dir / "Foo.app" / "Contents" / "Info.plist").exists()

    def test_cross_device_link(self, temp_dir, sample_executable):
        with patch(
            "macpackage.os.link",
            side_effect=OSError(errno.EXDEV, "Invalid cross-device link"),
        ):
            with pytest.raises(FileError, match="cross-device") as excinfo:
                package(sample_executable, temp_dir / "Foo", "com.example.foo")
        assert excinfo.value.step == "link"
        assert not (temp_dir / "Foo.app" / "Contents" / "Info.plist").exists()

    def test_write_failure(self, temp_dir, sample_executable):
        (temp_dir / "Foo.app" / "Contents" / "Info.plist").mkdir(parents=True)

        with pytest.raises(FileError) as excinfo:
            package(sample_executable, temp_dir / "Foo", "com.example.foo")
        assert excinfo.value.step == "write"
        assert excinfo.value.path == temp_dir / "Foo.app" / "Contents" / "Info.plist"
        # the link step had already completed
        assert (temp_dir / "Foo.app" / "Contents" / "MacOS" / "Foo").exists()

    def test_error_message_names_step_and_path(self, temp_dir):
        with pytest.raises(FileError) as excinfo:
            package(temp_dir / "missing", temp_dir / "Foo", "com.example.foo")
        message = str(excinfo.value)
        assert message.startswith("link failed for ")
        assert str(temp_dir / "Foo.app" / "Contents" / "MacOS" / "Foo") in message


class TestDryRun:
    """Tests for dry-run packaging."""

    def test_dry_run_touches_nothing(self, temp_dir, sample_executable, caplog):
        caplog.set_level(logging.INFO)
        result = package(
            sample_executable, temp_dir / "Foo", "com.example.foo", dry_run=True
        )

        assert result == temp_dir / "Foo.app"
        assert not result.exists()
        assert sample_executable.stat().st_nlink == 1
        assert "[DRY RUN] Would link" in caplog.text
        assert "[DRY RUN] Would create" in caplog.text

    def test_dry_run_missing_executable(self, temp_dir):
        """Without strict mode nothing checks the source in a dry run."""
        result = package(temp_dir / "missing", temp_dir / "Foo", "x", dry_run=True)
        assert not result.exists()


class TestStrictMode:
    """Tests for opt-in input validation."""

    def test_missing_executable(self, temp_dir):
        with pytest.raises(ValidationError, match="does not exist"):
            package(temp_dir / "missing", temp_dir / "Foo", "x", validate=True)
        assert not (temp_dir / "Foo.app").exists()

    def test_directory_executable(self, temp_dir):
        (temp_dir / "bin").mkdir()
        with pytest.raises(ValidationError, match="not a regular file"):
            package(temp_dir / "bin", temp_dir / "Foo", "x", validate=True)

    def test_non_executable(self, temp_dir, sample_executable):
        sample_executable.chmod(0o644)
        with patch("macpackage.os.access", return_value=False):
            with pytest.raises(ValidationError, match="not executable"):
                package(sample_executable, temp_dir / "Foo", "x", validate=True)
        assert not (temp_dir / "Foo.app").exists()

    @pytest.mark.parametrize("bundle_id", ["", "   "])
    def test_blank_identifier(self, temp_dir, sample_executable, bundle_id):
        with pytest.raises(ValidationError, match="cannot be empty"):
            package(sample_executable, temp_dir / "Foo", bundle_id, validate=True)
        assert not (temp_dir / "Foo.app").exists()

    def test_blank_identifier_allowed_when_lenient(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "")
        data = read_plist(result / "Contents" / "Info.plist")
        assert data["CFBundleIdentifier"] == ""

    def test_valid_inputs(self, temp_dir, sample_executable):
        result = package(
            sample_executable, temp_dir / "Foo", "com.example.foo", validate=True
        )
        assert (result / "Contents" / "MacOS" / "Foo").exists()


class TestInspectBundle:
    """Tests for inspect_bundle()."""

    def test_inspect_packaged(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "com.example.foo")

        info = inspect_bundle(result)
        assert info["bundle"] == result
        assert info["descriptor"].name == "Foo"
        assert info["descriptor"].identifier == "com.example.foo"
        assert info["has_executable"] is True

    def test_inspect_missing_executable(self, temp_dir, sample_executable):
        result = package(sample_executable, temp_dir / "Foo", "com.example.foo")
        (result / "Contents" / "MacOS" / "Foo").unlink()

        info = inspect_bundle(result)
        assert info["has_executable"] is False

    def test_inspect_not_a_bundle(self, temp_dir):
        with pytest.raises(FileError) as excinfo:
            inspect_bundle(temp_dir)
        assert excinfo.value.step == "read"
