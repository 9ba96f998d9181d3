"""Tests for BuildOptionsBuilder — error accumulation is the main contract."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from ocirootfs.core.errors import InvalidBuildOptions
from ocirootfs.models.build import BuildOptionsBuilder


class TestDefaults:
    def test_defaults_from_settings(self, settings):
        options = BuildOptionsBuilder(settings).build()
        assert options.target_os == "linux"
        assert options.target_arch == "amd64"
        assert options.image_name == "rootfs.ext4"
        assert options.image_size == "150M"
        assert options.output_path == Path(".") / "rootfs.ext4"
        assert options.timeout is None
        assert not options.keep_staging

    def test_settings_override_defaults(self, monkeypatch):
        from ocirootfs.config import RootfsSettings

        monkeypatch.setenv("OCIROOTFS_IMAGE_SIZE", "512M")
        monkeypatch.setenv("OCIROOTFS_DEFAULT_ARCH", "arm64")
        options = BuildOptionsBuilder(RootfsSettings(_env_file=None)).build()
        assert options.image_size == "512M"
        assert options.target_arch == "arm64"

    def test_default_logger(self, settings):
        options = BuildOptionsBuilder(settings).build()
        assert options.effective_logger.name == "ocirootfs.build"

    def test_default_logger_discards_records(self, settings):
        seen = []
        handler = logging.Handler()
        handler.emit = seen.append
        root = logging.getLogger()
        root.addHandler(handler)
        try:
            BuildOptionsBuilder(settings).build().effective_logger.warning("staged")
        finally:
            root.removeHandler(handler)
        assert seen == []


class TestSetters:
    def test_with_os_arch(self, settings):
        options = BuildOptionsBuilder(settings).with_os_arch("linux", "arm64").build()
        assert (options.target_os, options.target_arch) == ("linux", "arm64")

    def test_empty_os_arch_keeps_defaults(self, settings):
        options = BuildOptionsBuilder(settings).with_os_arch("", "").build()
        assert (options.target_os, options.target_arch) == ("linux", "amd64")

    def test_with_logger(self, settings):
        logger = logging.getLogger("custom")
        options = BuildOptionsBuilder(settings).with_logger(logger).build()
        assert options.effective_logger is logger

    def test_with_image_partial(self, settings):
        options = BuildOptionsBuilder(settings).with_image(size="2G").build()
        assert options.image_name == "rootfs.ext4"
        assert options.image_size == "2G"

    def test_full_chain(self, settings, tmp_path):
        callback = lambda update: None  # noqa: E731
        options = (
            BuildOptionsBuilder(settings)
            .with_output_dir(tmp_path / "out")
            .with_image("disk.img", "1G")
            .with_staging_parent(tmp_path)
            .with_keep_staging()
            .with_timeout(60)
            .with_progress(callback)
            .build()
        )
        assert options.output_path == tmp_path / "out" / "disk.img"
        assert options.staging_parent == tmp_path
        assert options.keep_staging
        assert options.timeout == 60
        assert options.progress is callback

    def test_options_are_frozen(self, settings):
        options = BuildOptionsBuilder(settings).build()
        with pytest.raises(Exception):
            options.target_os = "windows"


class TestValidation:
    def test_errors_are_accumulated(self, settings, tmp_path):
        with pytest.raises(InvalidBuildOptions) as excinfo:
            (
                BuildOptionsBuilder(settings)
                .with_os_arch("Linux!", "amd 64")
                .with_image("../escape", "lots")
                .with_timeout(-1)
                .with_staging_parent(tmp_path / "missing")
                .build()
            )
        fields = [error.split(":", 1)[0] for error in excinfo.value.errors]
        assert sorted(fields) == [
            "image_name", "image_size", "staging_parent",
            "target_arch", "target_os", "timeout",
        ]

    def test_setter_errors_reported_with_field_errors(self, settings):
        with pytest.raises(InvalidBuildOptions) as excinfo:
            (
                BuildOptionsBuilder(settings)
                .with_logger("not a logger")
                .with_progress(42)
                .with_image(size="0")
                .build()
            )
        errors = excinfo.value.errors
        assert len(errors) == 3
        assert errors[0].startswith("logger:")
        assert errors[1].startswith("progress:")
        assert "Invalid build options" in str(excinfo.value)

    def test_output_dir_must_not_be_a_file(self, settings, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(InvalidBuildOptions, match="output_dir"):
            BuildOptionsBuilder(settings).with_output_dir(blocker).build()

    @pytest.mark.parametrize("size", ["150M", "2G", "4096", "1T", "64K"])
    def test_valid_sizes(self, settings, size):
        assert BuildOptionsBuilder(settings).with_image(size=size).build().image_size == size

    @pytest.mark.parametrize("size", ["", "150MB", "1.5G", "-1M", "0M"])
    def test_invalid_sizes(self, settings, size):
        with pytest.raises(InvalidBuildOptions):
            BuildOptionsBuilder(settings).with_image(size=size).build()
