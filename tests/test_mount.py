"""
Tests for emmc_installer.storage.mount module.

This test suite covers:
- Device node validation
- mount/umount command construction
- The mounted() context manager releasing the mount on every path
"""

import subprocess
from unittest.mock import call, mock_open, patch

import pytest

from emmc_installer.storage import mount
from emmc_installer.storage.exceptions import FormatFailedError


class TestValidateDeviceNode:
    """Tests for validate_device_node() function."""

    def test_valid(self):
        mount.validate_device_node("/dev/mmcblk2p1")

    @pytest.mark.parametrize(
        "path", ["mmcblk2p1", "/tmp/disk", "/dev/sda1; rm -rf /", "/dev/sda`id`", None]
    )
    def test_invalid(self, path):
        with pytest.raises(FormatFailedError):
            mount.validate_device_node(path)


class TestMountPartition:
    """Tests for mount_partition() and unmount_path()."""

    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_mount_with_type_and_options(self, mock_run, tmp_path):
        target = tmp_path / "mnt"

        mount.mount_partition("/dev/mmcblk2p2", target, "btrfs", "compress=zstd:6")

        assert target.is_dir()
        mock_run.assert_called_once_with(
            ["mount", "-t", "btrfs", "-o", "compress=zstd:6", "/dev/mmcblk2p2", str(target)],
            check=True,
            capture_output=True,
            text=True,
        )

    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_mount_failure(self, mock_run, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(
            32, ["mount"], stderr="wrong fs type\n"
        )

        with pytest.raises(FormatFailedError, match="wrong fs type"):
            mount.mount_partition("/dev/mmcblk2p1", tmp_path / "mnt")

    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_unmount_lazy(self, mock_run, tmp_path):
        mount.unmount_path(tmp_path, lazy=True)

        mock_run.assert_called_once_with(
            ["umount", "-l", str(tmp_path)], check=True, capture_output=True, text=True
        )

    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_unmount_failure(self, mock_run, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(32, ["umount"], stderr="busy")

        with pytest.raises(RuntimeError, match="busy"):
            mount.unmount_path(tmp_path)


class TestMounted:
    """Tests for the mounted() context manager."""

    @patch("emmc_installer.storage.mount.is_mounted", return_value=False)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_unmounts_after_block(self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path):
        with mount.mounted("/dev/mmcblk2p1", tmp_path, "vfat") as target:
            assert target == tmp_path
            mock_unmount.assert_not_called()

        mock_mount.assert_called_once_with("/dev/mmcblk2p1", tmp_path, fstype="vfat", options=None)
        mock_unmount.assert_called_once_with(tmp_path)

    @patch("emmc_installer.storage.mount.is_mounted", return_value=False)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_unmounts_when_block_raises(
        self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path
    ):
        with pytest.raises(OSError, match="copy failed"):
            with mount.mounted("/dev/mmcblk2p1", tmp_path):
                raise OSError("copy failed")

        mock_unmount.assert_called_once_with(tmp_path)

    @patch("emmc_installer.storage.mount.is_mounted", return_value=False)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_lazy_fallback(self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path):
        mock_unmount.side_effect = [RuntimeError("busy"), None]

        with mount.mounted("/dev/mmcblk2p1", tmp_path):
            pass

        assert mock_unmount.call_args_list == [call(tmp_path), call(tmp_path, lazy=True)]

    @patch("emmc_installer.storage.mount.is_mounted", return_value=False)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_unmount_failure_after_success_raises(
        self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path
    ):
        mock_unmount.side_effect = RuntimeError("busy")

        with pytest.raises(FormatFailedError):
            with mount.mounted("/dev/mmcblk2p1", tmp_path):
                pass

    @patch("emmc_installer.storage.mount.is_mounted", return_value=False)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_original_error_wins_over_unmount_failure(
        self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path
    ):
        mock_unmount.side_effect = RuntimeError("busy")

        with pytest.raises(ValueError, match="original"):
            with mount.mounted("/dev/mmcblk2p1", tmp_path):
                raise ValueError("original")

    @patch("emmc_installer.storage.mount.is_mounted", return_value=True)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_stale_mount_forced_off(self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path):
        with mount.mounted("/dev/mmcblk2p1", tmp_path):
            pass

        assert mock_unmount.call_args_list[0] == call(tmp_path, force=True)

    @patch("emmc_installer.storage.mount.is_mounted", return_value=False)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_mount_failure_skips_unmount(
        self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path
    ):
        mock_mount.side_effect = FormatFailedError("mount failed")

        with pytest.raises(FormatFailedError):
            with mount.mounted("/dev/mmcblk2p1", tmp_path):
                pass

        mock_unmount.assert_not_called()


class TestIsMounted:
    """Tests for is_mounted() function."""

    def test_reads_proc_mounts(self):
        mounts = "/dev/sda2 / ext4 rw 0 0\n/dev/mmcblk2p1 /mnt/emmc-install vfat rw 0 0\n"
        with patch("builtins.open", mock_open(read_data=mounts)):
            assert mount.is_mounted("/mnt/emmc-install") is True
            assert mount.is_mounted("/mnt/other") is False

    @patch("emmc_installer.storage.mount.is_mounted", return_value=True)
    @patch("emmc_installer.storage.mount.unmount_path")
    @patch("emmc_installer.storage.mount.mount_partition")
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_stale_mount_that_will_not_unmount(
        self, mock_run, mock_mount, mock_unmount, mock_is, tmp_path
    ):
        mock_unmount.side_effect = RuntimeError(f"Failed to unmount {tmp_path}: busy")

        with pytest.raises(FormatFailedError, match="busy") as exc_info:
            with mount.mounted("/dev/mmcblk2p2", tmp_path, "ext4"):
                pass

        assert exc_info.value.device == "/dev/mmcblk2p2"
        mock_unmount.assert_called_once_with(tmp_path, force=True)
        mock_mount.assert_not_called()

    @patch("emmc_installer.storage.mount.is_mounted", return_value=False)
    @patch("emmc_installer.storage.mount.subprocess.run")
    def test_invalid_node_mounts_nothing(self, mock_run, mock_is, tmp_path):
        with pytest.raises(FormatFailedError, match="Invalid partition path"):
            with mount.mounted("mmcblk2p1", tmp_path):
                pass

        assert all(entry.args[0][0] != "mount" for entry in mock_run.call_args_list)
