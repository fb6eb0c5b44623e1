"""Tests for the ampart repartition step."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from emmc_installer.domain import RepartitionResult
from emmc_installer.storage import ampart
from emmc_installer.storage.exceptions import ExternalToolError


class TestRepartition:
    """Tests for repartition() tri-state result."""

    @patch("emmc_installer.storage.ampart.shutil.which", return_value=None)
    def test_unavailable_without_binary(self, mock_which):
        assert ampart.repartition("/dev/mmcblk2") is RepartitionResult.UNAVAILABLE

    @patch("emmc_installer.storage.ampart.run_command")
    @patch("emmc_installer.storage.ampart.shutil.which", return_value="/usr/sbin/ampart")
    def test_success_when_snapshot_matches(self, mock_which, mock_run):
        mock_run.side_effect = [
            Mock(stdout="", returncode=0),
            Mock(stdout="data::-1:4\n", returncode=0),
        ]

        assert ampart.repartition("/dev/mmcblk2") is RepartitionResult.SUCCESS
        assert mock_run.call_args_list[0].args[0] == [
            "/usr/sbin/ampart", "/dev/mmcblk2", "--mode", "dclone", "data::-1:4",
        ]
        assert mock_run.call_args_list[1].args[0] == [
            "/usr/sbin/ampart", "/dev/mmcblk2", "--mode", "dsnapshot",
        ]

    @patch("emmc_installer.storage.ampart.run_command")
    @patch("emmc_installer.storage.ampart.shutil.which", return_value="/usr/sbin/ampart")
    def test_mismatch_when_snapshot_differs(self, mock_which, mock_run):
        mock_run.side_effect = [
            Mock(stdout="", returncode=0),
            Mock(stdout="cache::512M:2 data::-1:4\n", returncode=0),
        ]

        assert ampart.repartition("/dev/mmcblk2") is RepartitionResult.MISMATCH

    @patch("emmc_installer.storage.ampart.run_command")
    @patch("emmc_installer.storage.ampart.shutil.which", return_value="/usr/sbin/ampart")
    def test_mismatch_when_dclone_fails(self, mock_which, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["ampart"], stderr="bad table")

        assert ampart.repartition("/dev/mmcblk2") is RepartitionResult.MISMATCH
        assert mock_run.call_count == 1

    @patch("emmc_installer.storage.ampart.run_command")
    @patch("emmc_installer.storage.ampart.shutil.which", return_value="/usr/sbin/ampart")
    def test_mismatch_when_snapshot_fails(self, mock_which, mock_run):
        mock_run.side_effect = [
            Mock(stdout="", returncode=0),
            subprocess.CalledProcessError(1, ["ampart"]),
        ]

        assert ampart.repartition("/dev/mmcblk2") is RepartitionResult.MISMATCH


class TestReadSnapshot:
    """Tests for read_snapshot() and clone_layout()."""

    @patch("emmc_installer.storage.ampart.run_command")
    def test_empty_output(self, mock_run):
        mock_run.return_value = Mock(stdout="")

        assert ampart.read_snapshot("ampart", "/dev/mmcblk2") == ""

    @patch("emmc_installer.storage.ampart.run_command")
    def test_snapshot_failure_raises(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["ampart"])

        with pytest.raises(ExternalToolError) as exc_info:
            ampart.read_snapshot("ampart", "/dev/mmcblk2")

        assert exc_info.value.tool == "ampart"

    @patch("emmc_installer.storage.ampart.run_command")
    def test_clone_layout_mismatch_raises(self, mock_run):
        mock_run.side_effect = [Mock(stdout=""), Mock(stdout="cache::512M:2\n")]

        with pytest.raises(ExternalToolError, match="layout mismatch"):
            ampart.clone_layout("ampart", "/dev/mmcblk2", "data::-1:4")
