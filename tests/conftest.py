"""
Pytest configuration and shared fixtures for emmc-installer tests.

This module provides common fixtures used across all test modules.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from emmc_installer.domain import BoardRecord, FilesystemType, InstallContext


# ==============================================================================
# Board Registry Fixtures
# ==============================================================================


REGISTRY_TEXT = """\
# ID : MODEL : SOC : FDTFILE : UBOOT_OVERLOAD : MAINLINE_UBOOT : BOOTLOADER_IMG : DESCRIPTION : KERNEL_TAGS : PLATFORM : FAMILY : BOOT_CONF : CONTRIBUTORS : BOARD : BUILD
213 : Octopus-Planet : s912 : meson-gxm-octopus-planet.dtb : u-boot-zyxq.bin : NA : NA : 2G/16G : stable : amlogic : meson-gxm : uEnv.txt : NA : octopus-planet : yes
101 : Phicomm-N1 : s905d : meson-gxl-s905d-phicomm-n1.dtb : u-boot-n1.bin : NA : NA : 2G/8G : stable : amlogic : meson-gxl : uEnv.txt : NA : phicomm-n1 : yes
305 : CM311-1a-YST : s905l3a : meson-g12a-s905l3a-cm311.dtb : u-boot-cm311.bin : NULL : NA : 2G/16G : stable : amlogic : meson-g12a : uEnv.txt : NA : cm311-1a : yes
306 : E900V22C : s905l3a : meson-g12a-s905l3a-e900v22c.dtb : u-boot-e900v22c.bin : NA : NA : 2G/8G : stable : amlogic : meson-g12a : uEnv.txt : NA : e900v22c : yes
108 : X96-Max+ : s905x3 : meson-sm1-x96-max-plus.dtb : u-boot-x96maxplus.bin : x96maxplus-u-boot.bin.sd.bin : x96maxplus-bootloader.img : 4G/32G : stable : amlogic : meson-sm1 : uEnv.txt : NA : x96-max-plus : yes
0 : Reserved : none : none : NA : NA : NA : NA : NA : NA : NA : NA : NA : NA : no
abc : Broken : s905x : broken.dtb : NA : NA : NA : NA : NA : NA : NA : NA : NA : NA : no
"""


@pytest.fixture
def registry_text() -> str:
    """
    Fixture providing a small colon-separated board registry.

    Contains two invalid rows (id 0 and a non-numeric id) and rows from three
    families so that filtering can be checked.
    """
    return REGISTRY_TEXT


@pytest.fixture
def registry_file(tmp_path, registry_text) -> Path:
    path = tmp_path / "model_database.conf"
    path.write_text(registry_text, encoding="utf-8")
    return path


@pytest.fixture
def s912_board() -> BoardRecord:
    return BoardRecord(
        id=213,
        model="Octopus-Planet",
        soc="s912",
        device_tree_file="meson-gxm-octopus-planet.dtb",
        uboot_overload_file="u-boot-zyxq.bin",
        platform="amlogic",
        family="meson-gxm",
        boot_conf="uEnv.txt",
    )


@pytest.fixture
def x96_board() -> BoardRecord:
    return BoardRecord(
        id=108,
        model="X96-Max+",
        soc="s905x3",
        device_tree_file="meson-sm1-x96-max-plus.dtb",
        uboot_overload_file="u-boot-x96maxplus.bin",
        mainline_uboot_file="x96maxplus-u-boot.bin.sd.bin",
        bootloader_img_file="x96maxplus-bootloader.img",
        platform="amlogic",
        family="meson-sm1",
        boot_conf="uEnv.txt",
    )


# ==============================================================================
# Block Device Fixtures
# ==============================================================================


@pytest.fixture
def usb_root_devices() -> List[Dict[str, Any]]:
    """
    lsblk tree of a box booted from a USB stick with an eMMC present.

    Returns:
        List of disks as returned by ``lsblk -J`` (root on sda2, eMMC mmcblk2).
    """
    return [
        {
            "name": "sda",
            "type": "disk",
            "size": 15931539456,
            "mountpoint": None,
            "children": [
                {"name": "sda1", "type": "part", "size": 268435456, "mountpoint": "/boot"},
                {"name": "sda2", "type": "part", "size": 15663104000, "mountpoint": "/"},
            ],
        },
        {
            "name": "mmcblk2",
            "type": "disk",
            "size": 15634268160,
            "mountpoint": None,
            "children": [
                {"name": "mmcblk2p1", "type": "part", "size": 536870912, "mountpoint": None},
                {"name": "mmcblk2p2", "type": "part", "size": 14000000000, "mountpoint": None},
            ],
        },
        {"name": "mmcblk2boot0", "type": "disk", "size": 4194304, "mountpoint": None},
        {"name": "mmcblk2boot1", "type": "disk", "size": 4194304, "mountpoint": None},
    ]


@pytest.fixture
def emmc_root_devices() -> List[Dict[str, Any]]:
    """lsblk tree of a box already running from its eMMC (root on mmcblk1p2)."""
    return [
        {
            "name": "mmcblk1",
            "type": "disk",
            "size": 7818182656,
            "mountpoint": None,
            "children": [
                {"name": "mmcblk1p1", "type": "part", "size": 536870912, "mountpoint": "/boot"},
                {"name": "mmcblk1p2", "type": "part", "size": 7000000000, "mountpoint": "/"},
            ],
        },
        {"name": "mmcblk1boot0", "type": "disk", "size": 4194304, "mountpoint": None},
        {"name": "mmcblk1boot1", "type": "disk", "size": 4194304, "mountpoint": None},
    ]


@pytest.fixture
def tf_root_devices() -> List[Dict[str, Any]]:
    """lsblk tree of a box booted from a TF card with an eMMC lacking boot0 nodes."""
    return [
        {
            "name": "mmcblk0",
            "type": "disk",
            "size": 31914983424,
            "mountpoint": None,
            "children": [
                {"name": "mmcblk0p1", "type": "part", "size": 536870912, "mountpoint": "/boot"},
                {"name": "mmcblk0p2", "type": "part", "size": 31000000000, "mountpoint": "/"},
            ],
        },
        {"name": "mmcblk1", "type": "disk", "size": 7818182656, "mountpoint": None},
    ]


@pytest.fixture
def lsblk_json(usb_root_devices) -> str:
    return json.dumps({"blockdevices": usb_root_devices})


# ==============================================================================
# Install Session Fixtures
# ==============================================================================


@pytest.fixture
def install_context() -> InstallContext:
    return InstallContext(
        target_device="/dev/mmcblk2",
        root_device_name="sda",
        rootfs_uuid="0f3c2a5e-8d1b-4a6f-9c7e-2b4d6f8a0c1e",
        filesystem_type=FilesystemType.EXT4,
        need_bootloader_overload=True,
        family="meson-gxm",
        platform="amlogic",
    )


# ==============================================================================
# Release File Fixtures
# ==============================================================================


RELEASE_TEMPLATE = """\
# Armbian release
VERSION_CODEID='ubuntu'
VERSION_CODENAME='jammy'
PLATFORM='amlogic'
FAMILY='meson-gxm'
MODEL_ID='101'
MODEL_NAME='Phicomm-N1'
SOC='s905d'
FDTFILE='meson-gxl-s905d-phicomm-n1.dtb'
KERNEL_VERSION='6.1.50'
DISK_TYPE='usb'
"""


@pytest.fixture
def release_template() -> str:
    """Release file of the running system, as copied onto the new root."""
    return RELEASE_TEMPLATE


@pytest.fixture
def release_file(tmp_path, release_template) -> Path:
    path = tmp_path / "ophub-release"
    path.write_text(release_template, encoding="utf-8")
    return path
