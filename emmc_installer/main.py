"""Command line entry point: parse flags, prompt for a board, run the install.

Every InstallerError is reported as a single ``[operation] message`` line on
stderr with exit status 1.
"""

import argparse
import sys

from emmc_installer.domain import CUSTOM_BOARD_ID, FilesystemType
from emmc_installer.logging import LoggerFactory, setup_logging
from emmc_installer.services.install import InstallOptions, run_install
from emmc_installer.services.registry import MANUAL_FIELDS
from emmc_installer.storage.exceptions import InstallerError


log = LoggerFactory.for_system()


MANUAL_PROMPTS = {
    "soc": "SoC (e.g. s905x3)",
    "device_tree_file": "Device tree file (e.g. meson-sm1-x96-max-plus.dtb)",
    "uboot_overload_file": "u-boot overload file (blank for none)",
    "mainline_uboot_file": "Mainline u-boot file (blank for none)",
    "bootloader_img_file": "Vendor bootloader image (blank for none)",
}


def yes_no(value):
    value = value.strip().lower()
    if value in ("yes", "y"):
        return True
    if value in ("no", "n"):
        return False
    raise argparse.ArgumentTypeError(f"expected yes or no, got {value!r}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="emmc-installer",
        description="Install the running Armbian system onto the internal eMMC of an Amlogic TV box",
    )
    parser.add_argument("-m", dest="mainline_uboot", type=yes_no, default=False, metavar="yes|no",
                        help="Prefer the mainline u-boot when the board has one")
    parser.add_argument("-a", dest="ampart", type=yes_no, default=False, metavar="yes|no",
                        help="Try to repartition the eMMC with ampart first")
    parser.add_argument("-l", dest="show_all", type=yes_no, default=False, metavar="yes|no",
                        help="List boards of every family, not just the running one")
    parser.add_argument("-b", "--board-id", type=int, default=None,
                        help="Board id to install for (0 for manual entry)")
    parser.add_argument("-t", "--rootfs-type", choices=[fs.value for fs in FilesystemType],
                        default=FilesystemType.EXT4.value, help="Root filesystem type")
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw command output")
    return parser


def print_boards(boards):
    print(f"{'ID':<4} {'MODEL':<30} SOC")
    for board in boards:
        print(board.format_label())
    print(f"{CUSTOM_BOARD_ID:<4} {'Customize':<30} (enter fields manually)")


def prompt_board_id():
    while True:
        answer = input("Please enter the board id: ").strip()
        if answer.isdigit():
            return int(answer)
        print(f"Not a number: {answer!r}")


def prompt_manual_board():
    """Ask for the fields of a board that is not in the registry."""
    values = {}
    for field in MANUAL_FIELDS:
        values[field] = input(f"{MANUAL_PROMPTS[field]}: ").strip()
    return values


def make_chooser(board_id=None):
    def choose(boards):
        if board_id is None:
            print_boards(boards)
            selected = prompt_board_id()
        else:
            selected = board_id
        manual = prompt_manual_board() if selected == CUSTOM_BOARD_ID else None
        return selected, manual

    return choose


def make_confirmer(assume_yes=False):
    def confirm(context, board):
        print(f"Target:  {context.target_device}")
        print(f"Board:   {board.id} {board.model} ({board.soc})")
        print(f"DTB:     {board.device_tree_file}")
        print(f"Rootfs:  {context.filesystem_type.value}")
        if assume_yes:
            return True
        answer = input(f"All data on {context.target_device} will be erased. Continue? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    return confirm


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)

    options = InstallOptions(
        filesystem_type=FilesystemType.parse(args.rootfs_type),
        mainline_uboot=args.mainline_uboot,
        ampart=args.ampart,
        show_all=args.show_all,
    )
    try:
        report = run_install(options, make_chooser(args.board_id), make_confirmer(args.yes))
    except InstallerError as error:
        log.opt(exception=args.debug).debug(f"Installation aborted: {error}")
        print(f"[{error.operation}] {error}", file=sys.stderr)
        return 1
    except (KeyboardInterrupt, EOFError):
        print("[install] Interrupted", file=sys.stderr)
        return 1
    print(
        f"Installed to {report.context.target_device} "
        f"({report.plan.rule}: {report.plan.offsets} MiB). Remove the USB/TF card and reboot."
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
