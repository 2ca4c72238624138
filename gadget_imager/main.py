import argparse
import sys
from pathlib import Path

from gadget_imager.__version__ import __version__
from gadget_imager.config.image_definition import load_image_definition
from gadget_imager.config.options import (
    CommonOptions,
    PackOptions,
    SnapOptions,
    StateMachineOptions,
)
from gadget_imager.logging import LoggerFactory, add_file_sinks, resolve_level, setup_logging
from gadget_imager.statemachine.core import StateMachine
from gadget_imager.statemachine.variants import ClassicVariant, PackVariant, SnapVariant
from gadget_imager.storage.exceptions import ImagerError


def _add_common_arguments(parser):
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug output, command output included"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Only report warnings and errors"
    )
    parser.add_argument(
        "-O", "--output-dir", type=Path, help="Directory the images are written to"
    )
    parser.add_argument(
        "-i",
        "--image-size",
        help="Image size as SIZE, or VOLUME:SIZE[,VOLUME:SIZE...] per volume",
    )
    parser.add_argument(
        "--disk-info", type=Path, help="File copied to .disk/info in the rootfs"
    )
    parser.add_argument(
        "--sector-size", type=int, default=512, help="Sector size in bytes (512 or 4096)"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="List the steps without running them"
    )
    parser.add_argument("-w", "--workdir", type=Path, help="Keep the workspace in this directory")
    parser.add_argument("-u", "--until", help="Run up to, but not including, this step")
    parser.add_argument("-t", "--thru", help="Run up to and including this step")
    parser.add_argument(
        "-r", "--resume", action="store_true", help="Resume a previous run in --workdir"
    )


def build_parser():
    parser = argparse.ArgumentParser(
        prog="gadget-imager", description="Build bootable disk images from gadget descriptions"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    classic = subparsers.add_parser(
        "classic", help="Build a classic image from an image definition"
    )
    _add_common_arguments(classic)
    classic.add_argument("image_definition", type=Path, help="Image definition file")

    snap = subparsers.add_parser("snap", help="Build an image with snap prepare-image")
    _add_common_arguments(snap)
    snap.add_argument("model_assertion", type=Path, help="Model assertion file")
    snap.add_argument("-c", "--channel", help="Channel snaps are taken from")
    snap.add_argument(
        "--snap", dest="snaps", action="append", default=[], help="Extra snap, may be repeated"
    )

    pack = subparsers.add_parser("pack", help="Pack an image from a prepared gadget and rootfs")
    _add_common_arguments(pack)
    pack.add_argument("--artifact-type", default="raw", help="Type of the produced artifact")
    pack.add_argument("--gadget-dir", type=Path, required=True, help="Prepared gadget tree")
    pack.add_argument("--rootfs-dir", type=Path, required=True, help="Prepared rootfs tree")
    return parser


def _variant_for(args):
    if args.command == "classic":
        return ClassicVariant(load_image_definition(args.image_definition))
    if args.command == "snap":
        return SnapVariant(
            SnapOptions(
                model_assertion=args.model_assertion,
                channel=args.channel,
                snaps=list(args.snaps),
            )
        )
    return PackVariant(
        PackOptions(
            artifact_type=args.artifact_type,
            gadget_dir=args.gadget_dir,
            rootfs_dir=args.rootfs_dir,
        )
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    common = CommonOptions(
        debug=args.debug,
        verbose=args.verbose,
        quiet=args.quiet,
        output_dir=args.output_dir,
        image_size=args.image_size,
        disk_info=args.disk_info,
        sector_size=args.sector_size,
        dry_run=args.dry_run,
    )
    options = StateMachineOptions(
        workdir=args.workdir,
        until=args.until,
        thru=args.thru,
        resume=args.resume,
    )
    setup_logging(
        quiet=args.quiet,
        verbose=args.verbose,
        debug=args.debug,
    )
    log = LoggerFactory.for_state_machine()

    try:
        machine = StateMachine(common, options, _variant_for(args))
        machine.setup()
        # Log files go into the workdir, which only exists once setup succeeded
        if args.workdir is not None and not args.dry_run:
            add_file_sinks(
                args.workdir,
                level=resolve_level(quiet=args.quiet, verbose=args.verbose, debug=args.debug),
                debug=args.debug,
            )
        machine.run_with_teardown()
    except ImagerError as error:
        log.error(str(error))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
