import argparse
import sys
from pathlib import Path

from rpi_autoinstall.__version__ import __version__
from rpi_autoinstall.config import settings
from rpi_autoinstall.domain import PipelineConfig, ReleaseChannel
from rpi_autoinstall.exceptions import AutoinstallError, ConfigError
from rpi_autoinstall.logging import LoggerFactory, logger, setup_logging
from rpi_autoinstall.pipeline import run_pipeline


DESCRIPTION = (
    "💁 Create fully-automated Ubuntu Server installation images for the "
    "Raspberry Pi with baked-in cloud-init user-data and meta-data."
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rpi-autoinstall", description=DESCRIPTION)
    parser.add_argument("-u", "--user-data", type=Path, required=True, help="Path to user-data file")
    parser.add_argument(
        "-m",
        "--meta-data",
        type=Path,
        default=None,
        help="Path to meta-data file. The image's own meta-data is kept if not specified",
    )
    parser.add_argument(
        "-k",
        "--no-verify",
        action="store_true",
        help="Disable GPG verification of the source image file",
    )
    parser.add_argument(
        "-r",
        "--use-release-image",
        action="store_true",
        help="Use the current release image instead of the daily image",
    )
    parser.add_argument(
        "-s",
        "--source",
        type=Path,
        default=None,
        help="Source image file. By default the latest image is downloaded into the work directory",
    )
    parser.add_argument(
        "-d",
        "--destination",
        type=Path,
        default=None,
        help="Destination image file, overwritten if it exists",
    )
    parser.add_argument(
        "-w",
        "--work-dir",
        type=Path,
        default=None,
        help="Directory for downloaded images, SHA256SUMS files and the signing keyring",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Resolve the release image from cached files instead of the release index",
    )
    parser.add_argument(
        "--backend",
        choices=settings.BLOCK_BACKENDS,
        default=None,
        help="Loop device backend (udisks needs no root, losetup does)",
    )
    parser.add_argument("-v", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log external tool output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    work_dir = args.work_dir or settings.get_setting("work_dir") or Path.cwd()
    backend = args.backend or settings.get_setting("block_backend", settings.DEFAULT_BLOCK_BACKEND)
    if backend not in settings.BLOCK_BACKENDS:
        raise ConfigError(f"Unknown block device backend in settings: {backend}")
    return PipelineConfig(
        user_data_file=args.user_data,
        meta_data_file=args.meta_data,
        verify=not args.no_verify,
        channel=ReleaseChannel.RELEASE if args.use_release_image else ReleaseChannel.DAILY,
        source_image=args.source,
        destination_image=args.destination,
        work_dir=Path(work_dir).resolve(),
        offline=args.offline,
        block_backend=backend,
        mirror=settings.mirror_config(),
    )


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        config = config_from_args(args)
        result = run_pipeline(config)
    except AutoinstallError as error:
        log.error(f"💥 {error.kind} error: {error}")
        logger.complete()
        return error.exit_code
    except Exception as error:
        log.opt(exception=error).critical(f"💥 Unexpected failure: {error}")
        logger.complete()
        return 1

    print(result.destination)
    logger.complete()
    return 0


if __name__ == "__main__":
    sys.exit(main())
