import argparse
import os
from datetime import datetime

from arch_vm_builder.config.settings import BuildSettings
from arch_vm_builder.domain.models import BuildReport, VariantState
from arch_vm_builder.images import default_registry
from arch_vm_builder.logging import LoggerFactory, setup_logging
from arch_vm_builder.services.orchestrator import Orchestrator
from arch_vm_builder.storage.exceptions import (
    ImageBuildError,
    SelectionError,
    UnmountFailedError,
)
from arch_vm_builder.storage.guard import CleanupGuard
from arch_vm_builder.storage.session import BuildSession


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def default_build_version(now=None):
    now = now or datetime.now()
    return f"{now:%Y%m%d}.0"


def build_parser():
    parser = argparse.ArgumentParser(
        prog="arch-vm-builder",
        description="Build Arch Linux virtual machine images",
        epilog=(
            "Images are selected with the IMAGES environment variable, a "
            "comma-separated list of names (default: all). "
            "Example: sudo IMAGES=basic arch-vm-builder 20240101.0"
        ),
    )
    parser.add_argument(
        "target",
        nargs="?",
        metavar="list | help | BUILD_VERSION",
        help="'list' prints the available images, otherwise the version to build",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every command's output")
    return parser


def print_report(report: BuildReport, log) -> None:
    for result in report.results:
        if result.succeeded:
            artifact = result.artifact
            log.success(f"{result.name}: {artifact.path} (sha256 {artifact.checksum})")
        elif result.state == VariantState.SKIPPED:
            log.warning(f"{result.name}: skipped")
        else:
            log.error(f"{result.name}: failed after {result.failed_after.value}: {result.error}")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    registry = default_registry()

    if args.target == "list":
        for name in registry.names():
            print(name)
        return EXIT_OK
    if args.target == "help":
        parser.print_help()
        return EXIT_OK

    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()

    if os.geteuid() != 0:
        log.error("root is required")
        return EXIT_FAILURE

    # Reject a bad selection before any disk is touched
    try:
        variants = registry.select(os.environ.get("IMAGES"))
    except SelectionError as error:
        log.error(str(error))
        return EXIT_USAGE

    build_version = args.target
    if not build_version:
        build_version = default_build_version()
        log.warning(f"BUILD_VERSION wasn't specified, using {build_version}")
    log.info(f"Building {', '.join(v.name for v in variants)} as version {build_version}")

    settings = BuildSettings.from_settings()
    try:
        session = BuildSession.create(settings)
    except OSError as error:
        log.error(f"Cannot prepare working directories: {error}")
        return EXIT_FAILURE

    guard = CleanupGuard(session)
    guard.install()
    exit_code = EXIT_FAILURE
    try:
        report = Orchestrator(session, registry).run(variants, build_version)
        print_report(report, log)
        exit_code = EXIT_OK if report.ok else EXIT_FAILURE
    except ImageBuildError as error:
        log.critical(f"Build aborted: {error}")
    finally:
        try:
            guard.release()
        except UnmountFailedError:
            exit_code = EXIT_FAILURE
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
