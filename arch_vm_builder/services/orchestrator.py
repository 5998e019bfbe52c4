"""Build orchestration: one base image, then every selected variant in turn.

Order of a run:
    1. create, partition, format and mount the base image
    2. bootstrap the base package list into it
    3. run the base customization, then unmount and detach
    4. push each variant through the pipeline, sequentially

Only one loop device is ever attached, so variants never overlap. The first
failed variant stops the batch and the rest are reported as skipped; a failure
while building the base image aborts the whole run.
"""

from __future__ import annotations

from typing import Iterable

from arch_vm_builder.domain.models import (
    BuildReport,
    DiskImage,
    VariantResult,
    VariantSpec,
    VariantState,
)
from arch_vm_builder.images import VariantRegistry
from arch_vm_builder.logging import LoggerFactory, operation_context
from arch_vm_builder.services.bootstrap import Bootstrapper
from arch_vm_builder.services.hooks import HookContext
from arch_vm_builder.services.pipeline import VariantPipeline
from arch_vm_builder.storage.disk import DiskBuilder
from arch_vm_builder.storage.exceptions import CustomizationError
from arch_vm_builder.storage.session import BuildSession


log = LoggerFactory.for_system()


class Orchestrator:
    def __init__(
        self,
        session: BuildSession,
        registry: VariantRegistry,
        disk_builder: DiskBuilder | None = None,
        bootstrapper: Bootstrapper | None = None,
        pipeline: VariantPipeline | None = None,
    ):
        self.session = session
        self.registry = registry
        self.disk_builder = disk_builder or DiskBuilder(session)
        self.bootstrapper = bootstrapper or Bootstrapper(session)
        self.pipeline = pipeline or VariantPipeline(session, self.disk_builder)

    def run(self, variants: Iterable[VariantSpec], build_version: str) -> BuildReport:
        """Build the base image once and every variant from it.

        Raises:
            DiskSetupError: If the base image cannot be created
            BootstrapError: If the base system cannot be installed
            CustomizationError: If the base customization fails
            LoopDeviceError: If the base image cannot be attached or detached
            MountError: If the base image cannot be mounted or unmounted
        """
        variants = list(variants)
        report = BuildReport(build_version=build_version)

        with operation_context("base", version=build_version):
            base = self.build_base(build_version)

        for index, variant in enumerate(variants):
            result = self.pipeline.run(variant, base, build_version)
            report.results.append(result)
            if result.succeeded:
                continue

            log.error(f"{variant.name} failed: {result.error}")
            for skipped in variants[index + 1 :]:
                log.warning(f"Skipping {skipped.name} after the failure of {variant.name}")
                report.results.append(
                    VariantResult(name=skipped.name, state=VariantState.SKIPPED)
                )
            break

        succeeded = sum(1 for r in report.results if r.succeeded)
        log.info(f"{succeeded}/{len(variants)} image(s) built for version {build_version}")
        return report

    def build_base(self, build_version: str) -> DiskImage:
        """Create, bootstrap and customize the base image, leaving it detached."""
        session = self.session
        base_spec = self.registry.base
        handle = session.handle

        image = self.disk_builder.create_base_disk(session.settings.disk_size)
        self.bootstrapper.bootstrap(
            session.mount_point, session.settings.mirror, sorted(base_spec.packages)
        )

        ctx = HookContext(
            variant=base_spec.name,
            mount_point=session.mount_point,
            build_version=build_version,
            runner=session.runner,
            loop_device=handle.loop_device,
        )
        try:
            base_spec.pre(ctx)
        except Exception as error:
            raise CustomizationError(base_spec.name, str(error)) from error

        handle.unmount()
        log.info(f"Base image ready at {image.path}")
        return image
