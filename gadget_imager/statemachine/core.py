"""Resumable step execution.

The state machine runs the ordered step list of a build variant against a
workspace. Progress is persisted after every successful step so a failed or
bounded run (``--until``/``--thru``) can be continued with ``--resume``.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Optional, Protocol

from gadget_imager.config.options import CommonOptions, StateMachineOptions
from gadget_imager.config.settings import SUPPORTED_SECTOR_SIZES
from gadget_imager.logging import LoggerFactory, operation_context
from gadget_imager.statemachine.state import (
    BuildState,
    ResumeMetadata,
    check_compatible,
    metadata_path,
    read_metadata,
    write_metadata,
)
from gadget_imager.statemachine.steps import Step, lookup_step
from gadget_imager.storage.exceptions import (
    ConfigurationError,
    StepError,
    TeardownError,
)
from gadget_imager.storage.mount import unmount_untracked
from gadget_imager.storage.system_ops import SystemOps


WORKDIR_PREFIX = "gadget-imager-"


class VariantAssembler(Protocol):
    """What a build variant provides to the state machine."""

    name: str

    def step_names(self) -> list[str]:
        """Ordered names of the steps this variant runs."""
        ...

    def setup(self, machine: "StateMachine") -> None:
        """Validate variant options and seed the build state."""
        ...


class StateMachine:
    def __init__(
        self,
        common: CommonOptions,
        options: StateMachineOptions,
        variant: VariantAssembler,
        ops: Optional[SystemOps] = None,
    ):
        self.common = common
        self.options = options
        self.variant = variant
        self.ops = ops or SystemOps()
        self.state = BuildState(sector_size=common.sector_size)
        self.steps: list[Step] = []
        self.completed: list[str] = []
        self.clean_workdir = False
        self.log = LoggerFactory.for_state_machine()

    # -- setup -----------------------------------------------------------------

    def _validate_options(self) -> None:
        if self.options.until and self.options.thru:
            raise ConfigurationError("cannot specify both --until and --thru")
        verbosity = [self.common.quiet, self.common.verbose, self.common.debug]
        if sum(bool(flag) for flag in verbosity) > 1:
            raise ConfigurationError(
                "--quiet, --verbose and --debug are mutually exclusive"
            )
        if self.options.resume and self.options.workdir is None:
            raise ConfigurationError("must specify workdir when using --resume flag")
        if self.common.sector_size not in SUPPORTED_SECTOR_SIZES:
            raise ConfigurationError(
                f"unsupported sector size {self.common.sector_size}, expected one of "
                f"{', '.join(str(size) for size in SUPPORTED_SECTOR_SIZES)}"
            )

    def _validate_step_names(self, names: list[str]) -> None:
        for flag, name in (("--until", self.options.until), ("--thru", self.options.thru)):
            if name and name not in names:
                raise ConfigurationError(f"Invalid value for {flag}: step {name!r} does not exist")

    def _load_resume_metadata(self, names: list[str]) -> None:
        workdir = Path(self.options.workdir)
        metadata = read_metadata(self.ops, workdir)
        check_compatible(metadata, self.variant.name, names, metadata_path(workdir))
        self.state = metadata.state
        self.state.steps_taken = metadata.steps_taken
        self.completed = list(metadata.completed)
        self.log.info(
            f"Resuming {self.variant.name} build after {metadata.steps_taken} completed steps"
        )

    def _create_workspace(self) -> None:
        if self.options.workdir is not None:
            self.state.workdir = Path(self.options.workdir)
            self.ops.makedirs(self.state.workdir)
        else:
            self.state.workdir = Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX))
            self.clean_workdir = True
        for directory in self.state.workspace_dirs():
            self.ops.makedirs(directory)
        self.log.debug(f"Workspace ready in {self.state.workdir}")

    def setup(self) -> None:
        """Validate options, load resume metadata and prepare the workspace.

        Nothing on disk is touched until every check has passed.
        """
        self._validate_options()
        names = self.variant.step_names()
        self.steps = [lookup_step(name) for name in names]
        self._validate_step_names(names)
        if self.options.resume:
            self._load_resume_metadata(names)
        self.variant.setup(self)
        if not self.common.dry_run:
            self._create_workspace()

    # -- run -------------------------------------------------------------------

    def _persist(self) -> None:
        metadata = ResumeMetadata(
            variant=self.variant.name,
            step_names=[step.name for step in self.steps],
            completed=list(self.completed),
            steps_taken=self.state.steps_taken,
            state=self.state,
        )
        write_metadata(self.ops, self.state.workdir, metadata)

    def run(self) -> None:
        """Run the steps from the resume point, honouring ``--until``/``--thru``."""
        for index in range(self.state.steps_taken, len(self.steps)):
            step = self.steps[index]
            if self.options.until and step.name == self.options.until:
                break

            if self.common.dry_run:
                self.log.info(f"[{index}] {step.name}")
            else:
                self.state.current_step = step.name
                try:
                    with operation_context("step", step=step.name):
                        step(self)
                except Exception as error:
                    raise StepError(step.name, error) from error
                self.state.steps_taken = index + 1
                self.completed.append(step.name)
                self._persist()

            if self.options.thru and step.name == self.options.thru:
                break

    # -- teardown --------------------------------------------------------------

    def teardown(self, error: Optional[BaseException] = None) -> None:
        """Unmount what is still mounted under the workdir and remove an implicit one.

        Steps release their own loop devices and mounts; this only sweeps the
        mounts a failed step left behind. Every unmount is attempted and the
        errors are joined with ``error``.
        """
        errors: list[Exception] = []
        workdir = self.state.workdir
        if workdir is not None and self.ops.exists(workdir):
            errors += unmount_untracked(self.ops, str(workdir))
        if self.clean_workdir and workdir is not None and self.ops.exists(workdir):
            try:
                self.ops.remove_tree(workdir)
            except OSError as remove_error:
                errors.append(remove_error)
        if errors:
            raise TeardownError(errors, cause=error) from error

    def run_with_teardown(self) -> None:
        try:
            self.run()
        except Exception as error:
            self.teardown(error)
            raise
        self.teardown()

    def execute(self) -> None:
        self.setup()
        self.run_with_teardown()
