"""Run provisioning phases exactly once per installation attempt."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import executil
from .config_store import ConfigurationStore
from .errors import DeviceNotFound, PreconditionUnmet
from .executil import log, trace
from .markers import MarkerStore
from .model import PHASE_ORDER, Config, Phase, PhaseStatus, StorageTopology
from .prompt import Prompt, TerminalPrompt


@dataclass
class PhaseContext:
    """Everything a phase body may touch; built fresh for every run."""

    config: Config
    topology: StorageTopology
    prompt: Prompt
    dry_run: bool = False
    exists: Callable[[str], bool] = os.path.exists
    store: Optional[ConfigurationStore] = None
    passphrase_file: Optional[str] = None
    warnings: List[dict] = field(default_factory=list)

    @property
    def mount_root(self) -> str:
        return self.config.mount_root

    def step(
            self,
            name: str,
            cmd: Sequence[str],
            *,
            optional: bool = False,
            action: Optional[str] = None,
            timeout: Optional[float] = 60.0,
            interactive: bool = False,
    ) -> executil.Result:
        return executil.step(
            name,
            cmd,
            optional=optional,
            warnings=self.warnings,
            action=action,
            dry_run=self.dry_run,
            timeout=timeout,
            interactive=interactive,
        )

    def warn(self, step: str, message: str) -> None:
        entry = {"step": step, "message": message}
        log("WARN", "phase.warning", **entry)
        self.warnings.append(entry)


Body = Callable[[PhaseContext], None]


@dataclass
class PhaseSpec:
    phase: Phase
    body: Body
    devices: Callable[[StorageTopology], List[str]] = lambda topology: []
    commands: Tuple[str, ...] = ()
    requires: Tuple[Phase, ...] = ()
    checks: Tuple[Callable[[PhaseContext], Optional[str]], ...] = ()
    bind_keys: Tuple[str, ...] = ()
    after: Optional[Callable[[PhaseContext, MarkerStore], None]] = None


@dataclass
class PhaseResult:
    phase: Phase
    status: PhaseStatus
    warnings: List[dict] = field(default_factory=list)
    dry_run: bool = False

    @property
    def already_completed(self) -> bool:
        return self.status is PhaseStatus.ALREADY_COMPLETED

    def as_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "warnings": list(self.warnings),
            "dry_run": self.dry_run,
        }


class PhaseRunner:
    """Pending -> Running -> Completed | Failed, guarded by a marker.

    A set marker short-circuits the phase before any precondition check or
    command.  The marker is written only after the body returned; a body
    exception leaves it unset and propagates unchanged.
    """

    def __init__(
            self,
            config: Config,
            topology: StorageTopology,
            markers: MarkerStore,
            registry: Dict[Phase, PhaseSpec],
            *,
            prompt: Optional[Prompt] = None,
            store: Optional[ConfigurationStore] = None,
            dry_run: bool = False,
            exists: Callable[[str], bool] = os.path.exists,
            which: Callable[[str], Optional[str]] = shutil.which,
            passphrase_file: Optional[str] = None,
    ) -> None:
        self.config = config
        self.topology = topology
        self.markers = markers
        self.registry = registry
        self.prompt = prompt or TerminalPrompt()
        self.store = store
        self.dry_run = dry_run
        self.exists = exists
        self.which = which
        self.passphrase_file = passphrase_file
        self.status: Dict[Phase, PhaseStatus] = {
            phase: (PhaseStatus.COMPLETED if markers.is_set(phase) else PhaseStatus.PENDING)
            for phase in registry
        }

    def _context(self) -> PhaseContext:
        return PhaseContext(
            config=self.config,
            topology=self.topology,
            prompt=self.prompt,
            dry_run=self.dry_run,
            exists=self.exists,
            store=self.store,
            passphrase_file=self.passphrase_file,
        )

    def _check_preconditions(self, spec: PhaseSpec, ctx: PhaseContext) -> None:
        pending = [p.value for p in spec.requires if not self.markers.is_set(p)]
        if pending:
            raise PreconditionUnmet(
                f"phase {spec.phase.value} requires completed phases: {', '.join(pending)}",
                missing=pending,
            )
        tools = [c for c in spec.commands if self.which(c) is None]
        if tools:
            raise PreconditionUnmet(f"required commands not available: {', '.join(tools)}", missing=tools)
        problems = [msg for msg in (check(ctx) for check in spec.checks) if msg]
        if problems:
            raise PreconditionUnmet("; ".join(problems), missing=problems)
        devices = [d for d in spec.devices(self.topology) if not self.exists(d)]
        if devices:
            raise DeviceNotFound(f"device not found: {', '.join(devices)}", missing=devices)

    def run(self, phase: Phase) -> PhaseResult:
        spec = self.registry[phase]
        if self.markers.is_set(phase):
            trace("phase.already_completed", phase=phase.value)
            self.status[phase] = PhaseStatus.COMPLETED
            return PhaseResult(phase, PhaseStatus.ALREADY_COMPLETED, dry_run=self.dry_run)

        if self.store is not None:
            self.store.check_bindings(self.config)
        ctx = self._context()
        if self.dry_run:
            try:
                self._check_preconditions(spec, ctx)
            except PreconditionUnmet as exc:
                ctx.warn("preconditions", str(exc))
        else:
            self._check_preconditions(spec, ctx)

        self.status[phase] = PhaseStatus.RUNNING
        trace("phase.start", phase=phase.value, dry_run=self.dry_run)
        try:
            spec.body(ctx)
        except Exception as exc:
            self.status[phase] = PhaseStatus.FAILED
            log("ERROR", "phase.failed", phase=phase.value, error=str(exc), error_type=type(exc).__name__)
            raise

        if self.dry_run:
            self.status[phase] = PhaseStatus.PENDING
            trace("phase.dry_run_done", phase=phase.value, warnings=ctx.warnings)
            return PhaseResult(phase, PhaseStatus.PENDING, ctx.warnings, dry_run=True)

        if spec.bind_keys and self.store is not None:
            self.store.bind(self.config, spec.bind_keys)
        self.markers.set(phase)
        self.status[phase] = PhaseStatus.COMPLETED
        trace("phase.completed", phase=phase.value, warnings=ctx.warnings)
        if spec.after is not None:
            spec.after(ctx, self.markers)
        return PhaseResult(phase, PhaseStatus.COMPLETED, ctx.warnings)

    def run_many(self, phases: Iterable[Phase]) -> List[PhaseResult]:
        """Run ``phases`` in the canonical order, stopping at the first failure."""

        wanted = set(phases)
        results = []
        for phase in PHASE_ORDER:
            if phase in wanted:
                results.append(self.run(phase))
        return results


def default_registry() -> Dict[Phase, PhaseSpec]:
    from . import base_install, chroot_config, filesystems, handoff, luks_lvm, mounts, partitioning, postboot

    def storage_devices(t: StorageTopology) -> List[str]:
        return [t.partition("efi").path, t.partition("boot").path] + [lv.path for lv in t.logical_volumes]

    return {
        Phase.PARTITION: PhaseSpec(
            Phase.PARTITION,
            partitioning.partition_disks,
            devices=lambda t: [d.path for d in t.disks],
            commands=("wipefs", "sgdisk"),
            checks=(partitioning.check_not_live_disk,),
            bind_keys=("DISK0", "DISK1"),
        ),
        Phase.ENCRYPT: PhaseSpec(
            Phase.ENCRYPT,
            luks_lvm.encrypt_containers,
            devices=lambda t: [c.partition for c in t.containers],
            commands=("cryptsetup",),
            requires=(Phase.PARTITION,),
            bind_keys=("LUKS_ROOT", "LUKS_TENSOR_A", "LUKS_TENSOR_B"),
        ),
        Phase.VOLUME_MANAGE: PhaseSpec(
            Phase.VOLUME_MANAGE,
            luks_lvm.build_volume_groups,
            devices=lambda t: [c.path for c in t.containers],
            commands=("pvcreate", "vgcreate", "lvcreate"),
            requires=(Phase.ENCRYPT,),
            bind_keys=("VG_OS", "LV_ROOT", "LV_SWAP", "VG_TENSOR", "LV_TENSOR"),
        ),
        Phase.FILESYSTEM: PhaseSpec(
            Phase.FILESYSTEM,
            filesystems.create_filesystems,
            devices=storage_devices,
            commands=("mkfs.vfat", "mkfs.ext4", "mkfs.btrfs", "mkswap", "btrfs"),
            requires=(Phase.VOLUME_MANAGE,),
        ),
        Phase.MOUNT: PhaseSpec(
            Phase.MOUNT,
            mounts.mount_tree,
            devices=storage_devices,
            commands=("mount", "swapon"),
            requires=(Phase.FILESYSTEM,),
        ),
        Phase.BASE_INSTALL: PhaseSpec(
            Phase.BASE_INSTALL,
            base_install.install_base,
            commands=("tar",),
            requires=(Phase.MOUNT,),
            checks=(base_install.check_target_mounted,),
            after=handoff.persist_markers,
        ),
        Phase.IN_TARGET_CONFIGURE: PhaseSpec(
            Phase.IN_TARGET_CONFIGURE,
            chroot_config.configure_target,
            commands=("emerge", "blkid"),
            requires=(Phase.BASE_INSTALL,),
            checks=(handoff.check_inside_target,),
        ),
        Phase.POST_REBOOT: PhaseSpec(
            Phase.POST_REBOOT,
            postboot.finalize,
            commands=("swapon", "mount"),
            requires=(Phase.IN_TARGET_CONFIGURE,),
            checks=(postboot.check_root_btrfs,),
        ),
    }
