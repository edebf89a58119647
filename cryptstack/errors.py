"""Error taxonomy shared by the phases, the recovery flow and the CLI."""

from __future__ import annotations

from typing import Sequence


class ProvisionError(RuntimeError):
    """Base class for every failure the CLI reports as a result code."""

    result = "FAIL_GENERIC"


class PreconditionUnmet(ProvisionError):
    """A device or tool a phase needs is missing; nothing was executed."""

    result = "FAIL_PRECONDITION"

    def __init__(self, message: str, *, missing: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)


class DeviceNotFound(PreconditionUnmet):
    result = "FAIL_DEVICE_NOT_FOUND"


class DeviceAmbiguous(ProvisionError):
    """More than one plausible device matches; the operator has to choose."""

    result = "FAIL_DEVICE_AMBIGUOUS"

    def __init__(self, message: str, *, candidates: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.candidates = list(candidates)


class NamingMismatch(ProvisionError):
    """A bound name differs from the one a consumer references."""

    result = "FAIL_NAMING_MISMATCH"

    def __init__(self, message: str, *, expected: str = "", found: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.expected = expected
        self.found = list(found)


class ConfigurationMissing(ProvisionError):
    result = "FAIL_CONFIG_MISSING"


class ConfigurationLocked(ProvisionError):
    result = "FAIL_CONFIG_LOCKED"


class LayoutError(ProvisionError):
    """The requested storage layout cannot be carved as written."""

    result = "FAIL_LAYOUT"


class OperatorAbort(ProvisionError):
    result = "FAIL_ABORTED"


class OperationFailed(ProvisionError):
    """An external tool returned failure in a load-bearing step."""

    result = "FAIL_OPERATION"

    def __init__(
            self,
            step: str,
            cmd: Sequence[str],
            rc: int,
            out: str = "",
            err: str = "",
            *,
            action: str | None = None,
    ) -> None:
        self.step = step
        self.cmd = list(cmd)
        self.rc = rc
        self.out = out or ""
        self.err = err or ""
        self.action = action
        message = f"step {step!r} failed: {' '.join(self.cmd)} exited with {rc}"
        if action:
            message += f" ({action} did not complete)"
        super().__init__(message)

    def details(self) -> dict:
        return {
            "step": self.step,
            "cmd": self.cmd,
            "rc": self.rc,
            "stdout": self.out,
            "stderr": self.err,
            "action": self.action,
        }


class BootArtifactError(ProvisionError):
    """Boot artifacts were only partly regenerated and now disagree."""

    result = "FAIL_BOOT_ARTIFACTS"

    def __init__(self, message: str, *, updated: Sequence[str] = (), stale: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.updated = list(updated)
        self.stale = list(stale)
