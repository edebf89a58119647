"""CLI entrypoint for the cryptstack provisioner."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, List, Optional

from . import __version__, devices
from .config_store import ConfigurationStore
from .errors import (
    BootArtifactError,
    ConfigurationLocked,
    DeviceAmbiguous,
    NamingMismatch,
    OperationFailed,
    PreconditionUnmet,
    ProvisionError,
)
from .executil import append_jsonl, resolve_log_path, trace
from .markers import FileMarkerStore
from .model import PHASE_ORDER, Config, Phase
from .paths import logs_dir
from .phases import PhaseRunner, default_registry
from .prompt import Prompt, TerminalPrompt, info
from .recovery import BootRecoveryReconstructor

RESULT_CODES: Dict[str, int] = {
    "CONFIG_SAVED_OK": 0,
    "CONFIG_OK": 0,
    "STATUS_OK": 0,
    "RESET_OK": 0,
    "PHASES_OK": 0,
    "DRYRUN_OK": 0,
    "RECOVERY_OK": 0,
    "FAIL_USAGE": 2,
    "FAIL_PRECONDITION": 3,
    "FAIL_DEVICE_NOT_FOUND": 3,
    "FAIL_DEVICE_AMBIGUOUS": 4,
    "FAIL_NAMING_MISMATCH": 4,
    "FAIL_CONFIG_MISSING": 5,
    "FAIL_CONFIG_LOCKED": 5,
    "FAIL_LAYOUT": 6,
    "FAIL_OPERATION": 7,
    "FAIL_BOOT_ARTIFACTS": 8,
    "FAIL_ABORTED": 9,
    "FAIL_GENERIC": 10,
    "FAIL_UNHANDLED": 11,
}

PHASE_GROUPS: Dict[str, List[Phase]] = {
    "prepare": [Phase.PARTITION, Phase.ENCRYPT, Phase.VOLUME_MANAGE],
    "base": [Phase.FILESYSTEM, Phase.MOUNT, Phase.BASE_INSTALL],
    "configure": [Phase.IN_TARGET_CONFIGURE],
    "post-reboot": [Phase.POST_REBOOT],
}

CLI_START_MONO = time.perf_counter()


def _result_log_path() -> str:
    return os.path.join(logs_dir(), "results.jsonl")


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time()), "version": __version__}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    append_jsonl(_result_log_path(), payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _error_payload(exc: ProvisionError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, OperationFailed):
        payload.update(exc.details())
    if isinstance(exc, PreconditionUnmet):
        payload["missing"] = exc.missing
    if isinstance(exc, DeviceAmbiguous):
        payload["candidates"] = exc.candidates
    if isinstance(exc, NamingMismatch):
        payload["expected"] = exc.expected
        payload["found"] = exc.found
    if isinstance(exc, BootArtifactError):
        payload["updated"] = exc.updated
        payload["stale"] = exc.stale
    return payload


def _parse_assignments(items: Optional[List[str]]) -> Dict[str, str]:
    changes: Dict[str, str] = {}
    for item in items or []:
        if "=" not in item:
            raise ValueError(f"expected KEY=VALUE, got {item!r}")
        key, value = item.split("=", 1)
        changes[key.strip().upper()] = value
    return changes


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cryptstack", add_help=True)
    parser.add_argument("--config", default=None, help="configuration file (default: state dir)")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--yes", dest="assume_yes", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init-config", help="write the configuration for a new attempt")
    init.add_argument("--disk0", default=None)
    init.add_argument("--disk1", default=None)
    init.add_argument("--set", dest="assignments", action="append", metavar="KEY=VALUE")

    sub.add_parser("show-config")
    sub.add_parser("status")

    amend = sub.add_parser("amend", help="edit the saved configuration once")
    amend.add_argument("--set", dest="assignments", action="append", required=True, metavar="KEY=VALUE")

    sub.add_parser("reset", help="forget configuration, bindings and phase markers")

    phase = sub.add_parser("phase", help="run a single phase")
    phase.add_argument("name", help="phase name or number (1-8)")
    phase.add_argument("--passphrase-file", default=None)

    for name in (*PHASE_GROUPS, "all"):
        group = sub.add_parser(name)
        group.add_argument("--passphrase-file", default=None)

    recover = sub.add_parser("recover", help="repair the boot path of an installed system")
    recover.add_argument("--mount-root", default=None)
    return parser


def _prompt(args) -> Prompt:
    return TerminalPrompt(assume_yes=args.assume_yes)


def _runner(args, config: Config, store: ConfigurationStore, prompt: Prompt) -> PhaseRunner:
    return PhaseRunner(
        config,
        devices.resolve(config),
        FileMarkerStore(),
        default_registry(),
        prompt=prompt,
        store=store,
        dry_run=args.dry_run,
        passphrase_file=getattr(args, "passphrase_file", None),
    )


def _run_phases(args, store: ConfigurationStore, phases: List[Phase], prompt: Prompt) -> None:
    config = store.load()
    runner = _runner(args, config, store, prompt)
    results = []
    for phase in phases:
        result = runner.run(phase)
        results.append(result.as_dict())
        if result.already_completed:
            info(f"{phase.value}: already completed, skipping")
        else:
            info(f"{phase.value}: {result.status.value}")
    kind = "DRYRUN_OK" if args.dry_run else "PHASES_OK"
    _emit_result(kind, {"phases": results})


def _init_config(args, store: ConfigurationStore, prompt: Prompt) -> None:
    started = [phase.value for phase in FileMarkerStore().completed()]
    if started or store.bindings():
        raise ConfigurationLocked(
            f"installation attempt already in progress ({', '.join(started) or 'names bound'}); "
            "use 'cryptstack amend' or start over with 'cryptstack reset'"
        )
    values = _parse_assignments(args.assignments)
    if args.disk0:
        values["DISK0"] = args.disk0
    if args.disk1:
        values["DISK1"] = args.disk1
    config = Config().with_changes(values)
    if not config.disk0:
        config = config.with_changes({"DISK0": prompt.ask("Primary disk (e.g. /dev/nvme0n1)")})
    if not config.disk1:
        config = config.with_changes({"DISK1": prompt.ask("Secondary disk (e.g. /dev/nvme1n1)")})
    devices.resolve(config)
    path = store.save(config)
    _emit_result("CONFIG_SAVED_OK", {"config_path": str(path), "config": config.as_mapping()})


def _guided(args, store: ConfigurationStore, prompt: Prompt) -> None:
    """Show the saved configuration, allow the one amendment, then run to the handoff."""

    config = store.load()
    for key, value in config.as_mapping().items():
        print(f"{key}={value}", file=sys.stderr)
    if not store.lock_path.exists() and not prompt.confirm("Use this configuration?", default=True):
        raw = prompt.ask("Changes as KEY=VALUE separated by spaces")
        store.amend(config, _parse_assignments(raw.split()))
    phases = PHASE_GROUPS["prepare"] + PHASE_GROUPS["base"]
    _run_phases(args, store, phases, prompt)


def _status(store: ConfigurationStore) -> None:
    markers = FileMarkerStore()
    done = set(markers.completed())
    _emit_result("STATUS_OK", {
        "config_path": str(store.path),
        "config_present": store.exists(),
        "bindings": store.bindings(),
        "phases": {phase.value: phase in done for phase in PHASE_ORDER},
        "markers_dir": str(markers.directory),
    })


def _recover(args, store: ConfigurationStore, prompt: Prompt) -> None:
    config = store.load() if store.exists() else Config()
    if args.mount_root:
        config = config.with_changes({"MOUNT_ROOT": args.mount_root})
    report = BootRecoveryReconstructor(config, prompt=prompt, dry_run=args.dry_run).run()
    _emit_result("RECOVERY_OK", {"recovery": report.as_dict()})


def _main_impl(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    store = ConfigurationStore(path=args.config)
    prompt = _prompt(args)
    trace("cli.start", command=args.command, dry_run=args.dry_run, argv=list(argv or sys.argv[1:]))

    if args.command == "init-config":
        _init_config(args, store, prompt)
    elif args.command == "show-config":
        _emit_result("CONFIG_OK", {"config_path": str(store.path), "config": store.load().as_mapping()})
    elif args.command == "status":
        _status(store)
    elif args.command == "amend":
        updated = store.amend(store.load(), _parse_assignments(args.assignments))
        _emit_result("CONFIG_SAVED_OK", {"config_path": str(store.path), "config": updated.as_mapping()})
    elif args.command == "reset":
        prompt.require("Forget the saved configuration and all phase markers?", default=False)
        store.reset()
        FileMarkerStore().clear()
        _emit_result("RESET_OK")
    elif args.command == "phase":
        _run_phases(args, store, [Phase.parse(args.name)], prompt)
    elif args.command in PHASE_GROUPS:
        _run_phases(args, store, PHASE_GROUPS[args.command], prompt)
    elif args.command == "all":
        _guided(args, store, prompt)
    elif args.command == "recover":
        _recover(args, store, prompt)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except ProvisionError as exc:
        _emit_result(exc.result, _error_payload(exc))
    except ValueError as exc:
        _emit_result("FAIL_USAGE", {"error": str(exc)})
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", {"error": str(exc), "error_type": type(exc).__name__})
    return 0


def main_recover(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    global_flags = [a for a in args if a in ("--dry-run", "--yes")]
    rest = [a for a in args if a not in global_flags]
    return main([*global_flags, "recover", *rest])


if __name__ == "__main__":
    sys.exit(main())
