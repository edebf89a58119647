"""Phase completion markers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional, Set

from .executil import trace
from .model import PHASE_ORDER, Phase
from .paths import markers_dir


class MarkerStore:
    def is_set(self, phase: Phase) -> bool:
        raise NotImplementedError

    def set(self, phase: Phase) -> None:
        raise NotImplementedError

    def clear(self, phases: Optional[Iterable[Phase]] = None) -> None:
        raise NotImplementedError

    def completed(self) -> list[Phase]:
        return [phase for phase in PHASE_ORDER if self.is_set(phase)]


class MemoryMarkerStore(MarkerStore):
    def __init__(self, done: Iterable[Phase] = ()) -> None:
        self._done: Set[Phase] = set(done)

    def is_set(self, phase: Phase) -> bool:
        return phase in self._done

    def set(self, phase: Phase) -> None:
        self._done.add(phase)

    def clear(self, phases: Optional[Iterable[Phase]] = None) -> None:
        if phases is None:
            self._done.clear()
            return
        for phase in phases:
            self._done.discard(phase)


class FileMarkerStore(MarkerStore):
    """One presence-only file per phase.

    The marker is written to a temporary name, synced and renamed into place
    so a process killed mid-write never leaves a marker behind.
    """

    def __init__(self, directory: Optional[str] = None) -> None:
        self.directory = Path(directory or markers_dir())

    def path_for(self, phase: Phase) -> Path:
        return self.directory / phase.marker_name

    def is_set(self, phase: Phase) -> bool:
        return self.path_for(phase).is_file()

    def set(self, phase: Phase) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(phase)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(phase.value + "\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
        dir_fd = os.open(self.directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
        trace("markers.set", phase=phase.value, path=str(path))

    def clear(self, phases: Optional[Iterable[Phase]] = None) -> None:
        for phase in (PHASE_ORDER if phases is None else list(phases)):
            try:
                self.path_for(phase).unlink()
            except FileNotFoundError:
                continue
            trace("markers.clear", phase=phase.value)
