"""Operator interaction kept out of the phase logic.

Phases and the recovery flow receive a prompt object instead of reading the
terminal directly; :class:`ScriptedPrompt` replays canned answers in tests.
"""

from __future__ import annotations

import sys
from typing import Iterable, List, Optional, Sequence

from .errors import OperatorAbort
from .executil import trace


def info(message: str) -> None:
    print(f"[+] {message}", file=sys.stderr, flush=True)


def warn(message: str) -> None:
    print(f"[!] Warning: {message}", file=sys.stderr, flush=True)


class Prompt:
    """Interface: yes/no confirmation, free-text questions and menus."""

    def confirm(self, question: str, default: bool = False) -> bool:
        raise NotImplementedError

    def ask(self, question: str, default: str = "") -> str:
        raise NotImplementedError

    def choose(self, question: str, options: Sequence[str], default: int = 1) -> int:
        """Return the 1-based index of the selected option."""

        raise NotImplementedError

    def require(self, question: str, default: bool = False) -> None:
        if not self.confirm(question, default=default):
            raise OperatorAbort(f"aborted by operator: {question}")


class TerminalPrompt(Prompt):
    def __init__(self, assume_yes: bool = False, stream=None, reader=input) -> None:
        self.assume_yes = assume_yes
        self.stream = stream or sys.stderr
        self._read = reader

    def confirm(self, question: str, default: bool = False) -> bool:
        if self.assume_yes:
            trace("prompt.confirm.auto", question=question)
            return True
        hint = "[Y/n]" if default else "[y/N]"
        answer = self._read(f"{question} {hint}: ").strip().lower()
        result = default if not answer else answer in {"y", "yes"}
        trace("prompt.confirm", question=question, answer=result)
        return result

    def ask(self, question: str, default: str = "") -> str:
        if self.assume_yes and default:
            return default
        suffix = f" [{default}]" if default else ""
        answer = self._read(f"{question}{suffix}: ").strip()
        return answer or default

    def choose(self, question: str, options: Sequence[str], default: int = 1) -> int:
        if self.assume_yes:
            return default
        print(question, file=self.stream)
        for idx, option in enumerate(options, start=1):
            print(f"{idx}) {option}", file=self.stream)
        while True:
            raw = self._read(f"Select option [{default}]: ").strip()
            if not raw:
                return default
            if raw.isdigit() and 1 <= int(raw) <= len(options):
                return int(raw)
            print("Invalid selection.", file=self.stream)


class ScriptedPrompt(Prompt):
    """Answers questions from a fixed script, recording what was asked."""

    def __init__(
            self,
            confirms: Iterable[bool] = (),
            answers: Iterable[str] = (),
            choices: Iterable[int] = (),
            default_confirm: Optional[bool] = True,
    ) -> None:
        self._confirms: List[bool] = list(confirms)
        self._answers: List[str] = list(answers)
        self._choices: List[int] = list(choices)
        self.default_confirm = default_confirm
        self.asked: List[str] = []

    def confirm(self, question: str, default: bool = False) -> bool:
        self.asked.append(question)
        if self._confirms:
            return self._confirms.pop(0)
        if self.default_confirm is None:
            raise AssertionError(f"unexpected confirmation: {question}")
        return self.default_confirm

    def ask(self, question: str, default: str = "") -> str:
        self.asked.append(question)
        if self._answers:
            return self._answers.pop(0) or default
        return default

    def choose(self, question: str, options: Sequence[str], default: int = 1) -> int:
        self.asked.append(question)
        if self._choices:
            return self._choices.pop(0)
        return default
