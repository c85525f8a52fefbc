from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol, Sequence, TypeVar

from .errors import UserCancelled, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Prompter(Protocol):
    """Operator dialog used by the orchestrator and by steps."""

    def confirm(self, question: str, *, default: bool = True) -> bool:
        ...

    def ask(self, question: str, *, default: Optional[str] = None, secret: bool = False) -> str:
        ...

    def choose(self, question: str, options: Sequence[str], *, default: Optional[str] = None) -> str:
        ...

    def choose_many(self, question: str, options: Sequence[str], *, default: Sequence[str] = ()) -> List[str]:
        ...

    def notify(self, message: str) -> None:
        ...


class ConsolePrompter:
    """Line-based prompts on stdin/stdout. Ctrl-C or EOF cancels."""

    def __init__(self, input_fn: Callable[[str], str] = input, output_fn: Callable[[str], None] = print) -> None:
        self._input = input_fn
        self._output = output_fn

    def _read(self, prompt: str) -> str:
        try:
            return self._input(prompt).strip()
        except (EOFError, KeyboardInterrupt) as e:
            self._output("")
            raise UserCancelled("Cancelled by operator") from e

    def confirm(self, question: str, *, default: bool = True) -> bool:
        hint = "[Y/n]" if default else "[y/N]"
        while True:
            answer = self._read(f"{question} {hint} ").lower()
            if not answer:
                return default
            if answer in {"y", "yes"}:
                return True
            if answer in {"n", "no"}:
                return False
            self._output("Please answer y or n.")

    def ask(self, question: str, *, default: Optional[str] = None, secret: bool = False) -> str:
        suffix = ""
        if default:
            suffix = " [(hidden)]" if secret else f" [{default}]"
        answer = self._read(f"{question}{suffix}: ")
        return answer or (default or "")

    def choose(self, question: str, options: Sequence[str], *, default: Optional[str] = None) -> str:
        if not options:
            raise ValidationError(f"No options available for: {question}")
        self._output(question)
        for i, opt in enumerate(options, start=1):
            mark = "*" if opt == default else " "
            self._output(f" {mark}{i:2d}) {opt}")
        while True:
            answer = self._read("Select number: ")
            if not answer and default in options:
                return str(default)
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            if answer in options:
                return answer
            self._output("Invalid selection.")

    def choose_many(self, question: str, options: Sequence[str], *, default: Sequence[str] = ()) -> List[str]:
        self._output(question)
        for i, opt in enumerate(options, start=1):
            mark = "*" if opt in default else " "
            self._output(f" {mark}{i:2d}) {opt}")
        while True:
            answer = self._read("Select numbers separated by spaces (empty keeps the marked ones): ")
            if not answer:
                return list(default)
            picked: List[str] = []
            ok = True
            for token in answer.replace(",", " ").split():
                if token.isdigit() and 1 <= int(token) <= len(options):
                    opt = options[int(token) - 1]
                    if opt not in picked:
                        picked.append(opt)
                else:
                    ok = False
            if ok:
                return picked
            self._output("Invalid selection.")

    def notify(self, message: str) -> None:
        self._output(message)


class AssumeYesPrompter:
    """Unattended prompts: confirm everything and accept every default."""

    def confirm(self, question: str, *, default: bool = True) -> bool:
        logger.info("[auto-confirm] %s", question)
        return True

    def ask(self, question: str, *, default: Optional[str] = None, secret: bool = False) -> str:
        logger.info("[auto-answer] %s -> %s", question, "(hidden)" if secret else (default or ""))
        return default or ""

    def choose(self, question: str, options: Sequence[str], *, default: Optional[str] = None) -> str:
        if default is not None and default in options:
            return default
        if not options:
            raise ValidationError(f"No options available for: {question}")
        return options[0]

    def choose_many(self, question: str, options: Sequence[str], *, default: Sequence[str] = ()) -> List[str]:
        return list(default)

    def notify(self, message: str) -> None:
        logger.info("%s", message)


def ask_validated(
    prompter: Prompter,
    question: str,
    parse: Callable[[str], T],
    *,
    default: Optional[str] = None,
    attempts: int = 3,
) -> T:
    """Ask until `parse` accepts the answer. ValidationError re-prompts."""

    last: Optional[ValidationError] = None
    for _ in range(attempts):
        answer = prompter.ask(question, default=default)
        try:
            return parse(answer)
        except ValidationError as e:
            last = e
            prompter.notify(str(e))
    raise last or ValidationError(f"No answer for: {question}")


def positive_int(text: str) -> int:
    try:
        value = int(text.strip())
    except ValueError as e:
        raise ValidationError(f"Not a number: {text!r}") from e
    if value <= 0:
        raise ValidationError(f"Must be a positive number: {value}")
    return value
