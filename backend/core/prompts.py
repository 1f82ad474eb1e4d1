"""User-facing prompts used by credential setup and sync failure handling."""

import asyncio
import getpass
import sys
from typing import Protocol


class UserPrompts(Protocol):
    async def show_warning(self, message: str) -> None: ...

    async def show_error(self, message: str, *actions: str) -> str | None:
        """Show an error; return the chosen action label, if any."""
        ...

    async def ask_secret(self, prompt: str) -> str | None:
        """Ask for a secret value; None when the user declines."""
        ...

    async def confirm(self, message: str) -> bool: ...


class ConsolePrompter:
    """UserPrompts on the terminal. Non-interactive sessions decline everything."""

    def __init__(self, interactive: bool | None = None) -> None:
        self._interactive = sys.stdin.isatty() if interactive is None else interactive

    async def show_warning(self, message: str) -> None:
        print(f"warning: {message}", file=sys.stderr)

    async def show_error(self, message: str, *actions: str) -> str | None:
        print(f"error: {message}", file=sys.stderr)
        if not actions or not self._interactive:
            return None
        choices = ", ".join(f"[{i}] {a}" for i, a in enumerate(actions, start=1))
        answer = await asyncio.to_thread(input, f"{choices} (Enter to dismiss): ")
        answer = answer.strip()
        if answer.isdigit() and 1 <= int(answer) <= len(actions):
            return actions[int(answer) - 1]
        return None

    async def ask_secret(self, prompt: str) -> str | None:
        if not self._interactive:
            return None
        value = await asyncio.to_thread(getpass.getpass, f"{prompt}: ")
        return value.strip() or None

    async def confirm(self, message: str) -> bool:
        if not self._interactive:
            return False
        answer = await asyncio.to_thread(input, f"{message} [y/N]: ")
        return answer.strip().lower() in ("y", "yes")
