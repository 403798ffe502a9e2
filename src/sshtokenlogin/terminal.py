"""Terminal prompting for challenges that cannot go through the browser."""

from __future__ import annotations

from prompt_toolkit import PromptSession  # type: ignore

from sshtokenlogin.errors import InputTerminatedError


class TerminalPrompter:
    """Ask questions on the controlling terminal.

    Echoed questions read a visible line; the others read with input masked.
    End of input (Ctrl-D, closed stdin) raises :class:`InputTerminatedError`.
    """

    def __init__(self, session: PromptSession | None = None) -> None:
        self._session = session

    def _prompt_session(self) -> PromptSession:
        if self._session is None:
            self._session = PromptSession()
        return self._session

    def show(self, text: str) -> None:
        print(text, flush=True)

    async def read_line(self, prompt: str) -> str:
        return await self._ask(prompt, is_password=False)

    async def read_secret(self, prompt: str) -> str:
        return await self._ask(prompt, is_password=True)

    async def _ask(self, prompt: str, *, is_password: bool) -> str:
        try:
            return await self._prompt_session().prompt_async(prompt, is_password=is_password)
        except EOFError as exc:
            raise InputTerminatedError("Input scan terminated") from exc
