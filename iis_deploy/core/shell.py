"""Command execution against persistent terminal sessions.

Commands are grouped by ``terminal_id``. Each group is fed, in order, to one
long-lived shell process so that state such as the current directory or
environment variables carries over between commands of the same group.

Completion is detected with a sentinel file: after every command the shell
writes the exit code of that command to ``.deploy-<token>.exit`` in the
working directory. The file is written under a temporary name and renamed,
so it is either absent or complete. Fence lines echoed to stdout and stderr
mark the end of the command's output on both streams.
"""

import asyncio
import os
import secrets
import shlex
from dataclasses import dataclass
from pathlib import Path

from iis_deploy.config import Settings, get_settings
from iis_deploy.core.events import EventBus, get_event_bus
from iis_deploy.core.exceptions import CommandTimeoutError, DeployError, ToolFailureError
from iis_deploy.core.repository import DeployRepository, get_deploy_repository
from iis_deploy.models.deploy import Command, CommandStatus
from iis_deploy.models.steps import CommandRunResult
from iis_deploy.utils.logging import get_logger

logger = get_logger("shell")

IS_WINDOWS = os.name == "nt"

# Verbs that resolve to batch/script launchers and need the interpreter
LAUNCHERS = frozenset({"npm", "npx", "yarn", "pnpm"})

INTERPRETER_TOKENS = ("&&", "&", "|")

STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class CommandClassification:
    """How a command line is handed to the terminal."""

    text: str
    executable: str
    needs_interpreter: bool
    is_launcher: bool = False


def classify_command(text: str) -> CommandClassification:
    """Decide whether a command needs the full interpreter.

    Commands with ``&&``, ``&`` or ``|``, or that start with a package
    manager launcher, need it. Anything else runs as the executable named
    by its first token.
    """
    stripped = text.strip()
    parts = stripped.split()
    executable = parts[0] if parts else ""
    verb = Path(executable).name.lower()
    for suffix in (".cmd", ".bat", ".exe"):
        if verb.endswith(suffix):
            verb = verb[: -len(suffix)]

    is_launcher = verb in LAUNCHERS
    needs_interpreter = is_launcher or any(token in stripped for token in INTERPRETER_TOKENS)
    return CommandClassification(
        text=stripped,
        executable=executable,
        needs_interpreter=needs_interpreter,
        is_launcher=is_launcher,
    )


def build_shell_line(text: str, windows: bool = IS_WINDOWS) -> str:
    """Return the line written to the terminal for a command.

    ``cmd.exe`` does not return to the calling session after a batch
    launcher unless it is invoked with ``call``.
    """
    classification = classify_command(text)
    if windows and classification.is_launcher and not classification.text.lower().startswith("call "):
        return f"call {classification.text}"
    return classification.text


def sentinel_lines(marker: Path, fence: str, windows: bool = IS_WINDOWS) -> list[str]:
    """Lines that record the last exit code in ``marker`` and fence both streams."""
    temp = marker.with_suffix(".tmp")
    if windows:
        return [
            f'echo %errorlevel% > "{temp}" & move /y "{temp}" "{marker}" > nul',
            f"echo {fence}",
            f"echo {fence} 1>&2",
        ]
    return [
        f"echo $? > {shlex.quote(str(temp))}; mv -f {shlex.quote(str(temp))} {shlex.quote(str(marker))}",
        f"echo {fence}",
        f"echo {fence} 1>&2",
    ]


def shell_command(settings: Settings) -> list[str]:
    """The argv of the persistent shell for this platform."""
    if settings.shell_executable:
        return [settings.shell_executable]
    if IS_WINDOWS:
        return [os.environ.get("COMSPEC", "cmd.exe"), "/Q"]
    return ["/bin/sh"]


def augmented_environment(extra_entries: list[str]) -> dict[str, str]:
    """Copy of the process environment with extra PATH entries appended."""
    env = os.environ.copy()
    current = [entry for entry in env.get("PATH", "").split(os.pathsep) if entry]
    for entry in extra_entries:
        if entry and entry not in current:
            current.append(entry)
    env["PATH"] = os.pathsep.join(current)
    return env


class TerminalSession:
    """One persistent shell process serving a terminal group."""

    def __init__(
        self,
        terminal_id: str,
        working_dir: str | Path,
        settings: Settings | None = None,
    ):
        self.terminal_id = terminal_id
        self.working_dir = Path(working_dir).resolve()
        self.settings = settings or get_settings()
        self.windows = IS_WINDOWS and not self.settings.shell_executable

        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._fence: str | None = None
        self._abandoned_markers: list[Path] = []
        self._stdout_fenced = asyncio.Event()
        self._stderr_fenced = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Spawn the shell in the working directory.

        Raises:
            ToolFailureError: If the shell cannot be started
        """
        argv = shell_command(self.settings)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.working_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=augmented_environment(self.settings.extra_path_entries),
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ToolFailureError("shell", f"Unable to start {argv[0]}: {e}") from e

        self._readers = [
            asyncio.create_task(self._read(self._process.stdout, self._stdout, self._stdout_fenced)),
            asyncio.create_task(self._read(self._process.stderr, self._stderr, self._stderr_fenced)),
        ]
        logger.debug(
            "terminal.started",
            terminal_id=self.terminal_id,
            shell=argv[0],
            pid=self._process.pid,
        )

    async def _read(
        self,
        stream: asyncio.StreamReader | None,
        buffer: list[str],
        fenced: asyncio.Event,
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").rstrip("\r\n")
            if self._fence is not None and line.strip() == self._fence:
                fenced.set()
                continue
            buffer.append(line)

    async def _write(self, lines: list[str]) -> None:
        assert self._process is not None and self._process.stdin is not None
        newline = "\r\n" if self.windows else "\n"
        data = "".join(line + newline for line in lines).encode()
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ToolFailureError(
                "shell", "Shell exited before the command completed"
            ) from e

    async def run(self, text: str, timeout: float | None = None) -> CommandRunResult:
        """Run one command and wait for its sentinel.

        ``timeout`` overrides ``command_timeout_seconds`` for this command.

        Raises:
            CommandTimeoutError: If the sentinel does not appear in time
            ToolFailureError: If the shell exits or reports an unreadable code
        """
        if not self.is_running:
            raise ToolFailureError("shell", "Terminal session is not running")

        token = secrets.token_hex(8)
        marker = self.working_dir / f".deploy-{token}.exit"
        self._fence = f"__deploy_fence_{token}__"
        self._stdout.clear()
        self._stderr.clear()
        self._stdout_fenced.clear()
        self._stderr_fenced.clear()

        line = build_shell_line(text, windows=self.windows)
        await self._write([line, *sentinel_lines(marker, self._fence, windows=self.windows)])

        try:
            exit_code = await self._wait_for_sentinel(marker, text, timeout)
        except CommandTimeoutError:
            # The queued sentinel lines may still run before the shell is closed
            self._abandoned_markers.append(marker)
            raise
        await self._wait_for_fences()

        return CommandRunResult(
            exit_code=exit_code,
            stdout="\n".join(self._stdout),
            stderr="\n".join(self._stderr),
        )

    async def _wait_for_sentinel(self, marker: Path, text: str, timeout: float | None) -> int:
        loop = asyncio.get_running_loop()
        if timeout is None:
            timeout = self.settings.command_timeout_seconds
        deadline = loop.time() + timeout

        while True:
            if marker.exists():
                content = marker.read_text(errors="replace").strip()
                marker.unlink(missing_ok=True)
                try:
                    return int(content)
                except ValueError as e:
                    raise ToolFailureError(
                        "shell", f"Unreadable exit code {content!r}"
                    ) from e

            if not self.is_running:
                raise ToolFailureError(
                    "shell",
                    "Shell exited before the command completed",
                    exit_code=self._process.returncode if self._process else None,
                )

            if loop.time() >= deadline:
                raise CommandTimeoutError(text, timeout)

            await asyncio.sleep(self.settings.sentinel_poll_interval)

    async def _wait_for_fences(self) -> None:
        try:
            await asyncio.wait_for(
                asyncio.gather(self._stdout_fenced.wait(), self._stderr_fenced.wait()),
                timeout=max(self.settings.shell_exit_grace_seconds, 1),
            )
        except asyncio.TimeoutError:
            logger.warning("terminal.fence_missing", terminal_id=self.terminal_id)

    async def close(self) -> None:
        """Close stdin, give the shell a grace period, then kill it.

        Sentinels of timed out commands are deleted once the shell is gone.
        """
        process = self._process
        if process is None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.shell_exit_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("terminal.killed", terminal_id=self.terminal_id, pid=process.pid)
            process.kill()
            await process.wait()

        if self._readers:
            _, pending = await asyncio.wait(
                self._readers, timeout=self.settings.shell_exit_grace_seconds
            )
            # A background child can keep the pipes open after the shell exits
            for task in pending:
                task.cancel()
        self._readers = []
        self._remove_abandoned_markers()
        logger.debug(
            "terminal.closed",
            terminal_id=self.terminal_id,
            returncode=process.returncode,
        )

    def _remove_abandoned_markers(self) -> None:
        for marker in self._abandoned_markers:
            marker.unlink(missing_ok=True)
            marker.with_suffix(".tmp").unlink(missing_ok=True)
        self._abandoned_markers = []


class CommandExecutor:
    """Runs a deploy's commands, one terminal session per group.

    Groups run concurrently and commands inside a group run strictly in
    order. A failed or errored command stops its own group only.
    """

    def __init__(
        self,
        repository: DeployRepository | None = None,
        events: EventBus | None = None,
        settings: Settings | None = None,
    ):
        self.repository = repository or get_deploy_repository()
        self.events = events or get_event_bus()
        self.settings = settings or get_settings()

    @staticmethod
    def group_commands(commands: list[Command]) -> dict[str, list[Command]]:
        """Partition commands by terminal, each group sorted by order."""
        groups: dict[str, list[Command]] = {}
        for command in sorted(commands, key=lambda c: (c.terminal_id, c.order)):
            groups.setdefault(command.terminal_id, []).append(command)
        return groups

    async def execute_all(
        self,
        deploy_id: int,
        commands: list[Command],
        working_dir: str | Path,
    ) -> bool:
        """Run every group and report whether all commands succeeded."""
        groups = self.group_commands(commands)
        if not groups:
            return True

        logger.info(
            "executor.started",
            deploy_id=deploy_id,
            groups=len(groups),
            commands=len(commands),
        )

        results = await asyncio.gather(
            *(
                self._run_group(deploy_id, terminal_id, group, working_dir)
                for terminal_id, group in groups.items()
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        succeeded = all(results)
        logger.info("executor.finished", deploy_id=deploy_id, success=succeeded)
        return succeeded

    async def _run_group(
        self,
        deploy_id: int,
        terminal_id: str,
        commands: list[Command],
        working_dir: str | Path,
    ) -> bool:
        session = TerminalSession(terminal_id, working_dir, settings=self.settings)
        try:
            for index, command in enumerate(commands):
                await self._start_command(deploy_id, command)

                try:
                    if index == 0:
                        await session.start()
                    result = await session.run(command.text, timeout=command.timeout_seconds)
                except DeployError as e:
                    command.mark_error(e.message)
                    await self._finish_command(deploy_id, command)
                    return False
                except Exception as e:
                    command.mark_error(str(e) or type(e).__name__)
                    await self._finish_command(deploy_id, command)
                    raise

                if result.success:
                    command.mark_success()
                else:
                    command.mark_failed(result.failure_message)
                await self._finish_command(deploy_id, command)

                if not result.success:
                    return False
            return True
        finally:
            await session.close()

    async def _start_command(self, deploy_id: int, command: Command) -> None:
        command.mark_running()
        await self.repository.update_command(command)
        await self.events.publish_command_started(deploy_id, command)
        classification = classify_command(command.text)
        logger.info(
            "command.started",
            deploy_id=deploy_id,
            terminal_id=command.terminal_id,
            order=command.order,
            command=command.text,
            executable=classification.executable,
            interpreter=classification.needs_interpreter,
        )

    async def _finish_command(self, deploy_id: int, command: Command) -> None:
        await self.repository.update_command(command)
        await self.events.publish_command_completed(deploy_id, command)
        log = logger.info if command.status == CommandStatus.SUCCESS else logger.warning
        log(
            "command.finished",
            deploy_id=deploy_id,
            terminal_id=command.terminal_id,
            order=command.order,
            status=command.status.value,
        )
