"""Git source acquisition with credential fallback."""

import asyncio
import os
import shutil
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from iis_deploy.config import Settings, get_settings
from iis_deploy.models.steps import GitOutput, SourceResult, SourceStrategy
from iis_deploy.utils.logging import get_logger, mask_credentials

logger = get_logger("source")


def repo_name_from_url(repo_url: str) -> str:
    """Derive the working directory name from a repository URL.

    ``https://github.com/org/shop.git`` and ``git@github.com:org/shop`` both
    map to ``shop``.
    """
    tail = repo_url.strip().rstrip("/")
    tail = tail.rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    if tail.lower().endswith(".git"):
        tail = tail[:-4]
    if not tail:
        raise ValueError(f"Cannot derive repository name from URL: {repo_url}")
    return tail


class SourceAcquirer:
    """Clones or updates a working tree for a branch."""

    def __init__(self, settings: Settings | None = None, git_executable: str = "git"):
        self.settings = settings or get_settings()
        self.git_executable = git_executable

    async def acquire(self, repo_url: str, branch: str, working_dir: str | Path) -> SourceResult:
        """Make ``working_dir`` hold ``branch`` of ``repo_url``.

        A non-empty directory is updated in place; an empty or absent one is
        cloned, first with system credentials and then with the configured
        explicit credentials.
        """
        path = Path(working_dir)

        if path.is_dir() and any(path.iterdir()):
            return await self._update(branch, path)

        return await self._clone(repo_url, branch, path)

    async def _update(self, branch: str, path: Path) -> SourceResult:
        logger.info("source.updating", working_dir=str(path), branch=branch)

        for args in (["checkout", branch], ["pull"]):
            output = await self._run_git(args, cwd=path)
            if not output.success:
                message = mask_credentials(output.error_text) or f"git {args[0]} failed"
                logger.warning(
                    "source.update_failed",
                    step=args[0],
                    exit_code=output.exit_code,
                    error=message,
                )
                return SourceResult(
                    success=False,
                    message=message,
                    working_dir=str(path),
                    strategy="update",
                )

        return SourceResult(
            success=True,
            message=f"Updated {branch}",
            working_dir=str(path),
            strategy="update",
        )

    def _clone_attempts(self, repo_url: str) -> list[tuple[SourceStrategy, str]]:
        attempts: list[tuple[SourceStrategy, str]] = []
        if self.settings.use_system_credentials or not self.settings.has_git_credentials:
            attempts.append(("system", repo_url))

        explicit_url = self.authenticated_url(repo_url)
        if explicit_url is not None:
            attempts.append(("explicit", explicit_url))
        return attempts

    async def _clone(self, repo_url: str, branch: str, path: Path) -> SourceResult:
        existed = path.is_dir()
        if existed:
            cwd, destination = path, "."
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            cwd, destination = path.parent, str(path)

        last_error = "git clone failed"
        attempts = 0
        for strategy, url in self._clone_attempts(repo_url):
            attempts += 1
            logger.info(
                "source.cloning",
                repo_url=mask_credentials(url),
                branch=branch,
                strategy=strategy,
            )
            output = await self._run_git(["clone", "-b", branch, url, destination], cwd=cwd)
            if output.success:
                return SourceResult(
                    success=True,
                    message=f"Cloned {branch}",
                    working_dir=str(path),
                    strategy=strategy,
                    clone_attempts=attempts,
                )

            last_error = mask_credentials(output.error_text) or last_error
            logger.warning(
                "source.clone_failed",
                strategy=strategy,
                exit_code=output.exit_code,
                error=last_error,
            )
            self._remove_partial(path, keep_root=existed)

        return SourceResult(
            success=False,
            message=last_error,
            working_dir=str(path),
            strategy=strategy if attempts else None,
            clone_attempts=attempts,
        )

    def _remove_partial(self, path: Path, keep_root: bool) -> None:
        """Remove what a failed clone left behind."""
        if not path.exists():
            return
        if not keep_root:
            shutil.rmtree(path, ignore_errors=True)
            return
        for child in path.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink(missing_ok=True)

    def authenticated_url(self, repo_url: str) -> str | None:
        """Embed the configured credentials into an http(s) URL."""
        if not self.settings.has_git_credentials:
            return None

        parts = urlsplit(repo_url.strip())
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return None

        host = parts.hostname
        if parts.port:
            host = f"{host}:{parts.port}"
        userinfo = f"{quote(self.settings.git_username.strip(), safe='')}:{quote(self.settings.git_token.strip(), safe='')}"
        return urlunsplit(("https", f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))

    async def _run_git(self, args: list[str], cwd: Path) -> GitOutput:
        """Run git with a bounded wait; a timed-out process is killed."""
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        timeout = self.settings.git_timeout_seconds

        try:
            process = await asyncio.create_subprocess_exec(
                self.git_executable,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            return GitOutput(exit_code=-1, stderr=f"Unable to start git: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return GitOutput(
                exit_code=-1,
                stderr=f"git {args[0]} timed out after {timeout:g} seconds",
            )

        return GitOutput(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
        )
