"""Placement of build output into the IIS target directory."""

import asyncio
import shutil
from pathlib import Path

from iis_deploy.config import Settings, get_settings
from iis_deploy.core.exceptions import ResourceMissingError
from iis_deploy.models.steps import ArtifactResult
from iis_deploy.utils.logging import get_logger

logger = get_logger("artifacts")


def _count_files(root: Path) -> int:
    return sum(1 for path in root.rglob("*") if path.is_file())


class ArtifactDeployer:
    """Replaces the target directory with the build output.

    The copy is not transactional: a failure halfway leaves a partially
    populated target.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def deploy(
        self,
        source_dir: str | Path,
        build_output: str,
        target_path: str | Path,
    ) -> ArtifactResult:
        """Copy ``source_dir/build_output`` into ``target_path``.

        Raises:
            ResourceMissingError: If the build output or the target's parent
                directory does not exist
        """
        source = Path(source_dir) / build_output
        target = Path(target_path)

        if not source.is_dir():
            raise ResourceMissingError(f"Build output not found: {source}", str(source))
        if not target.parent.is_dir():
            raise ResourceMissingError(
                f"Target parent directory does not exist: {target.parent}",
                str(target.parent),
            )

        if target.exists():
            logger.info("artifacts.clearing_target", target_path=str(target))
            await asyncio.to_thread(shutil.rmtree, target)
            # Some filesystems release a deleted tree lazily
            await asyncio.sleep(self.settings.copy_settle_delay_seconds)

        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copytree, source, target, dirs_exist_ok=True)
        files_copied = await asyncio.to_thread(_count_files, target)

        logger.info(
            "artifacts.deployed",
            source_path=str(source),
            target_path=str(target),
            files_copied=files_copied,
        )
        return ArtifactResult(
            success=True,
            message=f"Deployed {files_copied} files to {target}",
            source_path=str(source),
            target_path=str(target),
            files_copied=files_copied,
        )
