"""Unit tests for artifact deployment."""

from pathlib import Path

import pytest

from iis_deploy.config import Settings
from iis_deploy.core.artifacts import ArtifactDeployer
from iis_deploy.core.exceptions import ResourceMissingError


@pytest.fixture
def build_tree(tmp_path: Path) -> Path:
    """A working tree with a built ``dist`` folder."""
    source = tmp_path / "src"
    (source / "dist" / "assets").mkdir(parents=True)
    (source / "dist" / "index.html").write_text("<h1>shop</h1>")
    (source / "dist" / "assets" / "site.css").write_text("body {}")
    return source


class TestArtifactDeployer:
    """Tests for copying build output."""

    @pytest.mark.asyncio
    async def test_copies_tree(self, tmp_path: Path, build_tree: Path, test_settings: Settings):
        target = tmp_path / "site" / "store"
        target.parent.mkdir()

        result = await ArtifactDeployer(test_settings).deploy(build_tree, "dist", target)

        assert result.success
        assert result.files_copied == 2
        assert (target / "index.html").read_text() == "<h1>shop</h1>"
        assert (target / "assets" / "site.css").exists()

    @pytest.mark.asyncio
    async def test_replaces_existing_content(self, tmp_path: Path, build_tree: Path, test_settings: Settings):
        target = tmp_path / "site"
        (target / "old").mkdir(parents=True)
        (target / "old" / "stale.js").write_text("stale")
        (target / "index.html").write_text("old")

        await ArtifactDeployer(test_settings).deploy(build_tree, "dist", target)

        assert not (target / "old").exists()
        assert (target / "index.html").read_text() == "<h1>shop</h1>"

    @pytest.mark.asyncio
    async def test_missing_build_output(self, tmp_path: Path, build_tree: Path, test_settings: Settings):
        with pytest.raises(ResourceMissingError, match="Build output not found"):
            await ArtifactDeployer(test_settings).deploy(build_tree, "build", tmp_path / "site")

    @pytest.mark.asyncio
    async def test_missing_target_parent(self, tmp_path: Path, build_tree: Path, test_settings: Settings):
        target = tmp_path / "missing" / "store"

        with pytest.raises(ResourceMissingError) as exc_info:
            await ArtifactDeployer(test_settings).deploy(build_tree, "dist", target)

        assert exc_info.value.path == str(target.parent)
        assert not target.exists()
