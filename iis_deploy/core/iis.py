"""IIS site lookup and deploy target resolution."""

import asyncio
import json
import os
from pathlib import Path, PureWindowsPath
from typing import Any, Protocol

from iis_deploy.config import Settings, get_settings
from iis_deploy.core.exceptions import SiteNotFoundError, ToolFailureError
from iis_deploy.models.iis import ApplicationInfo, SiteInfo, TargetResolution
from iis_deploy.utils.logging import get_logger

logger = get_logger("iis")


class SiteResolver(Protocol):
    """Looks up IIS sites and their nested applications."""

    async def get_site(self, name: str) -> SiteInfo | None: ...

    async def get_application(self, site_name: str, path: str) -> ApplicationInfo | None: ...


def normalize_application_path(path: str) -> str:
    """``app``, ``/app/`` and ``\\app`` all become ``/app``."""
    cleaned = path.strip().replace("\\", "/").strip("/")
    return f"/{cleaned}" if cleaned else "/"


def parse_site_and_application(
    iis_site_name: str, application_path: str | None = None
) -> tuple[str, str | None]:
    """Split ``site/app`` notation; an explicit application path wins."""
    site_name = iis_site_name.strip()
    if application_path and application_path.strip():
        return site_name, application_path.strip().strip("/\\")

    if "/" in site_name:
        site, _, app = site_name.partition("/")
        site, app = site.strip(), app.strip().strip("/")
        if site and app:
            return site, app
        site_name = site or app

    return site_name, None


def _join(root: str, *parts: str) -> str:
    path = Path(root)
    for part in parts:
        for segment in part.replace("\\", "/").split("/"):
            if segment:
                path = path / segment
    return str(path)


async def resolve_target(
    resolver: SiteResolver,
    iis_site_name: str,
    application_path: str | None = None,
    target_path: str | None = None,
) -> TargetResolution:
    """Compute the directory a deploy writes into.

    The final path is the site root, then the application path, then the
    target path. The target path is skipped when it names the application
    itself. An application unknown to IIS is deployed as a plain folder and
    reported as a warning.

    Raises:
        SiteNotFoundError: If the resolver does not know the site
    """
    site_name, app_path = parse_site_and_application(iis_site_name, application_path)
    site = await resolver.get_site(site_name)
    if site is None:
        raise SiteNotFoundError(site_name)

    target = (target_path or "").strip().strip("/\\")
    warnings: list[str] = []
    is_application = False

    if app_path:
        final_path = _join(site.physical_path, app_path)
        if target and target.lower() != app_path.lower():
            final_path = _join(final_path, target)

        application = await resolver.get_application(site_name, app_path)
        if application is not None:
            is_application = True
        else:
            warning = f"Application '{app_path}' does not exist in IIS and will be deployed as a folder"
            logger.warning("iis.application_missing", site_name=site_name, application=app_path)
            warnings.append(warning)
    else:
        final_path = _join(site.physical_path, target)

    if target and (not app_path or target.lower() != app_path.lower()):
        nested = f"{app_path}/{target}" if app_path else target
        if not is_application and await resolver.get_application(site_name, nested) is not None:
            is_application = True

    logger.info(
        "iis.target_resolved",
        site_name=site_name,
        application_path=app_path,
        final_path=final_path,
    )
    return TargetResolution(
        site_name=site_name,
        application_path=app_path,
        site_physical_path=site.physical_path,
        final_path=final_path,
        is_iis_application=is_application,
        warnings=warnings,
    )


class StaticSiteResolver:
    """Resolver backed by a configured site name to physical path mapping.

    Applications are the existing subdirectories of a site's root.
    """

    def __init__(self, sites: dict[str, str] | None = None):
        if sites is None:
            sites = get_settings().iis_sites
        self.sites = {name.lower(): (name, path) for name, path in sites.items()}

    async def get_site(self, name: str) -> SiteInfo | None:
        entry = self.sites.get(name.strip().lower())
        if entry is None:
            return None
        site_name, physical_path = entry
        root = Path(physical_path)
        applications = ["/"]
        if root.is_dir():
            applications += sorted(f"/{child.name}" for child in root.iterdir() if child.is_dir())
        return SiteInfo(name=site_name, physical_path=physical_path, applications=applications)

    async def get_application(self, site_name: str, path: str) -> ApplicationInfo | None:
        site = await self.get_site(site_name)
        if site is None:
            return None
        normalized = normalize_application_path(path)
        physical = _join(site.physical_path, normalized)
        if normalized == "/" or not Path(physical).is_dir():
            return None
        return ApplicationInfo(site_name=site.name, path=normalized, physical_path=physical)


def _ps_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PowerShellSiteResolver:
    """Resolver that queries IIS through the ``IISAdministration`` module."""

    SITE_SCRIPT = """
$site = Get-IISSite -Name {name} -ErrorAction SilentlyContinue
if (-not $site) {{ exit 2 }}
$physicalPath = $null
$rootApp = $site.Applications | Where-Object {{ $_.Path -eq '/' }} | Select-Object -First 1
if ($rootApp) {{
    $rootVDir = $rootApp.VirtualDirectories | Where-Object {{ $_.Path -eq '/' }} | Select-Object -First 1
    if ($rootVDir) {{ $physicalPath = $rootVDir.PhysicalPath }}
}}
[PSCustomObject]@{{
    Name = $site.Name
    Id = $site.Id
    State = "$($site.State)"
    PhysicalPath = $physicalPath
    Applications = @($site.Applications | ForEach-Object {{ $_.Path }})
    Bindings = @($site.Bindings | ForEach-Object {{ "$($_.Protocol)://$($_.BindingInformation)" }})
}} | ConvertTo-Json -Depth 2 -Compress
"""

    APPLICATION_SCRIPT = """
$site = Get-IISSite -Name {name} -ErrorAction SilentlyContinue
if (-not $site) {{ exit 2 }}
$application = $site.Applications | Where-Object {{ $_.Path -eq {path} }} | Select-Object -First 1
if (-not $application) {{ exit 3 }}
$physicalPath = $null
$rootVDir = $application.VirtualDirectories | Where-Object {{ $_.Path -eq '/' }} | Select-Object -First 1
if ($rootVDir) {{ $physicalPath = $rootVDir.PhysicalPath }}
[PSCustomObject]@{{
    Path = $application.Path
    PhysicalPath = $physicalPath
    ApplicationPool = $application.ApplicationPoolName
}} | ConvertTo-Json -Depth 2 -Compress
"""

    # Exit codes used by the scripts for "not found"
    NOT_FOUND = (2, 3)

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def _run_script(self, script: str) -> dict[str, Any] | None:
        """Run a script and parse its JSON output; ``None`` when not found.

        Raises:
            ToolFailureError: If PowerShell fails or emits invalid JSON
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.powershell_executable,
                "-NoProfile",
                "-NonInteractive",
                "-Command",
                script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolFailureError("powershell", str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.settings.command_timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ToolFailureError("powershell", "IIS query timed out")

        if process.returncode in self.NOT_FOUND:
            return None
        if process.returncode != 0:
            error = (stderr or stdout or b"").decode(errors="replace").strip()
            raise ToolFailureError("powershell", error or "IIS query failed", process.returncode)

        try:
            return json.loads(stdout.decode(errors="replace"))
        except json.JSONDecodeError as e:
            raise ToolFailureError("powershell", f"Invalid JSON from IIS query: {e}") from e

    async def get_site(self, name: str) -> SiteInfo | None:
        data = await self._run_script(self.SITE_SCRIPT.format(name=_ps_literal(name)))
        if data is None:
            return None
        if not data.get("PhysicalPath"):
            raise SiteNotFoundError(name, "Physical path not available")

        return SiteInfo(
            name=data.get("Name") or name,
            physical_path=os.path.expandvars(data["PhysicalPath"]),
            id=data.get("Id"),
            state=data.get("State"),
            applications=list(data.get("Applications") or []),
            bindings=list(data.get("Bindings") or []),
        )

    async def get_application(self, site_name: str, path: str) -> ApplicationInfo | None:
        normalized = normalize_application_path(path)
        data = await self._run_script(
            self.APPLICATION_SCRIPT.format(
                name=_ps_literal(site_name),
                path=_ps_literal(normalized),
            )
        )
        if data is None:
            return None

        physical_path = data.get("PhysicalPath") or ""
        return ApplicationInfo(
            site_name=site_name,
            path=data.get("Path") or normalized,
            physical_path=str(PureWindowsPath(os.path.expandvars(physical_path))),
            application_pool=data.get("ApplicationPool"),
        )


def get_site_resolver(settings: Settings | None = None) -> SiteResolver:
    """Build the resolver selected by ``iis_resolver``."""
    settings = settings or get_settings()
    if settings.iis_resolver == "static":
        return StaticSiteResolver(settings.iis_sites)
    return PowerShellSiteResolver(settings)
