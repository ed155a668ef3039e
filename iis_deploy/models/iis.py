"""IIS site and target resolution models."""

from pydantic import BaseModel, ConfigDict, Field


class SiteInfo(BaseModel):
    """An IIS site as reported by the resolver."""

    model_config = ConfigDict(frozen=True)

    name: str
    physical_path: str
    id: int | None = None
    state: str | None = None
    applications: list[str] = Field(default_factory=list)
    bindings: list[str] = Field(default_factory=list)


class ApplicationInfo(BaseModel):
    """A nested IIS application under a site."""

    model_config = ConfigDict(frozen=True)

    site_name: str
    path: str
    physical_path: str
    application_pool: str | None = None


class TargetResolution(BaseModel):
    """The computed deploy destination for a site/application pair."""

    model_config = ConfigDict(frozen=True)

    site_name: str
    application_path: str | None = None
    site_physical_path: str
    final_path: str
    is_iis_application: bool = False
    warnings: list[str] = Field(default_factory=list)
