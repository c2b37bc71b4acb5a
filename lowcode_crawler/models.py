"""Job definition models.

These mirror the task configuration produced by the visual task builder.
Field names are snake_case; the camelCase names the builder sends are
accepted as aliases.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FieldType(str, Enum):
    """What kind of value a field resolves to."""
    TEXT = "text"
    LINK = "link"
    IMAGE = "image"


class ContentFormat(str, Enum):
    """Representation of a text field."""
    TEXT = "text"
    HTML = "html"
    MARKDOWN = "markdown"
    SMART = "smart"  # currently handled as markdown


class OutputFormat(str, Enum):
    JSON = "json"
    PACKAGED = "packaged"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class FieldSpec(_Model):
    """One named field of a job."""

    name: str = Field(min_length=1)
    selector: str = Field(min_length=1)
    type: FieldType = FieldType.TEXT
    content_format: ContentFormat = Field(ContentFormat.TEXT, alias="contentFormat")
    # Name of another field whose value is the detail-page URL to open first.
    parent_link: Optional[str] = Field(None, alias="parentLink")


class Viewport(_Model):
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class StructureConfig(_Model):
    """Path templates inside the archive."""
    images: Optional[str] = None
    files: Optional[str] = None
    texts: Optional[str] = None
    data: Optional[str] = None


class DownloadConfig(_Model):
    images: bool = True
    files: bool = True
    texts: bool = True
    max_file_size: Optional[int] = Field(None, alias="maxFileSize", gt=0)
    timeout: Optional[int] = Field(None, gt=0)  # milliseconds


class FieldMapping(_Model):
    """Explicit field kinds; skips auto-detection when supplied."""
    image_fields: List[str] = Field(default_factory=list, alias="imageFields")
    file_fields: List[str] = Field(default_factory=list, alias="fileFields")
    text_fields: List[str] = Field(default_factory=list, alias="textFields")


class PackageConfig(_Model):
    structure: StructureConfig = Field(default_factory=StructureConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    field_mapping: Optional[FieldMapping] = Field(None, alias="fieldMapping")


class JobDefinition(_Model):
    """Immutable description of one crawl job."""

    urls: List[str] = Field(default_factory=list)
    base_selector: Optional[str] = Field(None, alias="baseSelector")
    selectors: List[FieldSpec] = Field(default_factory=list)
    # Run region detection on each target; the top candidate stands in for a
    # missing base selector.
    detect_regions: bool = Field(False, alias="detectRegions")

    max_items: Optional[int] = Field(None, alias="maxItems", gt=0)
    max_requests_per_crawl: Optional[int] = Field(None, alias="maxRequestsPerCrawl", gt=0)
    # Accepted for compatibility; target pages always run sequentially.
    max_concurrency: Optional[int] = Field(None, alias="maxConcurrency", gt=0)

    headless: Optional[bool] = None
    viewport: Optional[Viewport] = None
    user_agent: Optional[str] = Field(None, alias="userAgent")
    proxy_url: Optional[str] = Field(None, alias="proxyUrl")

    wait_for_selector: Optional[str] = Field(None, alias="waitForSelector")
    wait_for_timeout: Optional[int] = Field(None, alias="waitForTimeout", gt=0)
    navigation_timeout: Optional[int] = Field(None, alias="navigationTimeout", gt=0)
    delay_ms: Optional[int] = Field(None, alias="delayMs", ge=0)

    scroll_enabled: bool = Field(False, alias="scrollEnabled")
    scroll_distance: Optional[int] = Field(None, alias="scrollDistance", gt=0)
    scroll_delay: Optional[int] = Field(None, alias="scrollDelay", ge=0)
    max_scroll_distance: Optional[int] = Field(None, alias="maxScrollDistance", gt=0)

    output_format: OutputFormat = Field(OutputFormat.JSON, alias="outputFormat")
    package_config: Optional[PackageConfig] = Field(None, alias="packageConfig")

    def configuration_errors(self) -> List[str]:
        """Return human-readable problems; empty when the job can run."""
        errors: List[str] = []
        if not self.urls:
            errors.append("urls: at least one target URL is required")
        if not self.selectors:
            errors.append("selectors: at least one field is required")

        names = [spec.name for spec in self.selectors]
        seen = set()
        for name in names:
            if name in seen:
                errors.append(f"selectors: duplicate field name '{name}'")
            seen.add(name)

        by_name = {spec.name: spec for spec in self.selectors}
        for spec in self.selectors:
            if spec.parent_link is None:
                continue
            parent = by_name.get(spec.parent_link)
            if parent is None:
                errors.append(f"{spec.name}: parent link field '{spec.parent_link}' does not exist")
            elif parent.name == spec.name:
                errors.append(f"{spec.name}: a field cannot be its own parent link")
            elif parent.parent_link is not None:
                errors.append(
                    f"{spec.name}: parent link field '{parent.name}' is itself on a detail page "
                    "(only one detail hop is supported)"
                )
        return errors

    def page_fields(self) -> List[FieldSpec]:
        """Fields resolved on the listing page."""
        return [spec for spec in self.selectors if spec.parent_link is None]

    def detail_fields(self) -> Dict[str, List[FieldSpec]]:
        """Detail-page fields grouped by parent link field, in definition order."""
        grouped: Dict[str, List[FieldSpec]] = {}
        for spec in self.selectors:
            if spec.parent_link is not None:
                grouped.setdefault(spec.parent_link, []).append(spec)
        return grouped


class Candidate(BaseModel):
    """A proposed list-item region."""

    selector: str
    match_count: int
    score: float
    preview: bytes = Field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selector": self.selector,
            "match_count": self.match_count,
            "score": round(self.score, 2),
            "preview": base64.b64encode(self.preview).decode("ascii"),
        }


class ProgressEvent(BaseModel):
    """Status update for one job; terminal success carries the result paths."""

    job_id: str
    status: str
    progress: float = Field(ge=0, le=100)
    message: str = ""
    result_record_count: Optional[int] = None
    result_path: Optional[str] = None
    screenshot_path: Optional[str] = None
    archive_path: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
