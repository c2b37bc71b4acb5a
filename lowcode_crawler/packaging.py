"""Packaging pipeline: records → file tree → ZIP archive.

Images and files are downloaded concurrently, texts are written directly and
an optional data file holds the records as JSON. Every output path comes from
a template; the temporary tree is removed whether packaging succeeds or not.
"""

from __future__ import annotations

import asyncio
import datetime
import json
import logging
import pathlib
import posixpath
import re
import shutil
import tempfile
import time
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx

from .config import PackagingConfig
from .errors import PackagingError
from .metrics import DOWNLOAD_COUNT
from .models import PackageConfig
from .utils import (
    build_download_headers,
    download_to_file,
    is_absolute_http_url,
    is_within,
    sanitize_segment,
    url_path_extension,
)

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg", "bmp", "ico"})

DEFAULT_IMAGE_TEMPLATE = "images/{index}_{fieldName}.{ext}"
DEFAULT_FILE_TEMPLATE = "files/{index}_{fieldName}.{ext}"
DEFAULT_TEXT_TEMPLATE = "texts/{index}_{fieldName}.txt"

DEFAULT_IMAGE_EXT = "jpg"
DEFAULT_FILE_EXT = "bin"
DEFAULT_TEXT_EXT = "txt"
DEFAULT_DATA_EXT = "json"

DOWNLOAD_CONCURRENCY = 8


class FieldKind(str, Enum):
    IMAGE = "image"
    FILE = "file"
    TEXT = "text"


def classify_value(value: Any) -> Optional[FieldKind]:
    """Kind of a single record value; ``None`` for empty or non-string values."""
    if not isinstance(value, str) or not value.strip():
        return None
    if is_absolute_http_url(value):
        if url_path_extension(value) in IMAGE_EXTENSIONS:
            return FieldKind.IMAGE
        return FieldKind.FILE
    return FieldKind.TEXT


def detect_field_kinds(
    records: Sequence[Mapping[str, Any]], sample_size: int = 5
) -> Dict[str, FieldKind]:
    """Infer each field's kind from the first ``sample_size`` records.

    The first non-empty sampled value of a field decides its kind. Fields
    that are empty in every sampled record are left out.
    """
    kinds: Dict[str, FieldKind] = {}
    for record in records[:sample_size]:
        for name, value in record.items():
            if name in kinds:
                continue
            kind = classify_value(value)
            if kind is not None:
                kinds[name] = kind
    return kinds


@dataclass
class PackagePlan:
    image_fields: List[str] = field(default_factory=list)
    file_fields: List[str] = field(default_factory=list)
    text_fields: List[str] = field(default_factory=list)

    images_template: str = DEFAULT_IMAGE_TEMPLATE
    files_template: str = DEFAULT_FILE_TEMPLATE
    texts_template: str = DEFAULT_TEXT_TEMPLATE
    data_template: Optional[str] = None

    download_images: bool = True
    download_files: bool = True
    write_texts: bool = True

    max_file_size: int = 10 * 1024 * 1024
    timeout_ms: int = 30000

    @classmethod
    def from_config(
        cls,
        config: PackageConfig,
        records: Sequence[Mapping[str, Any]],
        defaults: Optional[PackagingConfig] = None,
    ) -> "PackagePlan":
        defaults = defaults or PackagingConfig()
        structure, download = config.structure, config.download

        if config.field_mapping is not None:
            mapping = config.field_mapping
            image_fields = list(mapping.image_fields)
            file_fields = list(mapping.file_fields)
            text_fields = list(mapping.text_fields)
        else:
            kinds = detect_field_kinds(records, defaults.sample_size)
            image_fields = [n for n, k in kinds.items() if k == FieldKind.IMAGE]
            file_fields = [n for n, k in kinds.items() if k == FieldKind.FILE]
            text_fields = [n for n, k in kinds.items() if k == FieldKind.TEXT]

        data_template = structure.data if structure.data and structure.data.strip() else None

        return cls(
            image_fields=image_fields,
            file_fields=file_fields,
            text_fields=text_fields,
            images_template=structure.images or DEFAULT_IMAGE_TEMPLATE,
            files_template=structure.files or DEFAULT_FILE_TEMPLATE,
            texts_template=structure.texts or DEFAULT_TEXT_TEMPLATE,
            data_template=data_template,
            download_images=download.images,
            download_files=download.files,
            write_texts=download.texts,
            max_file_size=download.max_file_size or defaults.max_file_size,
            timeout_ms=download.timeout or defaults.download_timeout_ms,
        )


# ───────── path templates ─────────

_TEMPLATE_TOKEN = re.compile(r"\{([^{}]+)\}")


def render_path_template(
    template: str,
    record: Mapping[str, Any],
    index: int,
    *,
    field_name: Optional[str] = None,
    timestamp: Optional[str] = None,
    date: Optional[str] = None,
) -> str:
    """Substitute template tokens for one record.

    ``{index}`` is 1-based. ``{fieldName}`` is the field being written and
    ``{<field>}`` is that record value, sanitized for use in a path.
    ``{ext}`` is left for ``apply_extension``. Substitution is a single pass,
    so a value containing another field's ``{token}`` is written literally.
    """
    stamp = timestamp or str(int(time.time() * 1000))
    day = date or datetime.date.today().isoformat()

    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key == "index":
            return str(index + 1)
        if key == "timestamp":
            return stamp
        if key == "date":
            return day
        if key == "fieldName" and field_name is not None:
            return field_name
        if key in record:
            value = record[key]
            return sanitize_segment("" if value is None else value)
        return match.group(0)

    return _TEMPLATE_TOKEN.sub(substitute, template)


def apply_extension(path: str, ext: str) -> str:
    """Fill ``{ext}``, or append ``.ext`` when the path has no extension.

    An extension already present in the template is kept as written.
    """
    if "{ext}" in path:
        return path.replace("{ext}", ext)
    if not posixpath.splitext(path)[1]:
        return f"{path}.{ext}"
    return path


def source_extension(url: str, default: str) -> str:
    return url_path_extension(url) or default


# ───────── pipeline ─────────

@dataclass
class _Download:
    url: str
    dest: pathlib.Path
    kind: FieldKind


class _Packager:
    def __init__(self, records: Sequence[Mapping[str, Any]], plan: PackagePlan, root: pathlib.Path,
                 logger: logging.Logger):
        self.records = records
        self.plan = plan
        self.root = root
        self.logger = logger
        self.timestamp = str(int(time.time() * 1000))
        self.date = datetime.date.today().isoformat()
        self.downloads: List[_Download] = []
        self.texts_written = 0
        self.skipped_paths = 0

    def _target(self, relative: str) -> Optional[pathlib.Path]:
        target = self.root / relative
        if not is_within(self.root, target):
            self.logger.warning(f"⚠️ Skipping path outside the package: {relative}")
            self.skipped_paths += 1
            return None
        return target

    def _render(self, template: str, record: Mapping[str, Any], index: int,
                field_name: Optional[str] = None) -> str:
        return render_path_template(
            template, record, index, field_name=field_name, timestamp=self.timestamp, date=self.date
        )

    def collect(self) -> None:
        plan = self.plan
        for index, record in enumerate(self.records):
            if plan.download_images:
                self._collect_urls(record, index, plan.image_fields, plan.images_template,
                                   DEFAULT_IMAGE_EXT, FieldKind.IMAGE)
            if plan.download_files:
                self._collect_urls(record, index, plan.file_fields, plan.files_template,
                                   DEFAULT_FILE_EXT, FieldKind.FILE)
            if plan.write_texts:
                self._write_texts(record, index)

    def _collect_urls(self, record: Mapping[str, Any], index: int, fields: Iterable[str],
                      template: str, default_ext: str, kind: FieldKind) -> None:
        for name in fields:
            url = record.get(name)
            if not isinstance(url, str) or not is_absolute_http_url(url):
                continue
            relative = apply_extension(self._render(template, record, index, name),
                                       source_extension(url, default_ext))
            dest = self._target(relative)
            if dest is not None:
                self.downloads.append(_Download(url=url, dest=dest, kind=kind))

    def _write_texts(self, record: Mapping[str, Any], index: int) -> None:
        for name in self.plan.text_fields:
            value = record.get(name)
            if not isinstance(value, str) or not value.strip():
                continue
            relative = apply_extension(self._render(self.plan.texts_template, record, index, name),
                                       DEFAULT_TEXT_EXT)
            dest = self._target(relative)
            if dest is None:
                continue
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(value, encoding="utf-8")
            self.texts_written += 1

    async def fetch_all(self, client: httpx.AsyncClient) -> int:
        if not self.downloads:
            return 0
        semaphore = asyncio.Semaphore(DOWNLOAD_CONCURRENCY)
        headers = build_download_headers({})
        timeout = self.plan.timeout_ms / 1000

        async def fetch(item: _Download) -> bool:
            async with semaphore:
                ok, reason = await download_to_file(
                    client, item.url, item.dest,
                    max_bytes=self.plan.max_file_size, timeout=timeout, headers=headers,
                )
            DOWNLOAD_COUNT.labels(kind=item.kind.value, outcome="ok" if ok else "failed").inc()
            if not ok:
                self.logger.warning(f"Download failed ({reason}): {item.url}")
            return ok

        results = await asyncio.gather(*(fetch(item) for item in self.downloads))
        return sum(1 for ok in results if ok)

    def write_data(self) -> None:
        template = self.plan.data_template
        if not template:
            return
        if "{index}" in template:
            for index, record in enumerate(self.records):
                self._dump(self._render(template, record, index), dict(record))
        else:
            first = self.records[0] if self.records else {}
            self._dump(self._render(template, first, 0), [dict(r) for r in self.records])

    def _dump(self, relative: str, payload: Any) -> None:
        dest = self._target(apply_extension(relative, DEFAULT_DATA_EXT))
        if dest is None:
            return
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def write_zip(source_dir: pathlib.Path, output_path: pathlib.Path) -> int:
    """Zip a directory tree at maximum deflate compression; returns entry count."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for path in sorted(source_dir.rglob("*")):
            if path.is_file():
                zf.write(path, path.relative_to(source_dir).as_posix())
                count += 1
    return count


async def package(
    records: Sequence[Mapping[str, Any]],
    plan: PackagePlan,
    output_path: str | pathlib.Path,
    *,
    client: Optional[httpx.AsyncClient] = None,
    temp_root: Optional[str | pathlib.Path] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """Build the archive at ``output_path`` and return its path.

    Failed downloads are logged and skipped; anything else raises
    ``PackagingError``.
    """
    log = logger or logging.getLogger("crawler.packaging")
    output = pathlib.Path(output_path)
    if temp_root is not None:
        pathlib.Path(temp_root).mkdir(parents=True, exist_ok=True)
    root = pathlib.Path(tempfile.mkdtemp(prefix="package_", dir=temp_root))

    log.info(
        f"📦 Packaging {len(records)} records (images: {plan.image_fields}, "
        f"files: {plan.file_fields}, texts: {plan.text_fields})"
    )

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(follow_redirects=True)
    try:
        packager = _Packager(records, plan, root, log)
        packager.collect()
        downloaded = await packager.fetch_all(client)
        packager.write_data()
        entries = write_zip(root, output)
        log.info(
            f"✅ Package ready: {output} ({entries} entries, {downloaded}/{len(packager.downloads)} "
            f"downloads, {packager.texts_written} texts, {packager.skipped_paths} skipped paths)"
        )
        return str(output)
    except PackagingError:
        raise
    except Exception as e:
        raise PackagingError(f"Packaging failed: {e}", cause=e) from e
    finally:
        if own_client:
            await client.aclose()
        shutil.rmtree(root, ignore_errors=True)
