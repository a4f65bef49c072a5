"""
Extracts the raw contents of an EPUB archive (manifest text, chapter documents
and image resources) so a rendering layer can build the book model from them.
"""

import asyncio
import io
import json
import logging
import os
import re
import zipfile
import zlib
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"

CHAPTER_RE = re.compile(r"\.(html|xhtml)$", re.IGNORECASE)
IMAGE_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp|svg|bmp)$", re.IGNORECASE)
FULL_PATH_RE = re.compile(r"full-path\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)

IMAGE_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
}
DEFAULT_IMAGE_MIME = "image/jpeg"

# Directory conventions used by EPUB producers; every image is also
# registered under "<prefix><file name>".
DEFAULT_ALIAS_PREFIXES = (
    "Images/",
    "OEBPS/Images/",
    "Text/../Images/",
    "images/",
    "OEBPS/images/",
)

# open archive, manifest, chapters, images, validate, complete
TOTAL_STEPS = 6

CONFIG_FILENAME = "extract_config.json"


# --- Errors ---

class ExtractionError(Exception):
    """Base class for every failure that aborts an extraction run."""
    stage: Optional[str] = None  # pipeline stage that raised, set by extract_epub

    def describe(self) -> str:
        if self.stage:
            return f"{self.stage} failed: {self}"
        return str(self)


class ArchiveFormatError(ExtractionError):
    pass


class MissingContainerError(ExtractionError):
    def __init__(self):
        super().__init__(f"{CONTAINER_PATH} not found in archive")


class MissingManifestPathError(ExtractionError):
    def __init__(self):
        super().__init__(f"No full-path attribute found in {CONTAINER_PATH}")


class MissingManifestFileError(ExtractionError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Manifest file not found: {path}")


class NoChapterContentError(ExtractionError):
    def __init__(self):
        super().__init__("No readable HTML/XHTML content files found")


class ValidationError(ExtractionError):
    pass


class EntryReadError(ExtractionError):
    """A single archive entry could not be decompressed or decoded."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not read {path}: {reason}")


# --- Configuration ---

@dataclass
class ExtractionConfig:
    """Tunable knobs of the extraction pipeline."""
    batch_size: int = 5              # concurrent entry reads per batch
    min_manifest_length: int = 100   # shorter manifests are treated as truncated
    required_markers: Tuple[str, ...] = ("manifest", "spine")
    image_alias_prefixes: Tuple[str, ...] = DEFAULT_ALIAS_PREFIXES

    def __post_init__(self):
        for name in ("batch_size", "min_manifest_length"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{name} must be an integer, got {value!r}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.min_manifest_length < 0:
            raise ValueError(f"min_manifest_length must not be negative, got {self.min_manifest_length}")

        # a bare string would otherwise be split into single characters
        for name in ("required_markers", "image_alias_prefixes"):
            value = getattr(self, name)
            if isinstance(value, str) or not all(isinstance(v, str) for v in value):
                raise TypeError(f"{name} must be a list of strings, got {value!r}")
            setattr(self, name, tuple(value))


def load_config(path: Optional[str] = None) -> ExtractionConfig:
    """
    Load config from a JSON file, then apply environment overrides.

    The file is `path`, else $EPUBRAW_CONFIG, else extract_config.json next to
    this module. A missing file means defaults; a broken one is logged and
    ignored.
    """
    config_path = (
        path
        or os.environ.get("EPUBRAW_CONFIG")
        or os.path.join(os.path.dirname(os.path.abspath(__file__)), CONFIG_FILENAME)
    )

    data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level JSON value must be an object")
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable config %s: %s", config_path, e)
            data = {}

    defaults = ExtractionConfig()
    kwargs = {
        "batch_size": data.get("batch_size", defaults.batch_size),
        "min_manifest_length": data.get("min_manifest_length", defaults.min_manifest_length),
        "required_markers": data.get("required_markers", defaults.required_markers),
        "image_alias_prefixes": data.get("image_alias_prefixes", defaults.image_alias_prefixes),
    }

    try:
        config = ExtractionConfig(**kwargs)
    except (TypeError, ValueError) as e:
        logger.warning("Ignoring invalid config %s: %s", config_path, e)
        config = ExtractionConfig()

    env_batch = os.environ.get("EPUBRAW_BATCH_SIZE")
    if env_batch:
        try:
            batch_size = int(env_batch)
            if batch_size < 1:
                raise ValueError("must be at least 1")
            config.batch_size = batch_size
        except ValueError as e:
            logger.warning("Ignoring EPUBRAW_BATCH_SIZE=%r: %s", env_batch, e)

    return config


# --- Data structures ---

@dataclass(frozen=True)
class ArchiveEntry:
    path: str          # archive-relative, as stored in the zip
    is_directory: bool


@dataclass(frozen=True)
class ManifestLocation:
    manifest_path: str
    manifest_text: str
    container_path: str = CONTAINER_PATH


@dataclass(frozen=True, eq=False)
class ImageRecord:
    """
    Raw bytes of one image entry. A single instance is shared by every alias
    that points at the same source file, so identity counts source images.
    """
    data: bytes
    mime_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {"bytes": self.data, "mimeType": self.mime_type}


@dataclass(frozen=True)
class ExtractionResult:
    """The sole artifact handed to the caller. Holds no reference to the archive."""
    manifest_path: str
    manifest_text: str
    chapters: Mapping[str, str]          # archive path -> chapter text
    images: Mapping[str, ImageRecord]    # alias -> shared record

    @property
    def image_count(self) -> int:
        return len({id(record) for record in self.images.values()})

    def to_payload(self) -> Dict[str, Any]:
        return {
            "manifestPath": self.manifest_path,
            "manifestText": self.manifest_text,
            "chapterSet": dict(self.chapters),
            "imageAliasTable": {alias: record.to_dict() for alias, record in self.images.items()},
        }


# --- Archive access ---

class ArchiveIndex:
    """
    Read-only view over an in-memory zip archive.
    Entry reads run in a worker thread since they may need decompression.
    """

    def __init__(self, data: bytes):
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, ValueError) as e:
            # ValueError covers entry names flagged UTF-8 that do not decode
            raise ArchiveFormatError(f"Not a valid EPUB/ZIP archive: {e}") from e
        self._entries = [
            ArchiveEntry(path=info.filename, is_directory=info.is_dir())
            for info in self._zip.infolist()
        ]
        self._names = {entry.path for entry in self._entries}

    def entries(self) -> List[ArchiveEntry]:
        return list(self._entries)

    def has(self, path: str) -> bool:
        return path in self._names

    def _read(self, path: str) -> bytes:
        try:
            return self._zip.read(path)
        except (zipfile.BadZipFile, zlib.error, NotImplementedError,
                RuntimeError, EOFError, OSError, KeyError) as e:
            raise EntryReadError(path, str(e) or type(e).__name__) from e

    async def read_bytes(self, path: str) -> bytes:
        return await asyncio.to_thread(self._read, path)

    async def read_text(self, path: str) -> str:
        raw = await self.read_bytes(path)
        return raw.decode("utf-8-sig", errors="replace")

    def close(self):
        self._zip.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


# --- Progress ---

ProgressCallback = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class ProgressContext:
    """
    Step counter threaded through the pipeline stages. `advance` returns a new
    context rather than mutating shared state.
    """
    total_steps: int = TOTAL_STEPS
    step: int = 0
    callback: Optional[ProgressCallback] = field(default=None, compare=False)

    @property
    def percent(self) -> int:
        if self.total_steps <= 0:
            return 0
        return min(100, round(self.step / self.total_steps * 100))

    def notify(self, message: str) -> None:
        if self.callback is not None:
            self.callback(progress_message(message, self.percent))

    def advance(self, message: str) -> "ProgressContext":
        ctx = replace(self, step=min(self.step + 1, self.total_steps))
        logger.info("%s (%d%%)", message, ctx.percent)
        ctx.notify(message)
        return ctx


def progress_message(message: str, percent: int) -> Dict[str, Any]:
    return {"status": "progress", "message": message, "progress": percent}


def success_message(result: ExtractionResult) -> Dict[str, Any]:
    return {"status": "success", "payload": result.to_payload()}


def error_message(message: str) -> Dict[str, Any]:
    return {"status": "error", "message": message}


# --- Utilities ---

def get_mime_type(path: str) -> str:
    """Media type from the file extension only; content bytes are never sniffed."""
    extension = path.lower().rsplit(".", 1)[-1] if "." in path else ""
    return IMAGE_MIME_TYPES.get(extension, DEFAULT_IMAGE_MIME)


def image_aliases(path: str, prefixes=DEFAULT_ALIAS_PREFIXES) -> List[str]:
    """
    Every string under which downstream HTML may plausibly reference the
    image stored at `path`, in registration order.
    """
    aliases = [path]
    normalized = path.replace("\\", "/")
    aliases.append(normalized)

    file_name = normalized.rsplit("/", 1)[-1]
    if file_name:
        aliases.append(file_name)
        aliases.extend(f"{prefix}{file_name}" for prefix in prefixes)

    # keep first occurrence only
    return list(dict.fromkeys(aliases))


def _batches(items: List[Any], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


# --- Pipeline stages ---

async def resolve_manifest(archive: ArchiveIndex) -> ManifestLocation:
    """
    Locate the package document through the container descriptor.
    Only the full-path attribute is needed, so no XML parse happens here.
    """
    if not archive.has(CONTAINER_PATH):
        raise MissingContainerError()

    container_xml = await archive.read_text(CONTAINER_PATH)
    match = FULL_PATH_RE.search(container_xml)
    if not match or not match.group(1):
        raise MissingManifestPathError()

    manifest_path = match.group(1)
    if not archive.has(manifest_path):
        raise MissingManifestFileError(manifest_path)

    manifest_text = await archive.read_text(manifest_path)
    return ManifestLocation(manifest_path=manifest_path, manifest_text=manifest_text)


async def extract_chapters(
    archive: ArchiveIndex,
    config: Optional[ExtractionConfig] = None,
    progress: Optional[ProgressContext] = None,
) -> Dict[str, str]:
    """
    Read every .html/.xhtml entry in bounded concurrent batches.
    Entries that fail to read are logged and left out of the result.
    """
    config = config or ExtractionConfig()
    paths = [e.path for e in archive.entries()
             if not e.is_directory and CHAPTER_RE.search(e.path)]

    async def read_one(path: str) -> Tuple[str, Optional[str]]:
        try:
            return path, await archive.read_text(path)
        except EntryReadError as e:
            logger.warning("Skipping content file %s: %s", path, e.reason)
            return path, None

    chapters: Dict[str, str] = {}
    done = 0
    for batch in _batches(paths, config.batch_size):
        results = await asyncio.gather(*(read_one(p) for p in batch))
        for path, content in results:
            if content is not None:
                chapters[path] = content
        done += len(batch)
        if progress is not None:
            progress.notify(f"Extracting content files... {done}/{len(paths)}")
        await asyncio.sleep(0)

    if not chapters:
        raise NoChapterContentError()
    return chapters


async def extract_images(
    archive: ArchiveIndex,
    config: Optional[ExtractionConfig] = None,
    progress: Optional[ProgressContext] = None,
) -> Dict[str, ImageRecord]:
    """
    Read every image entry as raw bytes and register each one under all of
    its aliases. Later entries win when two files share an alias.
    """
    config = config or ExtractionConfig()
    paths = [e.path for e in archive.entries()
             if not e.is_directory and IMAGE_RE.search(e.path)]
    if not paths:
        return {}

    logger.debug("Found image files: %s", paths)

    async def read_one(path: str) -> Tuple[str, Optional[bytes]]:
        try:
            return path, await archive.read_bytes(path)
        except EntryReadError as e:
            logger.warning("Skipping image %s: %s", path, e.reason)
            return path, None

    images: Dict[str, ImageRecord] = {}
    done = 0
    for batch in _batches(paths, config.batch_size):
        results = await asyncio.gather(*(read_one(p) for p in batch))
        for path, data in results:
            if data is None:
                continue
            record = ImageRecord(data=data, mime_type=get_mime_type(path))
            for alias in image_aliases(path, config.image_alias_prefixes):
                images[alias] = record
        done += len(batch)
        if progress is not None:
            progress.notify(f"Processing images... {done}/{len(paths)}")
        await asyncio.sleep(0)

    logger.info("Image data ready: %d path patterns", len(images))
    return images


def validate_extraction(
    manifest_text: Optional[str],
    chapters: Mapping[str, str],
    images: Mapping[str, ImageRecord],
    config: Optional[ExtractionConfig] = None,
) -> None:
    """Minimal structural sanity checks before a result is accepted."""
    config = config or ExtractionConfig()

    if not manifest_text or len(manifest_text) < config.min_manifest_length:
        raise ValidationError("Manifest file is empty or too small")

    for marker in config.required_markers:
        if f"<{marker}" not in manifest_text:
            raise ValidationError(f"Required element <{marker}> not found in manifest")

    if not chapters:
        raise ValidationError("No content files were extracted")

    distinct_images = len({id(record) for record in images.values()})
    logger.info(
        "Validation passed: %d content files, %d images (%d aliases)",
        len(chapters), distinct_images, len(images),
    )


# --- Orchestration ---

async def extract_epub(
    data: bytes,
    on_progress: Optional[ProgressCallback] = None,
    config: Optional[ExtractionConfig] = None,
) -> ExtractionResult:
    """
    Run every stage in order and return the packaged result.
    The first fatal error aborts the run and is tagged with the failing stage.
    """
    config = config or ExtractionConfig()
    progress = ProgressContext(callback=on_progress)
    current_stage = "Archive loading"

    try:
        progress = progress.advance("Analyzing ZIP archive...")
        with ArchiveIndex(data) as archive:
            current_stage = "Manifest resolution"
            progress = progress.advance("Extracting metadata...")
            manifest = await resolve_manifest(archive)

            current_stage = "Content extraction"
            progress = progress.advance("Extracting chapter content...")
            chapters = await extract_chapters(archive, config, progress)

            current_stage = "Image processing"
            progress = progress.advance("Processing image resources...")
            images = await extract_images(archive, config, progress)

        current_stage = "Validation"
        progress = progress.advance("Validating extracted data...")
        validate_extraction(manifest.manifest_text, chapters, images, config)
    except ExtractionError as e:
        if e.stage is None:
            e.stage = current_stage
        raise

    result = ExtractionResult(
        manifest_path=manifest.manifest_path,
        manifest_text=manifest.manifest_text,
        chapters=MappingProxyType(dict(chapters)),
        images=MappingProxyType(dict(images)),
    )
    progress.notify(
        f"Validation complete: {len(chapters)} content files, {result.image_count} images"
    )
    progress.advance("Analysis complete!")
    return result


async def run_extraction_request(
    data: bytes,
    send: ProgressCallback,
    config: Optional[ExtractionConfig] = None,
) -> Dict[str, Any]:
    """
    Message-based boundary: progress messages go to `send` as they happen,
    followed by exactly one terminal success or error message, which is also
    returned.
    """
    try:
        result = await extract_epub(data, on_progress=send, config=config)
        message = success_message(result)
    except ExtractionError as e:
        logger.error("Extraction failed: %s", e.describe())
        message = error_message(e.describe())
    except Exception as e:
        logger.exception("Unexpected error during extraction")
        message = error_message(f"Unexpected error during extraction: {e}")
    send(message)
    return message


# --- CLI ---

if __name__ == "__main__":

    import sys
    if len(sys.argv) < 2:
        print("Usage: python epub_extract.py <file.epub>")
        sys.exit(1)

    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    epub_file = sys.argv[1]
    if not os.path.exists(epub_file):
        print(f"File not found: {epub_file}")
        sys.exit(1)

    with open(epub_file, "rb") as f:
        epub_bytes = f.read()

    def print_progress(message):
        if message["status"] == "progress":
            print(f"[{message['progress']:3d}%] {message['message']}")

    try:
        extraction = asyncio.run(
            extract_epub(epub_bytes, on_progress=print_progress, config=load_config())
        )
    except ExtractionError as e:
        print(f"Error: {e.describe()}")
        sys.exit(1)

    from image_lookup import find_unresolved_images
    unresolved = find_unresolved_images(extraction)

    print("\n--- Summary ---")
    print(f"Manifest: {extraction.manifest_path}")
    print(f"Content files: {len(extraction.chapters)}")
    print(f"Images: {extraction.image_count} ({len(extraction.images)} aliases)")
    print(f"Unresolved image references: {sum(len(v) for v in unresolved.values())}")
    for chapter_path, refs in sorted(unresolved.items()):
        print(f"  {chapter_path}: {', '.join(refs)}")
