"""
Resolves image references found in chapter HTML against the alias table built
during extraction. Used by renderers and by the CLI summary to spot images a
book references but does not ship.
"""

import posixpath
from typing import Dict, List, Mapping, Optional
from urllib.parse import unquote, urlsplit

from bs4 import BeautifulSoup

from epub_extract import ExtractionResult, ImageRecord

IMAGE_TAGS = ('img', 'image')
SVG_HREF_ATTRS = ('href', 'xlink:href')


def _local_name(name: str) -> str:
    # html.parser keeps namespace prefixes, e.g. "svg:image"
    return name.rsplit(':', 1)[-1]


def find_image_references(html: str) -> List[str]:
    """Return img src values and SVG <image> hrefs, in document order."""
    soup = BeautifulSoup(html, 'html.parser')
    refs = []
    for tag in soup.find_all(lambda t: _local_name(t.name) in IMAGE_TAGS):
        if _local_name(tag.name) == 'img':
            src = tag.get('src', '')
        else:
            src = next((tag[a] for a in SVG_HREF_ATTRS if tag.get(a)), '')
        src = src.strip()
        if src:
            refs.append(src)
    return refs


def _candidates(reference: str, chapter_path: str) -> List[str]:
    parts = urlsplit(reference)
    path = parts.path
    if not path:
        return []

    decoded = unquote(path)
    candidates = [reference, path, decoded]

    if chapter_path:
        base_dir = posixpath.dirname(chapter_path.replace('\\', '/'))
        joined = posixpath.normpath(posixpath.join(base_dir, decoded))
        candidates.append(joined.lstrip('/'))

    candidates.append(posixpath.basename(decoded))
    return [c for c in dict.fromkeys(candidates) if c]


def resolve_image(
    aliases: Mapping[str, ImageRecord],
    reference: str,
    chapter_path: str = '',
) -> Optional[ImageRecord]:
    """
    Look up the record an HTML reference points to.

    Tries the reference as written, then URL-decoded, then resolved against
    the chapter's directory, then the bare file name.
    """
    if not reference:
        return None
    scheme = urlsplit(reference).scheme.lower()
    if scheme in ('data', 'http', 'https'):
        return None

    for candidate in _candidates(reference, chapter_path):
        record = aliases.get(candidate)
        if record is not None:
            return record
    return None


def find_unresolved_images(result: ExtractionResult) -> Dict[str, List[str]]:
    """Map chapter path -> references that resolve to no extracted image."""
    unresolved = {}
    for chapter_path, html in result.chapters.items():
        missing = [
            ref for ref in find_image_references(html)
            if not urlsplit(ref).scheme
            and resolve_image(result.images, ref, chapter_path) is None
        ]
        if missing:
            unresolved[chapter_path] = missing
    return unresolved
