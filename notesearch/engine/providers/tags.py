"""Tag index built from inline hashtags and YAML front matter."""

import re
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple, runtime_checkable

import frontmatter
import yaml
from loguru import logger

from ..models import NoteMetadata
from .corpus import NoteCorpus


TAG_PATTERN = re.compile(r'^[a-z](?:[a-z0-9]|-(?=[a-z0-9]))*$')
TAG_EXTRACT_PATTERN = re.compile(r'(?<![\w#])#([a-z0-9]+(?:-[a-z0-9]+)*)(?=\s|$)', re.IGNORECASE)
TAGS_LINE_PATTERN = re.compile(r'^tags:[ \t]*(.+)$', re.IGNORECASE | re.MULTILINE)


@runtime_checkable
class TagIndex(Protocol):

    def notes_with_all(self, tags: Iterable[str]) -> Set[str]:
        """Paths of notes carrying every one of ``tags``."""
        ...

    def tags_for(self, path: str) -> List[str]:
        ...


def is_valid_tag(tag: str) -> bool:
    return bool(tag) and bool(TAG_PATTERN.match(tag))


def _split_metadata_tags(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(',')
    elif not isinstance(value, (list, tuple, set)):
        value = [value]
    return [str(v).strip().lstrip('#').lower() for v in value if str(v).strip()]


def parse_note(content: str) -> Tuple[Set[str], Optional[str]]:
    """Return ``(tags, template)`` declared by a note."""
    body = content
    metadata: Dict = {}
    try:
        post = frontmatter.loads(content)
        body, metadata = post.content, post.metadata
    except (yaml.YAMLError, ValueError) as e:
        logger.debug(f"Unreadable front matter, scanning raw content: {e}")

    declared = _split_metadata_tags(metadata.get('tags'))
    # Notes without front matter may still carry a plain "tags: a, b" line
    for line in TAGS_LINE_PATTERN.finditer(body):
        declared.extend(_split_metadata_tags(line.group(1).strip('[] ')))

    tags = {t for t in declared if is_valid_tag(t)}
    for match in TAG_EXTRACT_PATTERN.finditer(body):
        tag = match.group(1).lower()
        if is_valid_tag(tag):
            tags.add(tag)

    template = metadata.get('template')
    return tags, str(template).lower() if template else None


class ContentTagIndex:
    """In-memory tag -> notes index, rebuilt from the corpus on demand."""

    def __init__(self, corpus: NoteCorpus):
        self.corpus = corpus
        self._index: Dict[str, Set[str]] = defaultdict(set)
        self._tags_by_note: Dict[str, Set[str]] = {}
        self._templates: Dict[str, str] = {}

    async def build(self) -> None:
        self._index.clear()
        self._tags_by_note.clear()
        self._templates.clear()

        for path in await self.corpus.list_files():
            try:
                content = await self.corpus.read_file(path)
            except OSError as e:
                logger.error(f"Error reading file for tags: {path}: {e}")
                continue
            self.add_note(path, content)

        logger.info(f"Tag index built: {len(self._index)} tags across {len(self._tags_by_note)} notes")

    def add_note(self, path: str, content: str) -> None:
        tags, template = parse_note(content)
        self._tags_by_note[path] = tags
        for tag in tags:
            self._index[tag].add(path)
        if template:
            self._templates[path] = template

    def notes_with_all(self, tags: Iterable[str]) -> Set[str]:
        normalized = [t.lower() for t in tags]
        if not normalized:
            return set()
        result = set(self._index.get(normalized[0], set()))
        for tag in normalized[1:]:
            result &= self._index.get(tag, set())
        return result

    def tags_for(self, path: str) -> List[str]:
        return sorted(self._tags_by_note.get(path, set()))

    def template_for(self, path: str) -> Optional[str]:
        return self._templates.get(path)


async def note_metadata(
    corpus: NoteCorpus,
    path: str,
    content: Optional[str] = None,
    tag_index=None,
) -> NoteMetadata:
    """Build result metadata from file stats plus the tag index or the note itself."""
    stats = await corpus.stat_file(path)
    tags: List[str] = []
    template = None
    if tag_index is not None:
        tags = tag_index.tags_for(path)
        template_for = getattr(tag_index, 'template_for', None)
        template = template_for(path) if template_for else None
    elif content is not None:
        parsed_tags, template = parse_note(content)
        tags = sorted(parsed_tags)
    return NoteMetadata(created=stats.created, modified=stats.modified, tags=tags, template=template)
