"""Structure-aware markdown chunking.

Splits a markdown document into ordered, addressable chunks at a chosen
heading level. The document is first scanned into blocks (headings, fenced
code, paragraph-like runs separated by blank lines) so that a split is
never introduced inside a code fence, even when a line in the fence looks
like a heading.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace

from docs_mcp.corpus.manifest import extract_frontmatter
from docs_mcp.corpus.schema import Chunk, ChunkingStrategy

# ~6,700 tokens at ~3 chars/token, under common embedding input limits
DEFAULT_MAX_CHUNK_SIZE = 20_000

CHUNK_LEVELS = {"h1": 1, "h2": 2, "h3": 3}

_FENCE_OPEN = re.compile(r"^ {0,3}(`{3,}|~{3,})(.*)$")
_ATX_HEADING = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?[ \t]*$")
_SETEXT_H1 = re.compile(r"^ {0,3}=+[ \t]*$")
_SETEXT_H2 = re.compile(r"^ {0,3}-+[ \t]*$")


class ChunkingError(ValueError):
    """Raised when chunk builder input is unusable."""


@dataclass
class Block:
    """A top-level markdown block with its source offsets."""
    kind: str  # "heading", "code" or "text"
    start: int
    end: int
    text: str
    level: int = 0


@dataclass
class Segment:
    kind: str  # "file", "preamble" or "heading"
    heading: str
    heading_level: int
    ancestor_texts: list[str]
    ancestor_slugs: list[str]
    slug: str
    blocks: list[Block] = field(default_factory=list)
    part: int = 1


def build_chunks(
    filepath: str,
    markdown: str,
    strategy: ChunkingStrategy,
    metadata: dict[str, str] | None = None,
) -> list[Chunk]:
    """Split one markdown file into ordered chunks.

    Args:
        filepath: Corpus-relative posix path, used as the chunk id prefix
        markdown: Full file content (frontmatter is excluded from chunks)
        strategy: Resolved chunking strategy
        metadata: Resolved tags copied onto every chunk

    Returns:
        Chunks in document order with ``chunk_index`` starting at 0
    """
    if not filepath.strip():
        raise ChunkingError("filepath is required")

    blocks = scan_blocks(markdown)
    if not blocks:
        return []

    if strategy.chunk_by == "file":
        segments = [Segment("file", "", 0, [], [], "", list(blocks))]
    else:
        segments = _split_by_heading_level(blocks, CHUNK_LEVELS[strategy.chunk_by])

    segments = _apply_size_rules(segments, markdown, strategy)
    return _materialize(filepath, segments, markdown, metadata or {})


# --- Block scanning ---

def scan_blocks(markdown: str) -> list[Block]:
    """Scan the document body (after frontmatter) into top-level blocks."""
    _, body = extract_frontmatter(markdown)
    base = len(markdown) - len(body)

    blocks: list[Block] = []
    lines = body.splitlines(keepends=True)
    pos = base
    para_start: int | None = None
    para_end = 0
    para_lines: list[str] = []
    fence: tuple[str, int, int] | None = None  # (char, length, start)
    fence_lines: list[str] = []

    def flush_paragraph() -> None:
        nonlocal para_start, para_lines
        if para_start is not None:
            blocks.append(Block("text", para_start, para_end, _strip_formatting("\n".join(para_lines))))
        para_start = None
        para_lines = []

    for raw in lines:
        line = raw.rstrip("\r\n")
        line_end = pos + len(line)

        if fence is not None:
            char, length, start = fence
            stripped = line.strip()
            if stripped and set(stripped) == {char} and len(stripped) >= length and len(line) - len(line.lstrip(" ")) <= 3:
                blocks.append(Block("code", start, line_end, "\n".join(fence_lines)))
                fence = None
                fence_lines = []
            else:
                fence_lines.append(line)
            pos += len(raw)
            continue

        fence_match = _FENCE_OPEN.match(line)
        heading = _ATX_HEADING.match(line)
        if fence_match and not (fence_match.group(1)[0] == "`" and "`" in fence_match.group(2)):
            flush_paragraph()
            fence = (fence_match.group(1)[0], len(fence_match.group(1)), pos)
            fence_lines = []
        elif not line.strip():
            flush_paragraph()
        elif heading is not None:
            flush_paragraph()
            title = re.sub(r"(?:^|[ \t]+)#+$", "", heading.group(2) or "").strip()
            blocks.append(Block("heading", pos, line_end, _strip_formatting(title), len(heading.group(1))))
        elif para_start is not None and (_SETEXT_H1.match(line) or _SETEXT_H2.match(line)):
            level = 1 if _SETEXT_H1.match(line) else 2
            title = _strip_formatting(" ".join(p.strip() for p in para_lines))
            blocks.append(Block("heading", para_start, line_end, title, level))
            para_start = None
            para_lines = []
        else:
            if para_start is None:
                para_start = pos
            para_end = line_end
            para_lines.append(line)

        pos += len(raw)

    if fence is not None:
        # Unclosed fence runs to the end of the document
        blocks.append(Block("code", fence[2], pos, "\n".join(fence_lines)))
    flush_paragraph()

    return blocks


_INLINE_RULES = [
    (re.compile(r"!\[([^\]]*)\]\([^)]*\)"), r"\1"),
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r"\1"),
    (re.compile(r"\[([^\]]*)\]\[[^\]]*\]"), r"\1"),
    (re.compile(r"<!--.*?-->", re.DOTALL), ""),
    (re.compile(r"</?[A-Za-z][^>]*>"), ""),
    (re.compile(r"`([^`]*)`"), r"\1"),
    (re.compile(r"(\*\*|__)(.+?)\1"), r"\2"),
    (re.compile(r"(?<![\w*])[*_](?!\s)(.+?)(?<!\s)[*_](?![\w*])"), r"\1"),
    (re.compile(r"~~(.+?)~~"), r"\1"),
]
_LINE_PREFIX = re.compile(r"^\s*(?:>\s?)*(?:[-*+]\s+(?:\[[ xX]\]\s+)?|\d+[.)]\s+)?")
_TABLE_RULE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(?:\|\s*:?-{3,}:?\s*)*\|?\s*$")


def _strip_formatting(text: str) -> str:
    """Project markdown inline syntax to plain text."""
    lines = []
    for line in text.split("\n"):
        if _TABLE_RULE.match(line):
            continue
        line = _LINE_PREFIX.sub("", line, count=1)
        if "|" in line:
            line = " ".join(cell.strip() for cell in line.strip().strip("|").split("|"))
        lines.append(line)
    result = "\n".join(lines)
    for pattern, repl in _INLINE_RULES:
        result = pattern.sub(repl, result)
    return result.strip()


# --- Heading-based splitting ---

def slugify(value: str) -> str:
    value = re.sub(r"[^a-z0-9 -]", "", value.lower())
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-")


def _unique_slug(base: str, issued: set[str]) -> str:
    """Return ``base``, or ``base-N`` with the smallest N not yet issued among siblings."""
    slug = base
    n = 1
    while slug in issued:
        n += 1
        slug = f"{base}-{n}"
    issued.add(slug)
    return slug


def _dedupe_slug(parent_slugs: list[str], base: str, issued: dict[str, set[str]]) -> str:
    parent_path = "/".join(parent_slugs) or "__root__"
    return _unique_slug(base, issued.setdefault(parent_path, set()))


def _split_by_heading_level(blocks: list[Block], target_level: int) -> list[Segment]:
    stack: list[tuple[str, str] | None] = [None] * 7
    issued_slugs: dict[str, set[str]] = {}
    boundaries: list[tuple[int, Segment]] = []

    for idx, block in enumerate(blocks):
        if block.kind != "heading":
            continue

        heading = block.text.strip() or "section"
        parent_slugs = [entry[1] for entry in stack[1:block.level] if entry]
        slug = _dedupe_slug(parent_slugs, slugify(heading) or "section", issued_slugs)
        stack[block.level] = (heading, slug)
        for depth in range(block.level + 1, 7):
            stack[depth] = None

        if block.level != target_level:
            continue

        ancestors = [entry for entry in stack[1:target_level] if entry]
        boundaries.append((idx, Segment(
            kind="heading",
            heading=heading,
            heading_level=block.level,
            ancestor_texts=[a[0] for a in ancestors],
            ancestor_slugs=[a[1] for a in ancestors],
            slug=slug,
        )))

    if not boundaries:
        return [Segment("preamble", "", 0, [], [], "_preamble", list(blocks))]

    segments: list[Segment] = []
    first = boundaries[0][0]
    if first > 0:
        segments.append(Segment("preamble", "", 0, [], [], "_preamble", blocks[:first]))

    for i, (start, segment) in enumerate(boundaries):
        end = boundaries[i + 1][0] if i + 1 < len(boundaries) else len(blocks)
        segment.blocks = blocks[start:end]
        segments.append(segment)

    return segments


# --- Size rules ---

def _raw(blocks: list[Block], markdown: str) -> str:
    if not blocks:
        return ""
    return markdown[blocks[0].start:blocks[-1].end]


def _apply_size_rules(
    segments: list[Segment],
    markdown: str,
    strategy: ChunkingStrategy,
) -> list[Segment]:
    max_size = strategy.max_chunk_size or DEFAULT_MAX_CHUNK_SIZE
    min_size = strategy.min_chunk_size

    expanded: list[Segment] = []
    for segment in segments:
        if len(_raw(segment.blocks, markdown)) <= max_size:
            expanded.append(segment)
        else:
            expanded.extend(_refine_oversized(segment, markdown, max_size))

    if not min_size or len(expanded) <= 1:
        return expanded

    merged: list[Segment] = []
    for i, segment in enumerate(expanded):
        previous = merged[-1] if merged else None
        undersized = len(_raw(segment.blocks, markdown)) < min_size
        is_last = i == len(expanded) - 1
        if previous is not None and undersized and (is_last or _can_merge(previous, segment)):
            previous.blocks = previous.blocks + segment.blocks
            continue
        merged.append(replace(segment, blocks=list(segment.blocks)))

    return merged


def _refine_oversized(
    segment: Segment,
    markdown: str,
    max_size: int,
    level: int | None = None,
) -> list[Segment]:
    """Split at progressively finer heading levels, then at block boundaries."""
    next_level = (segment.heading_level if level is None else level) + 1
    if next_level > 6:
        return _split_by_block_size(segment, markdown, max_size)

    sub_boundaries: list[tuple[int, str, str]] = []
    issued_slugs: set[str] = set()
    for idx, block in enumerate(segment.blocks):
        if block.kind == "heading" and block.level == next_level:
            heading = block.text.strip() or "section"
            slug = _unique_slug(slugify(heading) or "section", issued_slugs)
            sub_boundaries.append((idx, heading, slug))

    if not sub_boundaries:
        return _refine_oversized(segment, markdown, max_size, next_level)

    subs: list[Segment] = []
    first = sub_boundaries[0][0]
    if first > 0 and _raw(segment.blocks[:first], markdown).strip():
        subs.append(replace(segment, blocks=segment.blocks[:first], part=1))

    for i, (start, heading, slug) in enumerate(sub_boundaries):
        end = sub_boundaries[i + 1][0] if i + 1 < len(sub_boundaries) else len(segment.blocks)
        subs.append(Segment(
            kind="heading",
            heading=heading,
            heading_level=next_level,
            ancestor_texts=segment.ancestor_texts + ([segment.heading] if segment.heading else []),
            ancestor_slugs=segment.ancestor_slugs + ([segment.slug] if segment.slug else []),
            slug=slug,
            blocks=segment.blocks[start:end],
        ))

    result: list[Segment] = []
    for sub in subs:
        if len(_raw(sub.blocks, markdown)) <= max_size:
            result.append(sub)
        else:
            result.extend(_refine_oversized(sub, markdown, max_size))
    return result


def _split_by_block_size(segment: Segment, markdown: str, max_size: int) -> list[Segment]:
    """Group blocks so each part stays under ``max_size``.

    A single block larger than the limit stays intact, so a large code
    fence is never bisected.
    """
    groups: list[list[Block]] = []
    current: list[Block] = []
    for block in segment.blocks:
        if current and len(_raw(current + [block], markdown)) > max_size:
            groups.append(current)
            current = [block]
        else:
            current.append(block)
    if current:
        groups.append(current)

    return [replace(segment, blocks=group, part=i + 1) for i, group in enumerate(groups)]


def _can_merge(previous: Segment, current: Segment) -> bool:
    """Only parts of the same heading section are recombined."""
    return (
        previous.kind == current.kind
        and previous.slug == current.slug
        and previous.heading == current.heading
        and previous.heading_level == current.heading_level
        and previous.ancestor_slugs == current.ancestor_slugs
    )


# --- Materialization ---

def _chunk_id(filepath: str, segment: Segment) -> str:
    if segment.kind == "file":
        return filepath if segment.part == 1 else f"{filepath}#_part-{segment.part}"
    if segment.kind == "preamble":
        suffix = "" if segment.part == 1 else f"-part-{segment.part}"
        return f"{filepath}#_preamble{suffix}"
    suffix = f"-part-{segment.part}" if segment.part > 1 else ""
    return f"{filepath}#" + "/".join(segment.ancestor_slugs + [segment.slug + suffix])


def _materialize(
    filepath: str,
    segments: list[Segment],
    markdown: str,
    metadata: dict[str, str],
) -> list[Chunk]:
    chunks = []
    issued_ids: set[str] = set()
    for index, segment in enumerate(segments):
        breadcrumb = [filepath, *segment.ancestor_texts]
        if segment.heading:
            breadcrumb.append(segment.heading)

        chunks.append(Chunk(
            chunk_id=_unique_slug(_chunk_id(filepath, segment), issued_ids),
            filepath=filepath,
            heading=segment.heading,
            heading_level=segment.heading_level,
            content=_raw(segment.blocks, markdown),
            content_text="\n\n".join(b.text for b in segment.blocks if b.text),
            breadcrumb=" > ".join(breadcrumb),
            chunk_index=index,
            metadata=dict(metadata),
        ))
    return chunks
