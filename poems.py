from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from models import PoemMetadata


@dataclass(frozen=True)
class Poem:
    id: int
    title: str
    author: str
    tags: List[str] = field(default_factory=list)
    content: List[str] = field(default_factory=list)
    translation: List[str] = field(default_factory=list)

    def metadata(self) -> PoemMetadata:
        return PoemMetadata(
            id=self.id, title=self.title, author=self.author,
            content=list(self.content), translation=list(self.translation),
        )


def parse_poems(text: str) -> List[Poem]:
    """
    Corpus format, poems separated by two blank lines:

        title
        author
        Tags: a, b          (optional)
        content lines...
        <blank>
        translation lines...

    Blocks with fewer than three lines are skipped; ids follow block order.
    """
    poems: List[Poem] = []
    blocks = text.replace("\r\n", "\n").strip().split("\n\n\n")
    for index, block in enumerate(blocks):
        lines = block.split("\n")
        if len(lines) < 3:
            continue
        title, author = lines[0].strip(), lines[1].strip()
        body_start = 2
        tags: List[str] = []
        if lines[2].strip().startswith("Tags:"):
            tags = [t.strip() for t in lines[2].strip()[len("Tags:"):].split(",") if t.strip()]
            body_start = 3

        content: List[str] = []
        translation: List[str] = []
        target = content
        for ln in lines[body_start:]:
            if not ln.strip():
                target = translation
                continue
            target.append(ln.strip())

        poems.append(Poem(id=index, title=title, author=author, tags=tags,
                          content=content, translation=translation))
    return poems


class PoemCorpus:
    def __init__(self, poems: List[Poem]):
        self._poems: Dict[int, Poem] = {p.id: p for p in poems}

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "PoemCorpus":
        p = Path(path or os.getenv("POEMS_CORPUS_PATH", "./poems.txt"))
        if not p.exists():
            return cls([])
        return cls(parse_poems(p.read_text(encoding="utf-8")))

    def __len__(self) -> int:
        return len(self._poems)

    def get(self, poem_id: int) -> Optional[Poem]:
        return self._poems.get(poem_id)

    def search(self, query: str) -> List[Poem]:
        """Case-insensitive substring match; a blank query matches nothing."""
        q = query.strip().lower()
        if not q:
            return []
        hits = []
        for p in self._poems.values():
            haystack = [p.title, p.author, *p.content, *p.translation, *p.tags]
            if any(q in s.lower() for s in haystack):
                hits.append(p)
        return hits

    def all_tags(self) -> List[str]:
        return sorted({t for p in self._poems.values() for t in p.tags})
