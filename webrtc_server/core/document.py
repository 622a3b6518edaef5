"""
The single static HTML document served for every request.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

FALLBACK_HTML = """<!DOCTYPE html>
<html><body>
<h1>{name} not found</h1>
<p>Make sure {name} is present next to the server ({path}).</p>
</body></html>
"""


@dataclass(frozen=True)
class StaticDocument:
    """Immutable page content shared by all connections."""

    body: bytes
    source: Optional[Path] = None
    is_fallback: bool = False

    @property
    def content_length(self) -> int:
        return len(self.body)

    @classmethod
    def from_text(cls, text: str, source: Optional[Path] = None) -> "StaticDocument":
        return cls(body=text.encode("utf-8"), source=source)


def load_document(path: Union[str, Path]) -> StaticDocument:
    """Read the page as UTF-8 text, or build a fallback page if it is missing or unreadable."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Static document {path} unavailable: {e}")
        fallback = FALLBACK_HTML.format(name=path.name, path=path)
        return StaticDocument(body=fallback.encode("utf-8"), source=path, is_fallback=True)
    return StaticDocument.from_text(text, source=path)
