from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Tuple, TypeVar

from shared.logging.logger import get_logger
from shared.runtime.errors import ResourceMissing
from shared.storage.state_store import StateStore

log = get_logger("services.broadcasts.rotation")

THUMBNAIL_EXTENSIONS = (".jpg", ".jpeg", ".png")
GLOBAL_CURSOR_PREFIX = "__GLOBAL__"

T = TypeVar("T")


def next_selection(
    items: Sequence[T],
    cursor: int,
    pinned: Optional[T] = None,
) -> Tuple[T, int]:
    """
    Pick the item at `cursor` (wrapped) and return it with the next cursor.

    A pinned item is returned as-is and leaves the cursor where it was, so
    rotation resumes from the same position once unpinned. The cursor grows
    without bound; only the derived index wraps.
    """
    if pinned is not None:
        return pinned, cursor
    if not items:
        raise ValueError("Cannot select from an empty set")
    cursor = max(0, int(cursor))
    return items[cursor % len(items)], cursor + 1


def natural_key(name: str) -> List[Any]:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


@dataclass
class Selection:
    value: Any
    owner: Optional[str] = None
    key: Optional[str] = None
    next_cursor: Optional[int] = None
    # position is 1-based and only meaningful for rotated picks
    position: Optional[int] = None
    total: Optional[int] = None

    @property
    def rotated(self) -> bool:
        return self.key is not None and self.next_cursor is not None


class ResourceRotator:
    """
    Chooses the title and thumbnail for a template's next broadcast.

    Selections are returned uncommitted; `commit()` persists the advanced
    cursor once the broadcast that used them was actually created.
    """

    def __init__(self, store: StateStore, *, media_root: str | Path = "."):
        self._store = store
        self._media_root = Path(media_root)

    def _resolve(self, path: str | Path) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self._media_root / p

    # ------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------

    @staticmethod
    def _title_entries(title_set: Mapping[str, Any]) -> List[Tuple[Optional[str], str]]:
        entries: List[Tuple[Optional[str], str]] = []
        for raw in title_set.get("titles") or []:
            if isinstance(raw, str) and raw.strip():
                entries.append((None, raw))
            elif isinstance(raw, Mapping) and str(raw.get("title") or "").strip():
                entries.append((str(raw.get("id")) if raw.get("id") is not None else None, raw["title"]))
        return entries

    def select_title(self, template: Mapping[str, Any]) -> Optional[Selection]:
        """
        Title from the template's title set, or None when there is no usable
        set and the caller should keep its own title.
        """
        set_id = template.get("title_folder_id")
        if not set_id:
            return None

        title_set = self._store.find_title_set(set_id)
        entries = self._title_entries(title_set or {})
        if not entries:
            log.info(f"[{template.get('id')}] Title set {set_id} is empty; using template title")
            return None

        owner = str(template.get("user_id") or "")
        key = f"title:{set_id}"
        cursor = self._store.get_rotation_cursor(owner, key)

        pinned_id = template.get("pinned_title_id")
        pinned = next(
            (title for entry_id, title in entries if pinned_id and entry_id == str(pinned_id)),
            None,
        )
        if pinned is not None:
            return Selection(value=pinned)

        titles = [title for _, title in entries]
        title, new_cursor = next_selection(titles, cursor)
        return Selection(
            value=title,
            owner=owner,
            key=key,
            next_cursor=new_cursor,
            position=cursor % len(titles) + 1,
            total=len(titles),
        )

    # ------------------------------------------------------------
    # Thumbnails
    # ------------------------------------------------------------

    def list_thumbnails(self, folder: str | Path) -> List[Path]:
        root = self._resolve(folder)
        if not root.is_dir():
            return []
        files = [
            p for p in root.iterdir()
            if p.is_file() and p.suffix.lower() in THUMBNAIL_EXTENSIONS
        ]
        return sorted(files, key=lambda p: natural_key(p.name))

    def select_thumbnail(self, template: Mapping[str, Any]) -> Optional[Selection]:
        template_id = template.get("id")

        pinned = template.get("pinned_thumbnail")
        if pinned:
            path = self._resolve(pinned)
            if not path.is_file():
                raise ResourceMissing(f"Pinned thumbnail not found: {path}", path=str(path))
            return Selection(value=path)

        folder = template.get("thumbnail_folder")
        if folder:
            files = self.list_thumbnails(folder)
            if files:
                owner = str(template.get("user_id") or "")
                key = f"{GLOBAL_CURSOR_PREFIX}{folder}"
                cursor = self._store.get_rotation_cursor(owner, key)
                path, new_cursor = next_selection(files, cursor)
                return Selection(
                    value=path,
                    owner=owner,
                    key=key,
                    next_cursor=new_cursor,
                    position=cursor % len(files) + 1,
                    total=len(files),
                )
            log.info(f"[{template_id}] Thumbnail folder {folder} has no images")

        static = template.get("thumbnail_path")
        if static:
            path = self._resolve(static)
            if not path.is_file():
                raise ResourceMissing(f"Thumbnail not found: {path}", path=str(path))
            return Selection(value=path)

        return None

    # ------------------------------------------------------------

    def commit(self, selection: Optional[Selection]) -> None:
        if selection is None or not selection.rotated:
            return
        self._store.set_rotation_cursor(selection.owner or "", selection.key, selection.next_cursor)
        log.debug(
            f"Rotation {selection.key} advanced to {selection.next_cursor} "
            f"(used {selection.position}/{selection.total})"
        )
