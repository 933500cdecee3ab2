from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Set

from app.models.content import Item
from app.models.content_sources import SourceConfig

Predicate = Callable[[Item], bool]


def build_predicate(config: SourceConfig) -> Optional[Predicate]:
    """
    Inclusion predicate for a source, or None when everything is kept.

    Track streams use it to drop short clips (duration at or below the floor)
    and playlists.
    """
    if not config.has_filter:
        return None
    floor = config.min_duration_seconds
    excluded = tuple(t.lower() for t in config.excluded_content_types)

    def _include(item: Item) -> bool:
        if floor is not None and (item.duration_seconds is None or item.duration_seconds <= floor):
            return False
        content_type = item.content_type.lower()
        return not any(t in content_type for t in excluded)

    return _include


def order_newest_first(items: Iterable[Item]) -> List[Item]:
    # sorted() is stable with reverse=True: equal timestamps keep fetch order.
    return sorted(items, key=lambda item: item.published_at, reverse=True)


class PostProcessor:
    """
    Dedup + filter across successive pages of one refresh.

    ``accept`` remembers every id it has seen, so duplicates from overlapping
    pages are dropped and the first occurrence wins.
    """

    def __init__(self, predicate: Optional[Predicate] = None) -> None:
        self.predicate = predicate
        self._seen: Set[str] = set()
        self.accepted: List[Item] = []

    def accept(self, items: Iterable[Item]) -> List[Item]:
        kept: List[Item] = []
        for item in items:
            if item.id in self._seen:
                continue
            self._seen.add(item.id)
            if self.predicate is not None and not self.predicate(item):
                continue
            kept.append(item)
        self.accepted.extend(kept)
        return kept

    def result(self) -> List[Item]:
        return order_newest_first(self.accepted)


def process(items: Iterable[Item], predicate: Optional[Predicate] = None) -> List[Item]:
    """Dedup by id (first wins), apply the predicate, order newest first."""
    processor = PostProcessor(predicate)
    processor.accept(items)
    return processor.result()
