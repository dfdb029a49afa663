"""Motor collection doubles shared by the unit tests."""
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

ASYNC_METHODS = (
    "find_one",
    "insert_one",
    "update_one",
    "update_many",
    "delete_one",
    "delete_many",
    "count_documents",
    "find_one_and_update",
    "create_index",
)


def cursor(items: Optional[List[Dict[str, Any]]] = None) -> MagicMock:
    """A chainable find()/aggregate() cursor whose to_list() yields the given items."""
    docs = list(items or [])
    mock = MagicMock()
    mock.sort.return_value = mock
    mock.skip.return_value = mock
    mock.limit.return_value = mock
    mock.to_list = AsyncMock(return_value=docs)
    mock.__aiter__.return_value = docs
    return mock


def update_result(modified: int = 1, upserted_id: Any = None) -> SimpleNamespace:
    return SimpleNamespace(modified_count=modified, matched_count=modified, upserted_id=upserted_id)


def make_collection() -> MagicMock:
    collection = MagicMock()
    for name in ASYNC_METHODS:
        setattr(collection, name, AsyncMock(return_value=None))
    collection.update_one.return_value = update_result(1)
    collection.update_many.return_value = update_result(0)
    collection.delete_one.return_value = SimpleNamespace(deleted_count=1)
    collection.delete_many.return_value = SimpleNamespace(deleted_count=0)
    collection.count_documents.return_value = 0
    collection.find.side_effect = lambda *args, **kwargs: cursor([])
    collection.aggregate.side_effect = lambda *args, **kwargs: cursor([])
    return collection


class FakeDb:
    """Attribute and item access both return one lazily created collection per name."""

    def __init__(self) -> None:
        self._collections: Dict[str, MagicMock] = {}

    def __getattr__(self, name: str) -> MagicMock:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._collections.setdefault(name, make_collection())

    __getitem__ = __getattr__

    def returns(self, collection: str, method: str, value: Any) -> MagicMock:
        getattr(getattr(self, collection), method).return_value = value
        return getattr(self, collection)

    def finds(self, collection: str, items: List[Dict[str, Any]]) -> MagicMock:
        getattr(self, collection).find.side_effect = lambda *args, **kwargs: cursor(items)
        return getattr(self, collection)
