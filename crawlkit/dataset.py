from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from bs4 import BeautifulSoup

from .models import ChangedItem, CrawlResult, Dataset, DatasetDiff, DatasetItem

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")
_MAX_TEXT_CHARS = 5000


def compute_content_hash(payload: Mapping[str, Any]) -> str:
    """sha256 of the payload as canonical JSON (sorted keys, compact separators)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def make_item(url: str, payload: Mapping[str, Any]) -> DatasetItem:
    return DatasetItem(url=url, content_hash=compute_content_hash(payload), payload=dict(payload))


def extract_content(html: str, url: str) -> Dict[str, Any]:
    """Title, description, visible text and meta tags of an HTML page."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    title = soup.title.get_text(strip=True) if soup.title else ""
    meta: Dict[str, str] = {}
    for tag in soup.find_all("meta"):
        name = tag.get("name") or tag.get("property")
        content = tag.get("content")
        if name and content:
            meta[str(name).lower()] = str(content)
    text = _WS.sub(" ", soup.get_text(" ", strip=True))[:_MAX_TEXT_CHARS]
    return {
        "url": url,
        "title": title,
        "description": meta.get("description", ""),
        "text": text,
        "meta": meta,
    }


def item_from_result(result: CrawlResult) -> DatasetItem:
    if result.scraped_content is not None:
        payload = dict(result.scraped_content)
    elif "html" in result.content_type:
        payload = extract_content(result.body, result.url)
    else:
        payload = {"url": result.url, "contentType": result.content_type, "size": result.size_bytes}
    payload["statusCode"] = result.status_code
    return make_item(result.url, payload)


class DatasetManager:
    """In-process store of named datasets."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._datasets: Dict[str, Dataset] = {}

    def create(self, name: str, user_id: Optional[str] = None, job_id: Optional[str] = None) -> Dataset:
        dataset = Dataset(id=str(uuid.uuid4()), name=name, user_id=user_id, job_id=job_id)
        with self._lock:
            self._datasets[dataset.id] = dataset
        return dataset

    def _require(self, dataset_id: str) -> Dataset:
        dataset = self._datasets.get(dataset_id)
        if dataset is None:
            raise KeyError(f"Dataset not found: {dataset_id}")
        return dataset

    def add_items(self, dataset_id: str, items: Iterable[DatasetItem]) -> int:
        """Append items; return how many were added."""
        with self._lock:
            dataset = self._require(dataset_id)
            added = 0
            for item in items:
                dataset.items.append(item)
                dataset.total_bytes += len(json.dumps(item.payload, ensure_ascii=False, default=str).encode("utf-8"))
                added += 1
            dataset.item_count = len(dataset.items)
            dataset.updated_at = time.time()
            return added

    def get(self, dataset_id: str) -> Optional[Dataset]:
        with self._lock:
            return self._datasets.get(dataset_id)

    def list(self, user_id: Optional[str] = None) -> List[Dataset]:
        """Datasets newest first, optionally only one user's."""
        with self._lock:
            datasets = [d for d in self._datasets.values() if user_id is None or d.user_id == user_id]
        return sorted(datasets, key=lambda d: d.created_at, reverse=True)

    def delete(self, dataset_id: str) -> bool:
        with self._lock:
            return self._datasets.pop(dataset_id, None) is not None

    def get_items(self, dataset_id: str, page: int = 1, page_size: int = 50) -> List[DatasetItem]:
        with self._lock:
            dataset = self._require(dataset_id)
            start = max(page - 1, 0) * page_size
            return dataset.items[start:start + page_size]

    def search(self, dataset_id: str, query: str) -> List[DatasetItem]:
        """Items whose URL or any string field of the payload contains ``query`` (case-insensitive)."""
        needle = query.lower()
        with self._lock:
            items = list(self._require(dataset_id).items)
        return [
            item for item in items
            if needle in item.url.lower() or any(needle in s.lower() for s in _strings(item.payload))
        ]


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _strings(v)


DiffInput = Union[Dataset, Iterable[DatasetItem]]


def _hash_index(items: DiffInput) -> Dict[str, str]:
    if isinstance(items, Dataset):
        items = items.items
    return {item.url: item.content_hash for item in items}


def diff_datasets(old: DiffInput, new: DiffInput) -> DatasetDiff:
    """What changed going from ``old`` to ``new``. Swapping the arguments swaps added and removed."""
    old_index = _hash_index(old)
    new_index = _hash_index(new)
    added = sorted(url for url in new_index if url not in old_index)
    removed = sorted(url for url in old_index if url not in new_index)
    changed = [
        ChangedItem(url=url, old_hash=old_index[url], new_hash=new_index[url])
        for url in sorted(new_index)
        if url in old_index and old_index[url] != new_index[url]
    ]
    return DatasetDiff(added=added, removed=removed, changed=changed)
