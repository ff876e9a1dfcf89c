from __future__ import annotations

import csv
import io
import json
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from .errors import UnsupportedFormatError, ValidationError
from .models import DatasetItem

EXPORT_FORMATS = ("json", "csv", "xml")

_XML_NAME = re.compile(r"[^A-Za-z0-9_.-]")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def export_json(items: Sequence[DatasetItem], pretty: bool = False) -> str:
    doc = {
        "items": [item.to_dict() for item in items],
        "metadata": {"count": len(items), "exportedAt": _now_iso()},
    }
    return json.dumps(doc, ensure_ascii=False, indent=2 if pretty else None, default=str)


def parse_json_export(text: str) -> List[DatasetItem]:
    """Read back the output of ``export_json``."""
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"not a JSON export: {exc}") from exc
    if not isinstance(doc, dict) or not isinstance(doc.get("items"), list):
        raise ValidationError("JSON export must be an object with an 'items' list")
    items: List[DatasetItem] = []
    for raw in doc["items"]:
        if not isinstance(raw, dict) or "url" not in raw or "contentHash" not in raw:
            raise ValidationError(f"malformed export item: {raw!r}")
        items.append(DatasetItem(url=raw["url"], content_hash=raw["contentHash"], payload=raw.get("payload") or {}))
    return items


def _flatten(value: Mapping[str, Any], prefix: str = "") -> Dict[str, str]:
    flat: Dict[str, str] = {}
    for key, v in value.items():
        name = f"{prefix}{key}"
        if isinstance(v, Mapping):
            flat.update(_flatten(v, f"{name}."))
        elif isinstance(v, (list, tuple)):
            flat[name] = "; ".join(
                json.dumps(x, ensure_ascii=False, sort_keys=True) if isinstance(x, (Mapping, list)) else str(x)
                for x in v
            )
        elif v is None:
            flat[name] = ""
        else:
            flat[name] = str(v)
    return flat


def export_csv(items: Sequence[DatasetItem]) -> str:
    """One row per item; payload fields become dotted columns after url and contentHash."""
    rows = [{"url": item.url, "contentHash": item.content_hash, **_flatten(item.payload)} for item in items]
    columns: List[str] = ["url", "contentHash"]
    seen = set(columns)
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, restval="", lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buf.getvalue()


def _xml_tag(key: str) -> str:
    tag = _XML_NAME.sub("_", str(key)) or "_"
    return tag if (tag[0].isalpha() or tag[0] == "_") else f"_{tag}"


def _append_value(parent: ET.Element, tag: str, value: Any) -> None:
    el = ET.SubElement(parent, _xml_tag(tag))
    if isinstance(value, Mapping):
        for k, v in value.items():
            if v is not None:
                _append_value(el, k, v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            _append_value(el, "value", v)
    elif value is not None:
        el.text = str(value)


def export_xml(items: Sequence[DatasetItem], root: str = "dataset") -> str:
    root_el = ET.Element(_xml_tag(root))
    meta = ET.SubElement(root_el, "metadata")
    ET.SubElement(meta, "count").text = str(len(items))
    ET.SubElement(meta, "exportedAt").text = _now_iso()
    for item in items:
        item_el = ET.SubElement(root_el, "item")
        ET.SubElement(item_el, "url").text = item.url
        ET.SubElement(item_el, "contentHash").text = item.content_hash
        _append_value(item_el, "payload", item.payload)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root_el, encoding="unicode")


_EXPORTERS: Dict[str, Callable[[Sequence[DatasetItem]], str]] = {
    "json": export_json,
    "csv": export_csv,
    "xml": export_xml,
}


def export_items(items: Iterable[DatasetItem], fmt: str) -> str:
    exporter = _EXPORTERS.get(fmt.lower())
    if exporter is None:
        raise UnsupportedFormatError(f"Unsupported export format: {fmt!r} (expected one of {EXPORT_FORMATS})")
    return exporter(list(items))
