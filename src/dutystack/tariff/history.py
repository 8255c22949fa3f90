from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from dutystack.tariff.ranker import ClassificationResult

PRODUCT_DESCRIPTION_LIMIT = 100


@dataclass(frozen=True)
class ClassificationRecord:
    id: str
    hts_code: Optional[str]
    description: Optional[str]
    product_description: str
    confidence: float
    country_of_origin: Optional[str]
    needs_clarification: bool
    alternatives: Tuple[str, ...]
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hts_code": self.hts_code,
            "description": self.description,
            "product_description": self.product_description,
            "confidence": self.confidence,
            "country_of_origin": self.country_of_origin,
            "needs_clarification": self.needs_clarification,
            "alternatives": list(self.alternatives),
            "created_at": self.created_at,
        }


def build_history_record(
    result: ClassificationResult,
    description: str,
    country: Optional[str] = None,
) -> ClassificationRecord:
    primary = result.primary
    return ClassificationRecord(
        id=uuid4().hex,
        hts_code=primary.code if primary else None,
        description=primary.description if primary else None,
        product_description=description[:PRODUCT_DESCRIPTION_LIMIT],
        confidence=primary.confidence if primary else 0.0,
        country_of_origin=country,
        needs_clarification=result.needs_clarification,
        alternatives=tuple(candidate.code for candidate in result.alternatives),
        created_at=datetime.now(timezone.utc).isoformat(),
    )


class InMemoryHistoryStore:
    """Thread-safe, bounded store of recent classifications (oldest evicted first)."""

    def __init__(self, max_items: int = 50) -> None:
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self._lock = threading.Lock()
        self._records: "OrderedDict[str, ClassificationRecord]" = OrderedDict()

    def add(self, record: ClassificationRecord) -> ClassificationRecord:
        with self._lock:
            self._records[record.id] = record
            while len(self._records) > self.max_items:
                self._records.popitem(last=False)
        return record

    def get(self, record_id: str) -> Optional[ClassificationRecord]:
        with self._lock:
            return self._records.get(record_id)

    def list(self, limit: Optional[int] = None) -> List[ClassificationRecord]:
        """Most recent first."""
        with self._lock:
            records = list(reversed(self._records.values()))
        return records[:limit] if limit is not None else records

    def clear(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._records.clear()
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
