"""In-memory code hierarchy store.

Chapters (2 digits) → headings (4) → subheadings (6) → tariff lines (8)
→ statistical suffixes (10). Every non-chapter node's parent is its code
minus the last two digits.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from dutystack.errors import CodeNotFound, InternalInconsistency, InvalidCodeFormat
from dutystack.tariff.rate_parser import parse_special_rates

logger = logging.getLogger(__name__)

_SEPARATORS_RE = re.compile(r"[\s.\-]")

LEVELS: Dict[int, str] = {
    2: "chapter",
    4: "heading",
    6: "subheading",
    8: "tariff-line",
    10: "statistical",
}


def normalize_code(raw: object) -> str:
    """Return canonical digits for an HTS code or raise InvalidCodeFormat.

    Separators are stripped. Codes of 3, 5 or 7 digits get their leading
    zero back (spreadsheet extracts drop it, e.g. ``101.21.00`` →
    ``01012100``). Nine digits are ambiguous between a statistical suffix
    missing its leading zero and one missing a trailing digit, so they are
    rejected.
    """
    text = _SEPARATORS_RE.sub("", str(raw if raw is not None else ""))
    if not text.isdigit():
        raise InvalidCodeFormat(f"HTS code {raw!r} must contain only digits and separators")
    if len(text) < 2 or len(text) > 10:
        raise InvalidCodeFormat(f"HTS code {raw!r} must have between 2 and 10 digits")
    if len(text) == 9:
        raise InvalidCodeFormat(
            f"HTS code {raw!r} has 9 digits",
            hint="Give the full 10-digit statistical code, or the 8-digit tariff line",
        )
    if len(text) in (3, 5, 7):
        text = "0" + text
    return text


def format_code(code: str) -> str:
    """Dotted display form: ``6109100010`` → ``6109.10.00.10``."""
    if len(code) <= 4:
        return code
    parts = [code[:4]] + [code[i : i + 2] for i in range(4, len(code), 2)]
    return ".".join(parts)


@dataclass(frozen=True)
class HtsNode:
    code: str
    level: str
    description: str
    parent_code: Optional[str]
    general_rate: str = ""
    special_rates: Mapping[str, str] = field(default_factory=dict)

    @property
    def chapter(self) -> str:
        return self.code[:2]

    @property
    def heading(self) -> str:
        return self.code[:4]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "display_code": format_code(self.code),
            "level": self.level,
            "description": self.description,
            "parent_code": self.parent_code,
            "general_rate": self.general_rate,
            "special_rates": dict(self.special_rates),
        }


class CodeHierarchyStore:
    """Indexed, read-only view over a set of HtsNodes.

    The store is immutable once built; a schedule revision produces a new
    store rather than mutating this one.
    """

    def __init__(self, nodes: Iterable[HtsNode], *, revision: str = "unversioned") -> None:
        self.revision = revision
        self._nodes: Dict[str, HtsNode] = {}
        self._children: Dict[Optional[str], List[str]] = {}
        for node in nodes:
            if node.code in self._nodes:
                raise InternalInconsistency(f"Duplicate HTS code {node.code} in revision {revision}")
            self._nodes[node.code] = node
        for code in sorted(self._nodes):
            parent = self._nodes[code].parent_code
            self._children.setdefault(parent, []).append(code)

    # -- construction ------------------------------------------------------

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]], *, revision: str = "unversioned") -> "CodeHierarchyStore":
        nodes: List[HtsNode] = []
        for rec in records:
            code = normalize_code(rec.get("code") or rec.get("hts_code"))
            parent = rec.get("parent_code")
            if parent is None and len(code) > 2:
                parent = code[:-2]
            elif parent is not None:
                parent = normalize_code(parent)

            raw_special = rec.get("special_rates", rec.get("special", ""))
            if isinstance(raw_special, str):
                special = parse_special_rates(raw_special)
            elif isinstance(raw_special, Mapping):
                special = {str(k): str(v) for k, v in raw_special.items()}
            else:
                special = {}

            nodes.append(
                HtsNode(
                    code=code,
                    level=LEVELS[len(code)],
                    description=str(rec.get("description", "")).strip(),
                    parent_code=parent,
                    general_rate=str(rec.get("general_rate", rec.get("general", "")) or "").strip(),
                    special_rates=special,
                )
            )
        return cls(nodes, revision=revision)

    @classmethod
    def load_seed(cls, path: Path) -> "CodeHierarchyStore":
        """Load nodes from a JSON seed produced by the schedule sync job."""
        data = json.loads(path.read_text(encoding="utf-8"))
        revision = str(data.get("revision") or path.stem)
        store = cls.from_records(data.get("nodes", []), revision=revision)
        logger.info("Loaded %d HTS nodes (revision %s) from %s", len(store), revision, path.name)
        return store

    # -- queries -----------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, code: object) -> bool:
        try:
            return normalize_code(code) in self._nodes
        except InvalidCodeFormat:
            return False

    def lookup(self, code: str) -> HtsNode:
        digits = normalize_code(code)
        node = self._nodes.get(digits)
        if node is None:
            nearest = self._nearest_prefix(digits)
            raise CodeNotFound(digits, nearest=nearest)
        return node

    def nearest(self, code: str) -> Optional[HtsNode]:
        """Deepest stored node whose code is a prefix of ``code``."""
        digits = normalize_code(code)
        found = self._nearest_prefix(digits, include_self=True)
        return self._nodes[found] if found else None

    def _nearest_prefix(self, digits: str, include_self: bool = False) -> Optional[str]:
        start = len(digits) if include_self else len(digits) - 2
        for length in range(start, 1, -2):
            if digits[:length] in self._nodes:
                return digits[:length]
        return None

    def ancestors(self, code: str) -> List[HtsNode]:
        """Chapter-first chain ending at ``code`` itself."""
        node = self.lookup(code)
        chain = [node]
        seen = {node.code}
        while node.parent_code is not None:
            parent = self._nodes.get(node.parent_code)
            if parent is None:
                raise InternalInconsistency(
                    f"HTS node {node.code} references missing parent {node.parent_code} "
                    f"(revision {self.revision})"
                )
            if parent.code in seen or not node.code.startswith(parent.code) or len(parent.code) >= len(node.code):
                raise InternalInconsistency(
                    f"HTS node {node.code} has invalid parent {parent.code} (revision {self.revision})"
                )
            seen.add(parent.code)
            chain.append(parent)
            node = parent
        chain.reverse()
        return chain

    def children(self, code: str) -> List[HtsNode]:
        node = self.lookup(code)
        return [self._nodes[child] for child in self._children.get(node.code, [])]

    def siblings(self, code: str) -> List[HtsNode]:
        node = self.lookup(code)
        return [
            self._nodes[other]
            for other in self._children.get(node.parent_code, [])
            if other != node.code
        ]

    def has_children(self, code: str) -> bool:
        return bool(self._children.get(normalize_code(code)))

    def chapters(self) -> List[str]:
        return [code for code in self._children.get(None, []) if len(code) == 2]

    def iter_nodes(self) -> List[HtsNode]:
        return [self._nodes[code] for code in sorted(self._nodes)]

    def nodes_in_chapters(self, chapters: Sequence[str]) -> List[HtsNode]:
        wanted = {normalize_code(chapter)[:2] for chapter in chapters}
        return [node for node in self.iter_nodes() if node.chapter in wanted]

    def leaves(self, chapters: Optional[Sequence[str]] = None) -> List[HtsNode]:
        """Classifiable nodes (no children), optionally limited to chapters."""
        wanted = set(chapters) if chapters else None
        return [
            node
            for node in self.iter_nodes()
            if (wanted is None or node.chapter in wanted) and not self._children.get(node.code)
        ]

    def path_text(self, code: str) -> str:
        """Ancestor descriptions joined chapter-first, for keyword matching."""
        return " ".join(node.description for node in self.ancestors(code))

    def validate(self) -> List[Tuple[str, str]]:
        """Return ``(code, problem)`` pairs for structurally broken nodes."""
        problems: List[Tuple[str, str]] = []
        for node in self.iter_nodes():
            if len(node.code) == 2:
                if node.parent_code is not None:
                    problems.append((node.code, "chapter has a parent"))
                continue
            if node.parent_code is None:
                problems.append((node.code, "missing parent reference"))
            elif node.parent_code not in self._nodes:
                problems.append((node.code, f"parent {node.parent_code} not in store"))
            elif node.parent_code != node.code[:-2]:
                problems.append((node.code, f"parent {node.parent_code} is not its 2-digit-shorter prefix"))
        return problems


def _default_seed_path() -> Path:
    return Path(__file__).resolve().parents[3] / "data" / "hts" / "hierarchy_seed.json"


@lru_cache(maxsize=4)
def get_hierarchy_store(seed_path: Optional[str] = None) -> CodeHierarchyStore:
    """Return the cached store for a seed file (default: bundled seed)."""
    path = Path(seed_path) if seed_path else _default_seed_path()
    return CodeHierarchyStore.load_seed(path)
