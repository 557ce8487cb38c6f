"""Batch Planner
=================

Classifies a file plan by path and groups it into ordered, typed batches:

1. config     - config files, directories, unknown types, then assets
2. foundation - entry HTML page plus ALL CSS and JS, generated in one call
                so markup, styles and scripts agree on class names and ids
3. priority   - remaining HTML pages matching the complexity keywords
4. content    - every other HTML page
5. readme     - README files, last because they describe the finished set

Empty batches are omitted. Classification is deterministic and every entry
lands in exactly one batch.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from codeforge.constants import (
    ENTRY_PAGE_KEYWORDS,
    PRIORITY_PAGE_KEYWORDS,
    PRIORITY_PATH_KEYWORDS,
    PRIORITY_PURPOSE_KEYWORDS,
    TOKEN_ALLOCATION,
    BatchType,
    FileKind,
)
from codeforge.services.generation.job_store import FilePlanEntry

logger = logging.getLogger(__name__)

_CONFIG_RE = re.compile(r'\.(json|yaml|yml|toml|env|gitignore)$')
_ASSET_RE = re.compile(r'\.(png|jpg|jpeg|gif|svg|ico|woff|ttf)$')


def detect_file_kind(path: str) -> FileKind:
    lower = path.lower()
    if lower.endswith('.html'):
        return FileKind.HTML_PAGE
    if lower.endswith(('.css', '.scss')):
        return FileKind.CSS
    if lower.endswith(('.js', '.ts')):
        return FileKind.JAVASCRIPT
    if 'readme' in lower:
        return FileKind.README
    if _CONFIG_RE.search(lower):
        return FileKind.CONFIG
    if lower.endswith('/') or '.' not in lower:
        return FileKind.DIRECTORY
    if _ASSET_RE.search(lower):
        return FileKind.ASSET
    return FileKind.DEFAULT


def token_allocation_for(path: str, allocation: Optional[Dict[FileKind, int]] = None) -> int:
    """Estimated premium token cost of one file."""
    table = allocation or TOKEN_ALLOCATION
    return table.get(detect_file_kind(path), table.get(FileKind.DEFAULT, 8000))


def is_priority_file(entry: FilePlanEntry) -> bool:
    """Coarse 'this file matters more' predicate used for premium eligibility."""
    if any(k in entry.path for k in PRIORITY_PATH_KEYWORDS):
        return True
    purpose = (entry.purpose or '').lower()
    return any(k in purpose for k in PRIORITY_PURPOSE_KEYWORDS)


def fallback_max_tokens(path: str) -> int:
    """max_tokens for the fallback model, sized by how much a file tends to need."""
    lower = path.lower()
    if re.search(r'index|landing|main|home', lower):
        return 20000
    if re.search(r'dashboard|admin|console', lower):
        return 20000
    if lower.endswith(('.js', '.ts')):
        return 18000
    if lower.endswith('.html'):
        return 16000
    if re.search(r'\.(json|yaml|yml|toml)$', lower):
        return 12000
    return 16000


@dataclass
class Batch:
    type: BatchType
    entries: List[FilePlanEntry] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [e.path for e in self.entries]

    @property
    def is_foundation(self) -> bool:
        return self.type == BatchType.FOUNDATION

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class BatchPlan:
    batches: List[Batch] = field(default_factory=list)

    @property
    def batch_types(self) -> List[BatchType]:
        return [b.type for b in self.batches]

    @property
    def paths(self) -> List[List[str]]:
        return [b.paths for b in self.batches]

    def as_slots(self) -> Dict[BatchType, List[str]]:
        """All five slots in execution order, empty ones included."""
        slots: Dict[BatchType, List[str]] = {t: [] for t in BatchType}
        for batch in self.batches:
            slots[batch.type] = batch.paths
        return slots

    def get(self, batch_type: BatchType) -> Optional[Batch]:
        for batch in self.batches:
            if batch.type == batch_type:
                return batch
        return None

    def __len__(self) -> int:
        return len(self.batches)


class BatchPlanner:
    """Turns a file plan into a BatchPlan."""

    def plan(self, file_plan: Sequence[FilePlanEntry]) -> BatchPlan:
        html: List[FilePlanEntry] = []
        css: List[FilePlanEntry] = []
        js: List[FilePlanEntry] = []
        config: List[FilePlanEntry] = []
        assets: List[FilePlanEntry] = []
        readmes: List[FilePlanEntry] = []

        for entry in file_plan:
            kind = detect_file_kind(entry.path)
            if kind == FileKind.HTML_PAGE:
                html.append(entry)
            elif kind == FileKind.CSS:
                css.append(entry)
            elif kind == FileKind.JAVASCRIPT:
                js.append(entry)
            elif kind == FileKind.ASSET:
                assets.append(entry)
            elif kind == FileKind.README:
                readmes.append(entry)
            else:
                config.append(entry)

        entry_page = next(
            (e for e in html if any(k in e.path.lower() for k in ENTRY_PAGE_KEYWORDS)),
            None,
        )
        remaining = [e for e in html if e is not entry_page]
        priority = [e for e in remaining if any(k in e.path.lower() for k in PRIORITY_PAGE_KEYWORDS)]
        content = [e for e in remaining if e not in priority]
        foundation = ([entry_page] if entry_page else []) + css + js

        plan = BatchPlan()
        for batch_type, entries in (
            (BatchType.CONFIG, config + assets),
            (BatchType.FOUNDATION, foundation),
            (BatchType.PRIORITY, priority),
            (BatchType.CONTENT, content),
            (BatchType.README, readmes),
        ):
            if entries:
                plan.batches.append(Batch(batch_type, entries))

        logger.info(
            f"Planned {len(file_plan)} file(s) into {len(plan)} batch(es): "
            + ', '.join(f"{b.type}={len(b)}" for b in plan.batches)
        )
        return plan
