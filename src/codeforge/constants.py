"""
Constants and Enums for codeforge
=================================

Centralized enums shared by the request-handling layer and the generation
pipeline.
"""

from enum import Enum


# ===========================
# STATUS ENUMS
# ===========================

class BaseEnum(str, Enum):
    """Base enum class with string values for consistent behavior."""

    def __str__(self):
        return self.value


class JobStatus(BaseEnum):
    """Lifecycle of a generation job."""
    CREATED = "created"
    SPEC_GENERATED = "spec_generated"
    PLANNED = "planned"
    GENERATED = "generated"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


class ProjectType(BaseEnum):
    """Kind of project a job produces."""
    STATIC_SITE = "static_site"
    BACKEND_SERVICE = "backend_service"
    CHAT_BOT = "chat_bot"


# ===========================
# PIPELINE ENUMS
# ===========================

class FileKind(BaseEnum):
    """Classification of a planned file, derived from its path."""
    HTML_PAGE = "html_page"
    CSS = "css"
    JAVASCRIPT = "javascript"
    CONFIG = "config"
    README = "readme"
    ASSET = "asset"
    DIRECTORY = "directory"
    DEFAULT = "default"


class BatchType(BaseEnum):
    """Execution slot of a batch. Order of members is execution order."""
    CONFIG = "config"
    FOUNDATION = "foundation"
    PRIORITY = "priority"
    CONTENT = "content"
    README = "readme"


class ModelTier(BaseEnum):
    """Billing tier of a completion model."""
    PAID = "paid"
    FREE = "free"


class PipelineVariant(BaseEnum):
    """Which generation strategy produced a job's files."""
    CHUNKED = "chunked"


# Token allocation per file kind (estimated premium cost per file)
TOKEN_ALLOCATION = {
    FileKind.HTML_PAGE: 12000,
    FileKind.CSS: 10000,
    FileKind.JAVASCRIPT: 10000,
    FileKind.CONFIG: 4000,
    FileKind.README: 6000,
    FileKind.ASSET: 2000,
    FileKind.DIRECTORY: 500,
    FileKind.DEFAULT: 8000,
}

# Keyword sets used by the planner and the budget heuristic
ENTRY_PAGE_KEYWORDS = ('index', 'landing')
PRIORITY_PAGE_KEYWORDS = ('console', 'mock', 'about', 'dashboard', 'auth', 'login', 'api', 'integration')
PRIORITY_PATH_KEYWORDS = ('console', 'mock', 'about', 'api', 'integration', 'auth', 'dashboard')
PRIORITY_PURPOSE_KEYWORDS = ('core', 'important', 'critical')
