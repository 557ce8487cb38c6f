"""Prompt Loader Service
=====================

Loads and renders the Jinja2 prompt templates used by the generation
worker and the consistency pass. Templates live in ``prompts/`` next to
this module.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from codeforge.constants import ProjectType
from codeforge.services.generation.job_store import FilePlanEntry, GeneratedFile, Job

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent / 'prompts'

PROJECT_TYPE_DESCRIPTIONS = {
    ProjectType.STATIC_SITE: 'static website',
    ProjectType.CHAT_BOT: 'chat bot application',
    ProjectType.BACKEND_SERVICE: 'backend service',
}

PROJECT_TYPE_GUIDANCE = {
    ProjectType.STATIC_SITE: 'Focus on clean, modern web design with responsive layouts and good UX.',
    ProjectType.CHAT_BOT: 'Focus on bot functionality, commands, event handling, and user interaction.',
    ProjectType.BACKEND_SERVICE: 'Focus on robust service architecture, API design, and scalable backend patterns.',
}

# (keywords in the user's request, theme to emphasize)
THEME_HINTS = (
    (('minecraft', 'gaming', 'server host'), 'gaming aesthetics and server hosting features'),
    (('shop', 'store', 'ecommerce', 'e-commerce'), 'e-commerce functionality, product displays, and shopping cart features'),
    (('portfolio', 'showcase'), 'professional portfolio presentation and project showcasing'),
    (('dashboard', 'admin'), 'dashboard UI, data visualization, and admin controls'),
    (('social', 'community', 'forum'), 'social features, user interaction, and community engagement'),
)


def context_guidance(project_type: ProjectType, user_message: str) -> str:
    """Short steer for the model derived from themes in the user's request."""
    lower = (user_message or '').lower()
    themes = [theme for keywords, theme in THEME_HINTS if any(k in lower for k in keywords)]
    if not themes:
        return PROJECT_TYPE_GUIDANCE.get(project_type, 'Focus on clean, professional implementation following best practices.')
    return f"Focus on {', '.join(themes)}."


class PromptLoader:
    """Loads and renders prompts for code generation."""

    def __init__(self, prompts_dir: Optional[Path] = None):
        self.prompts_dir = prompts_dir or PROMPTS_DIR
        if not self.prompts_dir.exists():
            logger.error(f"Prompts directory not found at {self.prompts_dir}")

        # Prompts embed raw source code, so nothing is escaped
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(self.prompts_dir)),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def _render_pair(self, name: str, **context) -> Tuple[str, str]:
        system_template = self.jinja_env.get_template(f"{name}/system.md.jinja2")
        user_template = self.jinja_env.get_template(f"{name}/user.md.jinja2")
        return system_template.render(**context), user_template.render(**context)

    def _project_context(self, job: Job) -> Dict[str, object]:
        spec = job.spec
        project_type = spec.project_type if spec else job.project_type
        return {
            'title': spec.title if spec else 'Untitled project',
            'project_type': str(project_type),
            'project_type_description': PROJECT_TYPE_DESCRIPTIONS.get(project_type, 'application'),
            'user_message': job.input.user_message,
            'guidance': context_guidance(project_type, job.input.user_message),
            'checklist': list(spec.acceptance_checklist) if spec else [],
            'file_plan': job.plan.file_plan,
        }

    def get_foundation_prompts(self, job: Job, entries: Sequence[FilePlanEntry]) -> Tuple[str, str]:
        """Prompts for the single combined entry page + CSS + JS call."""
        return self._render_pair('foundation', files=list(entries), **self._project_context(job))

    def get_file_prompts(
        self,
        job: Job,
        entry: FilePlanEntry,
        generated: Dict[str, GeneratedFile],
    ) -> Tuple[str, str]:
        """Prompts for one file, with the full content of every generated file."""
        return self._render_pair(
            'file',
            file=entry,
            previous_files=list(generated.values()),
            **self._project_context(job),
        )

    def get_consistency_prompts(self, pages: List[GeneratedFile], max_chars: int) -> Tuple[str, str]:
        excerpts = [
            {'path': page.path, 'excerpt': page.content[:max_chars], 'truncated': len(page.content) > max_chars}
            for page in pages
        ]
        return self._render_pair('consistency', pages=excerpts)
