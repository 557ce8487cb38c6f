"""Final consistency pass.

One premium call reviewing every generated HTML page (truncated) for
header, footer, navigation and styling drift. Advisory only: issues are
logged and stored on the job, never applied to the files.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from codeforge.services.generation.api_client import CompletionClient
from codeforge.services.generation.config import GenerationConfig, ModelBudget
from codeforge.services.generation.job_store import GeneratedFile, Job, JobStore
from codeforge.services.generation.prompt_loader import PromptLoader
from codeforge.services.generation.response_parser import parse_json_object
from codeforge.services.generation.worker import RECOVERABLE_ERRORS

logger = logging.getLogger(__name__)


@dataclass
class ConsistencyIssue:
    file: str
    issue: str
    fix: str = ''

    def to_dict(self) -> Dict[str, str]:
        return {'file': self.file, 'issue': self.issue, 'fix': self.fix}


@dataclass
class ConsistencyReport:
    ran: bool = False
    issues: List[ConsistencyIssue] = field(default_factory=list)
    suggestions: str = ''
    tokens: int = 0
    error: Optional[str] = None


def _coerce_issues(raw) -> List[ConsistencyIssue]:
    issues: List[ConsistencyIssue] = []
    if not isinstance(raw, list):
        return issues
    for item in raw:
        if isinstance(item, dict) and item.get('issue'):
            issues.append(ConsistencyIssue(
                file=str(item.get('file', '')),
                issue=str(item['issue']),
                fix=str(item.get('fix', '')),
            ))
    return issues


class ConsistencyChecker:
    """Runs the advisory cross-page review."""

    def __init__(
        self,
        client: CompletionClient,
        config: Optional[GenerationConfig] = None,
        prompts: Optional[PromptLoader] = None,
        store: Optional[JobStore] = None,
    ):
        self.client = client
        self.config = config or GenerationConfig()
        self.prompts = prompts or PromptLoader()
        self.store = store

    def _log(self, job: Job, line: str) -> None:
        if self.store is not None:
            self.store.write_log(job, line)

    async def check(self, job: Job, files: List[GeneratedFile], budget: ModelBudget) -> ConsistencyReport:
        pages = [f for f in files if f.path.lower().endswith('.html')]
        report = ConsistencyReport()
        if len(pages) < 2:
            logger.debug(f"Skipping consistency pass for {job.job_id}: {len(pages)} page(s)")
            return report

        system_prompt, user_prompt = self.prompts.get_consistency_prompts(pages, self.config.consistency_page_chars)
        model = self.config.premium_model
        options = {'max_tokens': budget.reserve, 'temperature': 0.2, 'timeout': self.config.timeout}
        if self.config.reasoning_for_premium:
            options['reasoning'] = True

        report.ran = True
        self._log(job, f"🔍 Running final consistency pass over {len(pages)} page(s)...")
        try:
            completion = await self.client.complete(
                [{'role': 'system', 'content': system_prompt}, {'role': 'user', 'content': user_prompt}],
                model,
                options,
            )
            report.tokens = completion.total_tokens or budget.reserve
            budget.charge_consistency(report.tokens)
            job.diagnostics.add_tokens('premium', report.tokens)
            analysis = parse_json_object(completion.content)
        except RECOVERABLE_ERRORS as e:
            report.error = str(e) or type(e).__name__
            logger.warning(f"Consistency pass failed for {job.job_id}: {report.error}")
            self._log(job, "  ⚠️  Consistency pass failed")
            return report

        report.issues = _coerce_issues(analysis.get('issues'))
        suggestions = analysis.get('suggestions', '')
        report.suggestions = suggestions if isinstance(suggestions, str) else str(suggestions)
        job.diagnostics.consistency_issues = [i.to_dict() for i in report.issues]

        if report.issues:
            logger.warning(f"Job {job.job_id}: {len(report.issues)} consistency issue(s) found")
            for issue in report.issues[:3]:
                logger.info(f"  - {issue.file}: {issue.issue}")
            self._log(job, f"  ⚠️  Found {len(report.issues)} consistency issue(s) - review recommended")
        else:
            self._log(job, "  ✓ Consistency check passed")
        return report
